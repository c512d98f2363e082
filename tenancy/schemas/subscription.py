"""Pydantic schemas for subscription endpoints."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import Field

from tenancy.models.enums import PlanTier, SubscriptionStatus
from tenancy.schemas.base import CamelModel
from tenancy.schemas.metadata import PlanLimits


class ScheduledDowngradeOut(CamelModel):
    plan_id: UUID
    effective_date: datetime
    scheduled_at: datetime


class SubscriptionResponse(CamelModel):
    id: UUID
    workspace_id: UUID
    plan_id: UUID
    tier: PlanTier
    status: SubscriptionStatus
    price_at_purchase: Decimal
    start_date: datetime
    trial_end_date: datetime | None = None
    end_date: datetime | None = None
    grace_period_end: datetime | None = None
    scheduled_downgrade: ScheduledDowngradeOut | None = None
    limits: PlanLimits


class DowngradeRequest(CamelModel):
    plan_id: UUID = Field(..., description="Target plan, must be a lower tier")


class DowngradeResponse(CamelModel):
    effective_date: datetime
    new_plan: str


class JobResultOut(CamelModel):
    processed: int
    errors: list[str]


class LifecycleReportResponse(CamelModel):
    trials_expired: JobResultOut
    marked_past_due: JobResultOut
    grace_periods_expired: JobResultOut
    downgrades_applied: JobResultOut
    trial_warnings_sent: JobResultOut
    renewal_warnings_sent: JobResultOut
