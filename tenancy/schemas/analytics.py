"""Pydantic schemas for invitation analytics."""

from uuid import UUID

from pydantic import Field

from tenancy.schemas.base import CamelModel


class MonthlyBucket(CamelModel):
    month: str
    count: int
    accepted: int


class InvitationAnalyticsResponse(CamelModel):
    total_invitations: int
    active_invitations: int
    expired_invitations: int
    used_invitations: int
    canceled_invitations: int
    acceptance_rate: float
    average_acceptance_hours: float
    invitations_by_role: dict[str, int]
    invitations_by_month: list[MonthlyBucket]


class WorkspaceInvitationStats(CamelModel):
    id: UUID
    name: str
    total_invitations: int
    pending_invitations: int
    accepted_invitations: int
    expired_invitations: int


class GlobalInvitationStats(CamelModel):
    total_workspaces: int
    total_invitations: int
    average_invitations_per_workspace: float
    global_acceptance_rate: float


class InvitationStatsResponse(CamelModel):
    workspace: WorkspaceInvitationStats | None = None
    global_: GlobalInvitationStats | None = Field(None, alias="global")
