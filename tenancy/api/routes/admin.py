"""Operator endpoints: manual sweeps and global statistics.

All routes require the ``X-Admin-Token`` header.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.api.deps import require_admin_token
from tenancy.core.clock import Clock, get_clock
from tenancy.core.database import get_db
from tenancy.core.structured_logging import logged_operation
from tenancy.schemas.analytics import InvitationStatsResponse
from tenancy.schemas.errors import ErrorResponse
from tenancy.schemas.invitation import SweepResponse
from tenancy.schemas.subscription import LifecycleReportResponse
from tenancy.services.analytics_service import AnalyticsService
from tenancy.services.invitation_service import InvitationService
from tenancy.services.notification_service import NotificationGateway, get_notification_gateway
from tenancy.services.subscription_service import SubscriptionService

router = APIRouter(dependencies=[Depends(require_admin_token)])
logger = logging.getLogger(__name__)


@router.post(
    "/invitations/expire",
    response_model=SweepResponse,
    summary="Run the invitation expiry sweep now",
)
async def expire_invitations(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    gateway: NotificationGateway = Depends(get_notification_gateway),
) -> SweepResponse:
    with logged_operation(logger, "manual_invitation_sweep") as outcome:
        result = await InvitationService(db, clock).sweep_expired()
        await db.commit()
        outcome.update(expired_count=result.expired_count, errors=len(result.errors))

    gateway.dispatch(result.notifications)
    return SweepResponse(
        expired_count=result.expired_count,
        notifications_queued=result.notifications_queued,
        errors=result.errors,
    )


@router.get(
    "/invitations/stats",
    response_model=InvitationStatsResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Invitation statistics for one workspace or globally",
)
async def invitation_stats(
    workspace_id: UUID | None = Query(None, alias="workspaceId"),
    db: AsyncSession = Depends(get_db),
) -> InvitationStatsResponse:
    stats = await AnalyticsService(db).invitation_stats(workspace_id)
    return InvitationStatsResponse.model_validate(stats)


@router.post(
    "/subscriptions/lifecycle",
    response_model=LifecycleReportResponse,
    summary="Run the subscription lifecycle pass now",
)
async def run_lifecycle(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    gateway: NotificationGateway = Depends(get_notification_gateway),
) -> LifecycleReportResponse:
    with logged_operation(logger, "manual_lifecycle_pass") as outcome:
        report = await SubscriptionService(db, clock).run_lifecycle_pass()
        await db.commit()
        outcome.update(errors=len(report.errors))

    gateway.dispatch(report.notifications)
    return LifecycleReportResponse.model_validate(report.as_dict())
