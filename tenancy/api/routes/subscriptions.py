"""Workspace subscription endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.api.deps import get_current_user
from tenancy.core.clock import Clock, get_clock
from tenancy.core.database import get_db
from tenancy.core.errors import NotAuthorized, WorkspaceNotFound
from tenancy.models.subscription import Subscription
from tenancy.models.user import User
from tenancy.models.workspace import Workspace
from tenancy.schemas.errors import ErrorResponse
from tenancy.schemas.metadata import PlanLimits, ScheduledDowngrade
from tenancy.schemas.subscription import (
    DowngradeRequest,
    DowngradeResponse,
    ScheduledDowngradeOut,
    SubscriptionResponse,
)
from tenancy.services.invitation_service import is_workspace_owner
from tenancy.services.notification_service import NotificationGateway, get_notification_gateway
from tenancy.services.subscription_service import SubscriptionService

router = APIRouter()


def subscription_to_response(subscription: Subscription) -> SubscriptionResponse:
    downgrade = ScheduledDowngrade.from_column(subscription.scheduled_downgrade)
    return SubscriptionResponse(
        id=subscription.id,
        workspace_id=subscription.workspace_id,
        plan_id=subscription.plan_id,
        tier=subscription.tier,
        status=subscription.status,
        price_at_purchase=subscription.price_at_purchase,
        start_date=subscription.start_date,
        trial_end_date=subscription.trial_end_date,
        end_date=subscription.end_date,
        grace_period_end=subscription.grace_period_end,
        scheduled_downgrade=(
            ScheduledDowngradeOut(
                plan_id=downgrade.plan_id,
                effective_date=downgrade.effective_date,
                scheduled_at=downgrade.scheduled_at,
            )
            if downgrade
            else None
        ),
        limits=PlanLimits.from_column(subscription.limits),
    )


async def _load_workspace(db: AsyncSession, workspace_id: UUID) -> Workspace:
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise WorkspaceNotFound()
    return workspace


@router.get(
    "/{workspace_id}/subscription",
    response_model=SubscriptionResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Current workspace subscription",
)
async def get_subscription(
    workspace_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Any member of the workspace may read its subscription."""
    workspace = await _load_workspace(db, workspace_id)
    if current_user.workspace_id != workspace.id and workspace.owner_id != current_user.id:
        raise NotAuthorized("Only workspace members can view the subscription")
    subscription = await SubscriptionService(db).get_current(workspace)
    return subscription_to_response(subscription)


@router.post(
    "/{workspace_id}/subscription/downgrade",
    response_model=DowngradeResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Schedule a downgrade at the end of the current period",
)
async def schedule_downgrade(
    workspace_id: UUID,
    body: DowngradeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    gateway: NotificationGateway = Depends(get_notification_gateway),
) -> DowngradeResponse:
    """Owner only. The target plan must be a lower tier than the current one."""
    workspace = await _load_workspace(db, workspace_id)
    if not is_workspace_owner(current_user, workspace):
        raise NotAuthorized("Only workspace owners can change the plan")

    result = await SubscriptionService(db, clock).schedule_downgrade(
        workspace, body.plan_id, actor=current_user
    )
    response = DowngradeResponse(effective_date=result.effective_date, new_plan=result.plan.name)
    await db.commit()

    gateway.dispatch([result.notification])
    return response
