"""Loads live counts for the capacity evaluator."""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.config import get_settings
from tenancy.core.limits import CapacityReport, evaluate_admission, evaluate_capacity
from tenancy.models.enums import InvitationStatus
from tenancy.models.invitation import Invitation
from tenancy.models.plan import Plan
from tenancy.models.subscription import Subscription
from tenancy.models.workspace import Workspace, workspace_members
from tenancy.schemas.metadata import PlanLimits


class CapacityService:
    """Member and pending-invitation capacity for a workspace.

    Counts are read with ``COUNT(*)`` right before each decision; nothing here
    caches a count between calls.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()

    async def count_members(self, workspace_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(workspace_members)
            .where(workspace_members.c.workspace_id == workspace_id)
        )
        return result.scalar_one()

    async def count_pending(self, workspace_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Invitation)
            .where(
                Invitation.workspace_id == workspace_id,
                Invitation.status == InvitationStatus.ACTIVE,
            )
        )
        return result.scalar_one()

    async def member_limit(self, workspace: Workspace) -> int | None:
        """Resolve the member ceiling for ``workspace``.

        Order: current subscription limits, then the workspace plan's limits,
        then ``settings.default_member_limit``.
        """
        if workspace.current_subscription_id is not None:
            subscription = await self.db.get(Subscription, workspace.current_subscription_id)
            if subscription is not None and subscription.limits:
                return PlanLimits.from_column(subscription.limits).users

        if workspace.current_plan_id is not None:
            plan = await self.db.get(Plan, workspace.current_plan_id)
            if plan is not None and plan.limits:
                return PlanLimits.from_column(plan.limits).users

        return self.settings.default_member_limit

    async def member_capacity(self, workspace: Workspace) -> CapacityReport:
        """Capacity for accepting one more member right now."""
        current = await self.count_members(workspace.id)
        return evaluate_capacity(current, await self.member_limit(workspace))

    async def admission_capacity(self, workspace: Workspace) -> tuple[CapacityReport, int]:
        """Capacity for issuing one more invitation.

        Returns the report and the live pending count it was computed from.
        """
        members = await self.count_members(workspace.id)
        pending = await self.count_pending(workspace.id)
        report = evaluate_admission(members, pending, await self.member_limit(workspace))
        return report, pending

    async def pending_invite_capacity(self, workspace: Workspace) -> CapacityReport:
        current = await self.count_pending(workspace.id)
        return evaluate_capacity(current, workspace.max_pending_invites)
