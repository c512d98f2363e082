"""Invitation analytics rollups.

Read-only: nothing here writes, so results may lag a concurrent transition by
one request.
"""

from collections import Counter
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.errors import NotAuthorized, WorkspaceNotFound
from tenancy.core.limits import CapacityReport
from tenancy.models.enums import InvitationStatus
from tenancy.models.invitation import Invitation
from tenancy.models.user import User
from tenancy.models.workspace import Workspace
from tenancy.services.capacity_service import CapacityService
from tenancy.services.invitation_service import is_workspace_owner

MONTH_BUCKETS = 12


def acceptance_rate(used: int, total: int, canceled: int) -> float:
    """Percentage of non-canceled invitations that were accepted.

    Examples:
        >>> acceptance_rate(3, 10, 4)
        50.0
        >>> acceptance_rate(0, 2, 2)
        0.0
    """
    denominator = total - canceled
    if denominator <= 0:
        return 0.0
    return round(used / denominator * 100, 2)


class AnalyticsService:
    """Invitation analytics for owners and operators."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.capacity_service = CapacityService(db)

    async def invitation_analytics(self, workspace_id: UUID, actor: User | None = None) -> dict:
        """Per-status, per-role and per-month rollups for one workspace."""
        workspace = await self._workspace(workspace_id, actor)

        result = await self.db.execute(
            select(Invitation.status, Invitation.role, Invitation.created_at, Invitation.used_at)
            .where(Invitation.workspace_id == workspace.id)
        )
        rows = result.all()

        by_status = Counter(InvitationStatus(row.status).value for row in rows)
        by_role = Counter(row.role.value for row in rows)
        total = len(rows)
        used = by_status[InvitationStatus.USED.value]
        canceled = by_status[InvitationStatus.CANCELED.value]

        months: dict[str, dict] = {}
        for row in rows:
            key = row.created_at.strftime("%Y-%m")
            bucket = months.setdefault(key, {"month": key, "count": 0, "accepted": 0})
            bucket["count"] += 1
            if row.status == InvitationStatus.USED:
                bucket["accepted"] += 1
        by_month = sorted(months.values(), key=lambda b: b["month"], reverse=True)[:MONTH_BUCKETS]

        durations = [
            (row.used_at - row.created_at).total_seconds() / 3600
            for row in rows
            if row.status == InvitationStatus.USED and row.used_at is not None
        ]
        average_hours = round(sum(durations) / len(durations), 2) if durations else 0.0

        return {
            "total_invitations": total,
            "active_invitations": by_status[InvitationStatus.ACTIVE.value],
            "expired_invitations": by_status[InvitationStatus.EXPIRED.value],
            "used_invitations": used,
            "canceled_invitations": canceled,
            "acceptance_rate": acceptance_rate(used, total, canceled),
            "average_acceptance_hours": average_hours,
            "invitations_by_role": dict(by_role),
            "invitations_by_month": by_month,
        }

    async def pending_capacity(self, workspace_id: UUID, actor: User | None = None) -> CapacityReport:
        workspace = await self._workspace(workspace_id, actor)
        return await self.capacity_service.pending_invite_capacity(workspace)

    async def member_capacity(self, workspace_id: UUID, actor: User | None = None) -> CapacityReport:
        workspace = await self._workspace(workspace_id, actor)
        return await self.capacity_service.member_capacity(workspace)

    async def invitation_stats(self, workspace_id: UUID | None = None) -> dict:
        """Summary for one workspace, or across all workspaces when ``workspace_id`` is None."""
        if workspace_id is not None:
            workspace = await self.db.get(Workspace, workspace_id)
            if workspace is None:
                raise WorkspaceNotFound()
            result = await self.db.execute(
                select(Invitation.status, func.count())
                .where(Invitation.workspace_id == workspace_id)
                .group_by(Invitation.status)
            )
            counts = {InvitationStatus(status).value: count for status, count in result.all()}
            return {
                "workspace": {
                    "id": workspace.id,
                    "name": workspace.name,
                    "total_invitations": sum(counts.values()),
                    "pending_invitations": counts.get(InvitationStatus.ACTIVE.value, 0),
                    "accepted_invitations": counts.get(InvitationStatus.USED.value, 0),
                    "expired_invitations": counts.get(InvitationStatus.EXPIRED.value, 0),
                }
            }

        total_workspaces = (
            await self.db.execute(select(func.count()).select_from(Workspace))
        ).scalar_one()
        result = await self.db.execute(
            select(Invitation.status, func.count()).group_by(Invitation.status)
        )
        counts = {InvitationStatus(status).value: count for status, count in result.all()}
        total = sum(counts.values())
        return {
            "global": {
                "total_workspaces": total_workspaces,
                "total_invitations": total,
                "average_invitations_per_workspace": (
                    round(total / total_workspaces, 2) if total_workspaces else 0.0
                ),
                "global_acceptance_rate": acceptance_rate(
                    counts.get(InvitationStatus.USED.value, 0),
                    total,
                    counts.get(InvitationStatus.CANCELED.value, 0),
                ),
            }
        }

    async def _workspace(self, workspace_id: UUID, actor: User | None) -> Workspace:
        workspace = await self.db.get(Workspace, workspace_id)
        if workspace is None:
            raise WorkspaceNotFound()
        if actor is not None and not is_workspace_owner(actor, workspace):
            raise NotAuthorized("Only workspace owners can view invitation analytics")
        return workspace
