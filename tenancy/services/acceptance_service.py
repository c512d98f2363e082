"""Atomic invitation acceptance.

Acceptances into one workspace queue on the workspace row lock, and the
invitation compare-and-set guards the status itself: of two concurrent
accepts for the same code exactly one sees ``rowcount == 1``. The user link
and the member insert run in the same savepoint, so a failure in either
leaves the invitation ``active``.
"""
import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, SystemClock
from tenancy.core.errors import (
    AlreadyInOtherWorkspace,
    AlreadyMember,
    EmailMismatch,
    InvitationAlreadyUsed,
    InvitationCanceled,
    InvitationExpired,
    MemberLimitExceeded,
    WorkspaceNotFound,
)
from tenancy.core.metrics import observe_invitation_transition
from tenancy.core.structured_logging import log_json
from tenancy.models.enums import AuditAction, InvitationStatus, NotificationKind, WorkspaceRole
from tenancy.models.invitation import Invitation
from tenancy.models.notification import Notification
from tenancy.models.user import User
from tenancy.models.workspace import Workspace, workspace_members
from tenancy.services.audit_service import AuditService
from tenancy.services.capacity_service import CapacityService
from tenancy.services.invitation_service import InvitationService
from tenancy.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class AcceptanceResult:
    user: User
    workspace: Workspace
    role: WorkspaceRole
    invitation: Invitation
    notification: Notification | None


def raise_if_unusable(invitation: Invitation, now) -> None:
    """Raise the status-specific error for an invitation that cannot be accepted."""
    details = {"status": invitation.status.value, "expiresAt": invitation.expires_at.isoformat()}
    if invitation.status == InvitationStatus.USED:
        raise InvitationAlreadyUsed(**details)
    if invitation.status == InvitationStatus.CANCELED:
        raise InvitationCanceled(**details)
    if invitation.status == InvitationStatus.EXPIRED or invitation.expires_at < now:
        details["status"] = InvitationStatus.EXPIRED.value
        raise InvitationExpired(**details)


class AcceptanceService:
    """Turns a valid invitation into workspace membership."""

    def __init__(self, db: AsyncSession, clock: Clock | None = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.invitations = InvitationService(db, self.clock)
        self.capacity_service = CapacityService(db)
        self.audit_service = AuditService(db)
        self.notifications = NotificationService(db, self.clock)

    async def accept(
        self,
        code: str,
        user: User,
        ip_address: str | None = None,
    ) -> AcceptanceResult:
        """Accept invitation ``code`` on behalf of ``user``.

        Preconditions are checked in a fixed order so each failure maps to one
        error: unknown code, unusable status, email mismatch, already a member,
        member of another workspace, member limit reached.

        Raises:
            InvalidInvitationCode, InvitationNotFound, InvitationExpired,
            InvitationAlreadyUsed, InvitationCanceled, EmailMismatch,
            AlreadyMember, AlreadyInOtherWorkspace, MemberLimitExceeded
        """
        invitation = await self.invitations.get_by_code(code)
        now = self.clock.now()
        raise_if_unusable(invitation, now)

        workspace = await self._lock_workspace(invitation.workspace_id)
        if workspace is None:
            raise WorkspaceNotFound()
        # Re-read under the lock; an acceptance that held it may have used this code
        await self.db.refresh(invitation)
        raise_if_unusable(invitation, now)

        if user.email.lower() != invitation.email:
            raise EmailMismatch(invitationEmail=invitation.email, userEmail=user.email)

        if user.workspace_id == workspace.id or await self._is_member(workspace.id, user.id):
            raise AlreadyMember("You are already a member of this workspace")
        if user.workspace_id is not None:
            raise AlreadyInOtherWorkspace()

        capacity = await self.capacity_service.member_capacity(workspace)
        if not capacity.can_admit:
            raise MemberLimitExceeded(
                current=capacity.current,
                limit=capacity.max,
                upgradeRequired=True,
                kind="members",
            )

        async with self.db.begin_nested():
            claimed = await self.db.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation.id,
                    Invitation.status == InvitationStatus.ACTIVE,
                    Invitation.expires_at >= now,
                )
                .values(
                    status=InvitationStatus.USED,
                    used_at=now,
                    used_by=user.id,
                    status_changed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                # Someone else moved it between our read and the CAS
                await self.db.refresh(invitation)
                raise_if_unusable(invitation, now)
                raise InvitationAlreadyUsed(status=invitation.status.value)

            linked = await self.db.execute(
                update(User)
                .where(User.id == user.id, User.workspace_id.is_(None))
                .values(workspace_id=workspace.id, workspace_role=invitation.role, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if linked.rowcount == 0:
                raise AlreadyInOtherWorkspace()

            await self.db.execute(self._add_member_statement(workspace.id, user.id, now))
            await self.db.execute(
                update(Workspace)
                .where(Workspace.id == workspace.id)
                .values(last_activity_at=now)
                .execution_options(synchronize_session=False)
            )

            await self.audit_service.log(
                workspace_id=workspace.id,
                action=AuditAction.INVITATION_ACCEPT,
                entity_type="invitation",
                entity_id=invitation.id,
                user_id=user.id,
                ip_address=ip_address,
                diff_json={
                    "status": {"old": "active", "new": "used"},
                    "role": invitation.role.value,
                },
            )

            notification = None
            inviter = await self.db.get(User, invitation.invited_by)
            if inviter is not None:
                notification = await self.notifications.enqueue(
                    NotificationKind.INVITATION_ACCEPTED,
                    recipient=inviter.email,
                    payload={
                        "inviter_name": inviter.display_name,
                        "workspace_name": workspace.name,
                        "accepted_user_name": user.display_name,
                        "accepted_user_email": user.email,
                        "role": invitation.role.value,
                    },
                    dedupe_key=f"invitation_accepted:{invitation.id}",
                )

        await self.db.refresh(invitation)
        await self.db.refresh(user)
        await self.db.refresh(workspace)
        observe_invitation_transition(InvitationStatus.USED.value, "api")
        log_json(
            logger,
            logging.INFO,
            "invitation_accepted",
            invitation_id=str(invitation.id),
            workspace_id=str(workspace.id),
            user_id=str(user.id),
            role=invitation.role.value,
        )
        return AcceptanceResult(
            user=user,
            workspace=workspace,
            role=invitation.role,
            invitation=invitation,
            notification=notification,
        )

    async def _lock_workspace(self, workspace_id: UUID) -> Workspace | None:
        """Load the workspace holding its row lock until commit.

        Acceptances into one workspace queue on this lock, so each member-limit
        check counts the members admitted by the one before it. SQLite has no
        row locks; its single writer gives the same ordering.
        """
        result = await self.db.execute(
            select(Workspace).where(Workspace.id == workspace_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _is_member(self, workspace_id: UUID, user_id: UUID) -> bool:
        result = await self.db.execute(
            select(workspace_members.c.user_id).where(
                workspace_members.c.workspace_id == workspace_id,
                workspace_members.c.user_id == user_id,
            )
        )
        return result.first() is not None

    def _add_member_statement(self, workspace_id: UUID, user_id: UUID, now):
        """INSERT that is a no-op when the membership row already exists."""
        values = {"workspace_id": workspace_id, "user_id": user_id, "joined_at": now}
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return (
                postgresql.insert(workspace_members)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["workspace_id", "user_id"])
            )
        if dialect == "sqlite":
            return (
                sqlite.insert(workspace_members)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["workspace_id", "user_id"])
            )
        return insert(workspace_members).values(**values)
