"""Invitation service.

Owns the invitation state machine: creation behind the capacity checks,
cancellation, lookup by code (with lazy expiry), owner listings and the
scheduler sweeps (expiry, reminders, retention).

Every status change is a conditional ``UPDATE ... WHERE status = 'active'``,
so concurrent writers can never move an invitation out of a terminal state.
"""
import logging
import math
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, SystemClock
from tenancy.core.config import get_settings
from tenancy.core.errors import (
    AlreadyMember,
    CannotInviteSelf,
    DuplicateActive,
    InvalidInvitationCode,
    InvalidState,
    InvitationNotFound,
    MemberLimitExceeded,
    NotAuthorized,
    PendingInviteLimitExceeded,
    SubscriptionInactive,
    WorkspaceNotFound,
)
from tenancy.core.invitation_workflow import is_valid_transition
from tenancy.core.metrics import observe_invitation_transition
from tenancy.core.structured_logging import log_json
from tenancy.models.enums import (
    AuditAction,
    InvitationStatus,
    NotificationKind,
    SubscriptionStatus,
    WorkspaceRole,
)
from tenancy.models.invitation import Invitation
from tenancy.models.notification import Notification
from tenancy.models.user import User
from tenancy.models.workspace import Workspace, workspace_members
from tenancy.schemas.metadata import InvitationMetadata
from tenancy.services.audit_service import AuditService
from tenancy.services.capacity_service import CapacityService
from tenancy.services.job_result import JobResult, process_each
from tenancy.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

# No 0/O or 1/I, so codes survive being read aloud or retyped
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_PAGE_SIZE = 50
INSERT_ATTEMPTS = 3


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: str | None) -> str:
    """Upper-case a user supplied code, rejecting anything not 8 characters long."""
    code = (code or "").strip().upper()
    if len(code) != CODE_LENGTH:
        raise InvalidInvitationCode()
    return code


def is_workspace_owner(user: User, workspace: Workspace) -> bool:
    if workspace.owner_id == user.id:
        return True
    return (
        user.workspace_id == workspace.id
        and user.workspace_role is not None
        and user.workspace_role.can_invite()
    )


@dataclass
class CreatedInvitation:
    invitation: Invitation
    notification: Notification | None


@dataclass
class InvitationValidation:
    invitation: Invitation
    metadata: InvitationMetadata
    status: InvitationStatus
    can_be_used: bool


@dataclass
class InvitationPage:
    invitations: list[Invitation]
    page: int
    limit: int
    total: int
    stats: dict[str, int]

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


@dataclass
class SweepResult:
    expired_count: int = 0
    notifications_queued: int = 0
    errors: list[str] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "expired_count": self.expired_count,
            "notifications_queued": self.notifications_queued,
            "errors": list(self.errors),
        }


class InvitationService:
    """Service for managing workspace invitations."""

    def __init__(self, db: AsyncSession, clock: Clock | None = None):
        """Initialize invitation service.

        Args:
            db: Database session
            clock: Source of "now"; the system clock unless a test pins it
        """
        self.db = db
        self.clock = clock or SystemClock()
        self.settings = get_settings()
        self.audit_service = AuditService(db)
        self.capacity_service = CapacityService(db)
        self.notifications = NotificationService(db, self.clock)

    async def create(
        self,
        workspace_id: UUID,
        email: str,
        role: WorkspaceRole,
        inviter: User,
        custom_message: str | None = None,
        ip_address: str | None = None,
    ) -> CreatedInvitation:
        """Create an invitation after the permission, membership and capacity checks.

        Args:
            workspace_id: Workspace to invite into
            email: Invitee email (compared and stored lower-cased)
            role: Role granted on acceptance
            inviter: Authenticated user sending the invitation
            custom_message: Optional note included in the email
            ip_address: Client IP address (for audit)

        Returns:
            The new invitation and the outbox row for its email. The caller
            commits, then hands the row to the notification gateway.

        Raises:
            WorkspaceNotFound, NotAuthorized, SubscriptionInactive,
            CannotInviteSelf, AlreadyMember, DuplicateActive,
            PendingInviteLimitExceeded, MemberLimitExceeded
        """
        workspace = await self.db.get(Workspace, workspace_id)
        if workspace is None:
            raise WorkspaceNotFound()
        if not is_workspace_owner(inviter, workspace):
            raise NotAuthorized("Only workspace owners can send invitations")
        if workspace.subscription_status == SubscriptionStatus.EXPIRED:
            raise SubscriptionInactive(
                "Renew the workspace subscription to send invitations",
                status=workspace.subscription_status.value,
            )

        email = email.strip().lower()
        if email == inviter.email.lower():
            raise CannotInviteSelf()

        if await self._is_member(workspace.id, email):
            raise AlreadyMember(f"{email} is already a member of this workspace")
        if await self._get_active_invitation(workspace.id, email) is not None:
            raise DuplicateActive(f"An active invitation already exists for {email}")

        pending = await self.capacity_service.pending_invite_capacity(workspace)
        if not pending.can_admit:
            raise PendingInviteLimitExceeded(
                current=pending.current,
                limit=pending.max,
                upgradeRequired=False,
                kind="pending_invitations",
            )

        admission, pending_count = await self.capacity_service.admission_capacity(workspace)
        if not admission.can_admit:
            raise MemberLimitExceeded(
                current=admission.current,
                limit=admission.max,
                pending=pending_count,
                upgradeRequired=True,
                kind="members",
            )

        metadata = InvitationMetadata(
            inviter_name=inviter.display_name,
            workspace_name=workspace.name,
            custom_message=custom_message,
        )
        now = self.clock.now()
        for attempt in range(INSERT_ATTEMPTS):
            invitation = Invitation(
                code=await self._unused_code(),
                email=email,
                workspace_id=workspace.id,
                invited_by=inviter.id,
                role=role,
                status=InvitationStatus.ACTIVE,
                expires_at=now + timedelta(days=self.settings.invitation_ttl_days),
                metadata_json=metadata.to_column(),
                created_at=now,
                updated_at=now,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(invitation)
                    await self.db.flush()
                break
            except IntegrityError as exc:
                if await self._get_active_invitation(workspace.id, email) is not None:
                    # Another request created the same (workspace, email) invitation first
                    raise DuplicateActive(
                        f"An active invitation already exists for {email}"
                    ) from exc
                if attempt == INSERT_ATTEMPTS - 1:
                    raise
                # Code claimed by a concurrent insert; draw another
                log_json(
                    logger,
                    logging.WARNING,
                    "invitation_code_collision",
                    workspace_id=str(workspace.id),
                    attempt=attempt + 1,
                )

        workspace.last_activity_at = now

        await self.audit_service.log(
            workspace_id=workspace.id,
            action=AuditAction.INVITATION_CREATE,
            entity_type="invitation",
            entity_id=invitation.id,
            user_id=inviter.id,
            ip_address=ip_address,
            diff_json={
                "email": email,
                "role": role.value,
                "expires_at": invitation.expires_at.isoformat(),
            },
        )

        notification = await self.notifications.enqueue(
            NotificationKind.INVITATION,
            recipient=email,
            payload={
                "inviter_name": metadata.inviter_name,
                "workspace_name": metadata.workspace_name,
                "role": role.value,
                "code": invitation.code,
                "expires_at": invitation.expires_at.isoformat(),
                "custom_message": metadata.custom_message,
                "accept_url": self._accept_url(invitation.code),
            },
        )
        observe_invitation_transition(InvitationStatus.ACTIVE.value, "api")
        log_json(
            logger,
            logging.INFO,
            "invitation_created",
            invitation_id=str(invitation.id),
            workspace_id=str(workspace.id),
            role=role.value,
        )
        return CreatedInvitation(invitation=invitation, notification=notification)

    async def cancel(
        self,
        invitation_id: UUID,
        actor: User,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> Invitation:
        """Cancel an active invitation.

        Only the inviter or the workspace owner may cancel.
        """
        invitation = await self.db.get(Invitation, invitation_id)
        if invitation is None:
            raise InvitationNotFound()

        workspace = await self.db.get(Workspace, invitation.workspace_id)
        allowed = invitation.invited_by == actor.id or workspace.owner_id == actor.id or (
            actor.workspace_id == workspace.id
            and actor.workspace_role is not None
            and actor.workspace_role.can_cancel_any_invitation()
        )
        if not allowed:
            raise NotAuthorized("Only the inviter or the workspace owner can cancel an invitation")

        if not is_valid_transition(invitation.status, InvitationStatus.CANCELED):
            raise InvalidState(
                f"Cannot cancel an invitation that is {invitation.status.value}",
                status=invitation.status.value,
            )

        now = self.clock.now()
        metadata = InvitationMetadata.from_column(invitation.metadata_json)
        metadata = InvitationMetadata.model_validate(
            {**metadata.model_dump(), "cancel_reason": reason, "canceled_by": actor.id, "canceled_at": now}
        )

        result = await self.db.execute(
            update(Invitation)
            .where(Invitation.id == invitation.id, Invitation.status == InvitationStatus.ACTIVE)
            .values(
                status=InvitationStatus.CANCELED,
                status_changed_at=now,
                updated_at=now,
                metadata_json=metadata.to_column(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(invitation)
        if result.rowcount == 0:
            raise InvalidState(
                f"Cannot cancel an invitation that is {invitation.status.value}",
                status=invitation.status.value,
            )

        await self.audit_service.log(
            workspace_id=invitation.workspace_id,
            action=AuditAction.INVITATION_CANCEL,
            entity_type="invitation",
            entity_id=invitation.id,
            user_id=actor.id,
            ip_address=ip_address,
            diff_json={"status": {"old": "active", "new": "canceled"}, "reason": metadata.cancel_reason},
        )
        observe_invitation_transition(InvitationStatus.CANCELED.value, "api")
        return invitation

    async def validate(self, code: str) -> InvitationValidation:
        """Look up an invitation by code.

        An active invitation found past its expiry is flipped to ``expired``
        on the spot. Losing that race to the sweep is not an error.
        """
        invitation = await self.get_by_code(code)
        now = self.clock.now()
        is_expired = invitation.expires_at < now

        if invitation.status == InvitationStatus.ACTIVE and is_expired:
            await self.expire_one(invitation, source="lazy")

        status = invitation.status
        if status == InvitationStatus.ACTIVE and is_expired:
            status = InvitationStatus.EXPIRED
        return InvitationValidation(
            invitation=invitation,
            metadata=InvitationMetadata.from_column(invitation.metadata_json),
            status=status,
            can_be_used=status == InvitationStatus.ACTIVE and not is_expired,
        )

    async def get_by_code(self, code: str) -> Invitation:
        code = normalize_code(code)
        result = await self.db.execute(select(Invitation).where(Invitation.code == code))
        invitation = result.scalar_one_or_none()
        if invitation is None:
            raise InvitationNotFound()
        return invitation

    async def expire_one(self, invitation: Invitation, source: str) -> bool:
        """Conditionally move one invitation to ``expired``. False if it was no longer active."""
        now = self.clock.now()
        result = await self.db.execute(
            update(Invitation)
            .where(
                Invitation.id == invitation.id,
                Invitation.status == InvitationStatus.ACTIVE,
                Invitation.expires_at < now,
            )
            .values(status=InvitationStatus.EXPIRED, status_changed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(invitation)
        if result.rowcount:
            observe_invitation_transition(InvitationStatus.EXPIRED.value, source)
            return True
        return False

    async def list_invitations(
        self,
        workspace_id: UUID,
        actor: User,
        status: InvitationStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> InvitationPage:
        """List a workspace's invitations, newest first. Owners only."""
        workspace = await self.db.get(Workspace, workspace_id)
        if workspace is None:
            raise WorkspaceNotFound()
        if not is_workspace_owner(actor, workspace):
            raise NotAuthorized("Only workspace owners can view invitations")

        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)

        filters = [Invitation.workspace_id == workspace_id]
        if status is not None:
            filters.append(Invitation.status == status)

        total = (
            await self.db.execute(select(func.count()).select_from(Invitation).where(*filters))
        ).scalar_one()
        rows = await self.db.execute(
            select(Invitation)
            .where(*filters)
            .order_by(Invitation.created_at.desc(), Invitation.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return InvitationPage(
            invitations=list(rows.scalars().all()),
            page=page,
            limit=limit,
            total=total,
            stats=await self.status_counts(workspace_id),
        )

    async def status_counts(self, workspace_id: UUID) -> dict[str, int]:
        result = await self.db.execute(
            select(Invitation.status, func.count())
            .where(Invitation.workspace_id == workspace_id)
            .group_by(Invitation.status)
        )
        stats = {s.value: 0 for s in InvitationStatus}
        for status, count in result.all():
            stats[InvitationStatus(status).value] = count
        stats["total"] = sum(stats.values())
        return stats

    async def sweep_expired(self) -> SweepResult:
        """Expire every active invitation past ``expires_at``.

        A single ``UPDATE ... RETURNING`` claims the rows, so an overlapping
        run only sees what this one left behind.
        """
        now = self.clock.now()
        result = await self.db.execute(
            update(Invitation)
            .where(Invitation.status == InvitationStatus.ACTIVE, Invitation.expires_at < now)
            .values(status=InvitationStatus.EXPIRED, status_changed_at=now, updated_at=now)
            .returning(
                Invitation.id,
                Invitation.email,
                Invitation.workspace_id,
                Invitation.invited_by,
                Invitation.role,
                Invitation.metadata_json,
            )
            .execution_options(synchronize_session=False)
        )
        expired = result.all()
        observe_invitation_transition(InvitationStatus.EXPIRED.value, "sweep", len(expired))
        if not expired:
            return SweepResult()

        inviters = await self._emails_by_user_id({row.invited_by for row in expired})

        async def notify(row) -> Notification | bool:
            await self.audit_service.log(
                workspace_id=row.workspace_id,
                action=AuditAction.INVITATION_EXPIRE,
                entity_type="invitation",
                entity_id=row.id,
                diff_json={"status": {"old": "active", "new": "expired"}},
            )
            recipient = inviters.get(row.invited_by)
            if recipient is None:
                return True
            metadata = InvitationMetadata.from_column(row.metadata_json)
            notification = await self.notifications.enqueue(
                NotificationKind.INVITATION_EXPIRED,
                recipient=recipient,
                payload={
                    "inviter_name": metadata.inviter_name,
                    "workspace_name": metadata.workspace_name,
                    "invited_email": row.email,
                    "role": WorkspaceRole(row.role).value,
                },
                dedupe_key=f"invitation_expired:{row.id}",
            )
            return notification or True

        outcome = await process_each(
            self.db, "invitation_expiry", expired, notify, describe=lambda row: f"invitation {row.id}"
        )
        return SweepResult(
            expired_count=len(expired),
            notifications_queued=len(outcome.notifications),
            errors=outcome.errors,
            notifications=outcome.notifications,
        )

    async def send_expiry_reminders(self) -> JobResult:
        """Queue one reminder for each active invitation expiring within the window."""
        now = self.clock.now()
        window_end = now + timedelta(hours=self.settings.invitation_reminder_window_hours)
        result = await self.db.execute(
            select(Invitation).where(
                Invitation.status == InvitationStatus.ACTIVE,
                Invitation.expires_at >= now,
                Invitation.expires_at <= window_end,
                Invitation.reminder_sent_at.is_(None),
            )
        )
        due = list(result.scalars().all())

        async def remind(invitation: Invitation) -> Notification | bool:
            claimed = await self.db.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation.id,
                    Invitation.status == InvitationStatus.ACTIVE,
                    Invitation.reminder_sent_at.is_(None),
                )
                .values(reminder_sent_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                return False
            metadata = InvitationMetadata.from_column(invitation.metadata_json)
            notification = await self.notifications.enqueue(
                NotificationKind.INVITATION_REMINDER,
                recipient=invitation.email,
                payload={
                    "workspace_name": metadata.workspace_name,
                    "inviter_name": metadata.inviter_name,
                    "role": invitation.role.value,
                    "code": invitation.code,
                    "expires_at": invitation.expires_at.isoformat(),
                    "accept_url": self._accept_url(invitation.code),
                },
                dedupe_key=f"invitation_reminder:{invitation.id}",
            )
            return notification or True

        return await process_each(
            self.db,
            "invitation_reminders",
            due,
            remind,
            describe=lambda inv: f"invitation {inv.id}",
        )

    async def cleanup_old_invitations(self, retention_days: int | None = None) -> JobResult:
        """Delete terminal invitations whose status changed before the retention window."""
        days = int(
            retention_days if retention_days is not None else self.settings.invitation_retention_days
        )
        cutoff = self.clock.now() - timedelta(days=days)
        result = await self.db.execute(
            delete(Invitation)
            .where(
                Invitation.status != InvitationStatus.ACTIVE,
                Invitation.status_changed_at.is_not(None),
                Invitation.status_changed_at < cutoff,
            )
            .returning(Invitation.id)
            .execution_options(synchronize_session=False)
        )
        deleted = len(result.all())
        await self.db.flush()
        return JobResult(processed=deleted)

    async def _is_member(self, workspace_id: UUID, email: str) -> bool:
        result = await self.db.execute(
            select(User.id)
            .join(workspace_members, workspace_members.c.user_id == User.id)
            .where(workspace_members.c.workspace_id == workspace_id, func.lower(User.email) == email)
        )
        return result.first() is not None

    async def _get_active_invitation(self, workspace_id: UUID, email: str) -> Invitation | None:
        result = await self.db.execute(
            select(Invitation).where(
                Invitation.workspace_id == workspace_id,
                Invitation.email == email,
                Invitation.status == InvitationStatus.ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    async def _unused_code(self, attempts: int = 5) -> str:
        for _ in range(attempts):
            code = generate_code()
            existing = await self.db.execute(select(Invitation.id).where(Invitation.code == code))
            if existing.first() is None:
                return code
        raise RuntimeError("Could not generate a unique invitation code")

    async def _emails_by_user_id(self, user_ids: set[UUID]) -> dict[UUID, str]:
        result = await self.db.execute(select(User.id, User.email).where(User.id.in_(user_ids)))
        return {row.id: row.email for row in result.all()}

    def _accept_url(self, code: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/invitations/{code}"
