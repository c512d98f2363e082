"""Integration tests for the invitation expiry, reminder and retention jobs."""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import FrozenClock
from tenancy.models.audit_event import AuditEvent
from tenancy.models.enums import AuditAction, InvitationStatus, NotificationKind, WorkspaceRole
from tenancy.models.invitation import Invitation
from tenancy.models.notification import Notification
from tenancy.models.user import User
from tenancy.models.workspace import Workspace
from tenancy.services.invitation_service import InvitationService
from tenancy.services.notification_service import NotificationGateway
from tests.conftest import NOW, create_invitation


async def notifications_of(db: AsyncSession, kind: NotificationKind) -> list[Notification]:
    result = await db.execute(select(Notification).where(Notification.kind == kind))
    return list(result.scalars().all())


@pytest.mark.asyncio
class TestExpirySweep:
    async def test_expires_only_overdue_active_invitations(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        overdue = [
            await create_invitation(
                db, workspace, owner, f"late{i}@example.com", created_at=NOW - timedelta(days=8)
            )
            for i in range(2)
        ]
        current = await create_invitation(db, workspace, owner, "current@example.com")
        used = await create_invitation(
            db,
            workspace,
            owner,
            "used@example.com",
            status=InvitationStatus.USED,
            created_at=NOW - timedelta(days=9),
            status_changed_at=NOW - timedelta(days=8),
        )

        result = await InvitationService(db, clock).sweep_expired()

        assert result.expired_count == 2
        assert result.notifications_queued == 2
        assert result.errors == []

        for invitation in [*overdue, current, used]:
            await db.refresh(invitation)
        assert [inv.status for inv in overdue] == [InvitationStatus.EXPIRED] * 2
        assert all(inv.status_changed_at == NOW for inv in overdue)
        assert current.status == InvitationStatus.ACTIVE
        assert used.status == InvitationStatus.USED

        expired_notices = await notifications_of(db, NotificationKind.INVITATION_EXPIRED)
        assert {n.recipient for n in expired_notices} == {owner.email}
        assert {n.payload["invited_email"] for n in expired_notices} == {
            "late0@example.com",
            "late1@example.com",
        }

        audits = (
            await db.execute(
                select(AuditEvent).where(AuditEvent.action == AuditAction.INVITATION_EXPIRE)
            )
        ).scalars().all()
        assert len(audits) == 2

    async def test_second_run_is_a_no_op(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        await create_invitation(
            db, workspace, owner, "late@example.com", created_at=NOW - timedelta(days=8)
        )
        service = InvitationService(db, clock)

        first = await service.sweep_expired()
        second = await service.sweep_expired()

        assert first.expired_count == 1
        assert second.expired_count == 0
        assert second.notifications_queued == 0
        assert len(await notifications_of(db, NotificationKind.INVITATION_EXPIRED)) == 1

    async def test_expired_invitation_frees_the_email(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        await create_invitation(
            db, workspace, owner, "late@example.com", created_at=NOW - timedelta(days=8)
        )
        service = InvitationService(db, clock)
        await service.sweep_expired()

        created = await service.create(
            workspace_id=workspace.id,
            email="late@example.com",
            role=WorkspaceRole.PHARMACIST,
            inviter=owner,
        )

        assert created.invitation.status == InvitationStatus.ACTIVE

    async def test_admin_endpoint_runs_sweep_and_dispatches(
        self,
        client: AsyncClient,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        admin_headers: dict[str, str],
        gateway: NotificationGateway,
    ):
        await create_invitation(
            db, workspace, owner, "late@example.com", created_at=NOW - timedelta(days=8)
        )

        response = await client.post("/api/admin/invitations/expire", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"expiredCount": 1, "notificationsQueued": 1, "errors": []}
        assert len(gateway.dispatcher.ids) == 1

    async def test_admin_endpoint_requires_token(self, client: AsyncClient, db: AsyncSession):
        missing = await client.post("/api/admin/invitations/expire")
        wrong = await client.post(
            "/api/admin/invitations/expire", headers={"X-Admin-Token": "nope"}
        )

        assert missing.status_code == 403
        assert wrong.status_code == 403


@pytest.mark.asyncio
class TestExpiryReminders:
    async def test_reminds_once_inside_window(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        # Expires in 12 hours
        soon = await create_invitation(
            db, workspace, owner, "soon@example.com", created_at=NOW - timedelta(days=6, hours=12)
        )
        # Expires in 3 days
        await create_invitation(
            db, workspace, owner, "later@example.com", created_at=NOW - timedelta(days=4)
        )
        service = InvitationService(db, clock)

        first = await service.send_expiry_reminders()
        clock.advance(hours=1)
        second = await service.send_expiry_reminders()

        assert first.processed == 1
        assert len(first.notifications) == 1
        assert second.processed == 0

        reminders = await notifications_of(db, NotificationKind.INVITATION_REMINDER)
        assert [n.recipient for n in reminders] == ["soon@example.com"]
        assert reminders[0].payload["code"] == soon.code

        await db.refresh(soon)
        assert soon.reminder_sent_at == NOW

    async def test_no_reminder_for_inactive_invitations(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        await create_invitation(
            db,
            workspace,
            owner,
            "canceled@example.com",
            created_at=NOW - timedelta(days=6, hours=12),
            status=InvitationStatus.CANCELED,
            status_changed_at=NOW,
        )

        result = await InvitationService(db, clock).send_expiry_reminders()

        assert result.processed == 0


@pytest.mark.asyncio
class TestRetentionCleanup:
    async def test_deletes_only_old_terminal_invitations(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        old_used = await create_invitation(
            db,
            workspace,
            owner,
            "old.used@example.com",
            status=InvitationStatus.USED,
            created_at=NOW - timedelta(days=45),
            status_changed_at=NOW - timedelta(days=40),
        )
        old_expired = await create_invitation(
            db,
            workspace,
            owner,
            "old.expired@example.com",
            status=InvitationStatus.EXPIRED,
            created_at=NOW - timedelta(days=38),
            status_changed_at=NOW - timedelta(days=31),
        )
        recent_canceled = await create_invitation(
            db,
            workspace,
            owner,
            "recent@example.com",
            status=InvitationStatus.CANCELED,
            created_at=NOW - timedelta(days=12),
            status_changed_at=NOW - timedelta(days=10),
        )
        # Active rows are never deleted, however old
        stale_active = await create_invitation(
            db, workspace, owner, "stale@example.com", created_at=NOW - timedelta(days=60)
        )
        kept = {recent_canceled.id, stale_active.id}
        removed = {old_used.id, old_expired.id}

        result = await InvitationService(db, clock).cleanup_old_invitations()

        assert result.processed == 2
        remaining = set((await db.execute(select(Invitation.id))).scalars().all())
        assert remaining == kept
        assert not remaining & removed

    async def test_custom_retention_window(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        await create_invitation(
            db,
            workspace,
            owner,
            "recent@example.com",
            status=InvitationStatus.CANCELED,
            created_at=NOW - timedelta(days=12),
            status_changed_at=NOW - timedelta(days=10),
        )

        result = await InvitationService(db, clock).cleanup_old_invitations(retention_days=7)

        assert result.processed == 1
