"""Integration tests running acceptance and creation in concurrent sessions."""

import asyncio
from uuid import UUID

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenancy.core.clock import FrozenClock
from tenancy.core.errors import DuplicateActive, InvitationAlreadyUsed, MemberLimitExceeded
from tenancy.models.enums import InvitationStatus, WorkspaceRole
from tenancy.models.invitation import Invitation
from tenancy.models.user import User
from tenancy.models.workspace import Workspace, workspace_members
from tenancy.services.acceptance_service import AcceptanceResult, AcceptanceService
from tenancy.services.invitation_service import CreatedInvitation, InvitationService
from tests.conftest import add_member, create_invitation, create_user, test_engine


async def member_count(db: AsyncSession, workspace: Workspace) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(workspace_members)
        .where(workspace_members.c.workspace_id == workspace.id)
    )
    return result.scalar_one()


async def active_invitations(db: AsyncSession, workspace: Workspace, email: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Invitation)
        .where(
            Invitation.workspace_id == workspace.id,
            Invitation.email == email,
            Invitation.status == InvitationStatus.ACTIVE,
        )
    )
    return result.scalar_one()


async def accept_in_own_session(
    sessions: async_sessionmaker, code: str, user_id: UUID, clock: FrozenClock
) -> AcceptanceResult:
    async with sessions() as session:
        user = await session.get(User, user_id)
        result = await AcceptanceService(session, clock).accept(code, user)
        await session.commit()
        return result


async def invite_in_own_session(
    sessions: async_sessionmaker,
    workspace_id: UUID,
    inviter_id: UUID,
    email: str,
    clock: FrozenClock,
) -> CreatedInvitation:
    async with sessions() as session:
        inviter = await session.get(User, inviter_id)
        created = await InvitationService(session, clock).create(
            workspace_id, email, WorkspaceRole.PHARMACIST, inviter
        )
        await session.commit()
        return created


@pytest.mark.asyncio
class TestConcurrentAcceptance:
    async def test_simultaneous_accepts_of_one_code(
        self,
        db: AsyncSession,
        racing_sessions: async_sessionmaker,
        workspace: Workspace,
        owner: User,
        invitee: User,
        clock: FrozenClock,
    ):
        invitation = await create_invitation(db, workspace, owner, invitee.email)
        await db.commit()

        outcomes = await asyncio.gather(
            *(
                accept_in_own_session(racing_sessions, invitation.code, invitee.id, clock)
                for _ in range(5)
            ),
            return_exceptions=True,
        )

        accepted = [o for o in outcomes if isinstance(o, AcceptanceResult)]
        rejected = [o for o in outcomes if not isinstance(o, AcceptanceResult)]
        assert len(accepted) == 1
        assert len(rejected) == 4
        assert all(isinstance(error, InvitationAlreadyUsed) for error in rejected)

        assert await member_count(db, workspace) == 2
        await db.refresh(invitation)
        assert invitation.status == InvitationStatus.USED
        assert invitation.used_by == invitee.id

    async def test_last_seat_goes_to_one_of_two_invitees(
        self,
        db: AsyncSession,
        racing_sessions: async_sessionmaker,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        # Basic plan: 5 members; owner plus three leaves one seat
        for i in range(3):
            await add_member(db, workspace, await create_user(db, f"member{i}@example.com"))
        first = await create_user(db, "first@example.com")
        second = await create_user(db, "second@example.com")
        first_invite = await create_invitation(db, workspace, owner, first.email)
        second_invite = await create_invitation(db, workspace, owner, second.email)
        await db.commit()

        outcomes = await asyncio.gather(
            accept_in_own_session(racing_sessions, first_invite.code, first.id, clock),
            accept_in_own_session(racing_sessions, second_invite.code, second.id, clock),
            return_exceptions=True,
        )

        assert sum(isinstance(o, AcceptanceResult) for o in outcomes) == 1
        assert sum(isinstance(o, MemberLimitExceeded) for o in outcomes) == 1
        assert await member_count(db, workspace) == 5


@pytest.mark.asyncio
class TestConcurrentCreation:
    async def test_simultaneous_invites_for_one_email(
        self,
        db: AsyncSession,
        racing_sessions: async_sessionmaker,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        await db.commit()

        outcomes = await asyncio.gather(
            *(
                invite_in_own_session(
                    racing_sessions, workspace.id, owner.id, "new.hire@example.com", clock
                )
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        assert sum(isinstance(o, CreatedInvitation) for o in outcomes) == 1
        assert sum(isinstance(o, DuplicateActive) for o in outcomes) == 2
        assert await active_invitations(db, workspace, "new.hire@example.com") == 1

    async def test_insert_racing_past_duplicate_check(
        self,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        """Another session invites the same email after this one's duplicate check."""
        await db.commit()

        async with test_engine.connect() as conn:
            await conn.begin()
            creator = AsyncSession(bind=conn, expire_on_commit=False)
            other = AsyncSession(bind=conn, expire_on_commit=False)
            service = InvitationService(creator, clock)
            draw_code = service._unused_code

            async def invited_elsewhere_then_draw() -> str:
                await create_invitation(other, workspace, owner, "new.hire@example.com")
                return await draw_code()

            service._unused_code = invited_elsewhere_then_draw

            with pytest.raises(DuplicateActive):
                await service.create(
                    workspace.id, "new.hire@example.com", WorkspaceRole.PHARMACIST, owner
                )

            assert await active_invitations(creator, workspace, "new.hire@example.com") == 1
            await creator.close()
            await other.close()
            await conn.rollback()
