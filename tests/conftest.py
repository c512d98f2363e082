"""Pytest fixtures for testing."""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from decimal import Decimal

TEST_DATABASE_URL = os.environ.get(
    "TEST_DATABASE_URL", "sqlite+aiosqlite:///./.pytest-tenancy.db"
)
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tenancy.core.clock import FrozenClock, get_clock
from tenancy.core.database import enable_sqlite_savepoints, get_db
from tenancy.core.security import create_access_token
from tenancy.main import app
from tenancy.models.base import Base
from tenancy.models.enums import (
    InvitationStatus,
    PlanTier,
    SubscriptionStatus,
    WorkspaceRole,
)
from tenancy.models.invitation import Invitation
from tenancy.models.plan import Plan
from tenancy.models.subscription import Subscription
from tenancy.models.user import User
from tenancy.models.workspace import Workspace, workspace_members
from tenancy.schemas.metadata import InvitationMetadata, PlanLimits
from tenancy.services.invitation_service import generate_code
from tenancy.services.notification_service import NotificationGateway, get_notification_gateway

# Every test starts at this instant unless it moves the clock
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=NullPool,
)
if test_engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(test_engine)

TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class RecordingDispatcher:
    """Stands in for the Celery dispatch; records ids or fails on demand."""

    def __init__(self):
        self.ids: list[str] = []
        self.fail = False

    def __call__(self, notification_id: str) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.ids.append(notification_id)


@pytest_asyncio.fixture(scope="function")
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Create test database session.

    Creates all tables before each test and drops them after.
    Drops everything first to ensure clean slate even if previous test crashed.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def racing_sessions(db: AsyncSession) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory on a separate engine for tests that run sessions side by side.

    Rows must be committed through ``db`` before these sessions can see them.
    On SQLite each transaction takes the write lock when it begins, so the
    sessions queue on the database lock.
    """
    is_sqlite = test_engine.dialect.name == "sqlite"
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30} if is_sqlite else {},
    )
    if is_sqlite:
        enable_sqlite_savepoints(engine, begin="BEGIN IMMEDIATE")
    try:
        yield async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
    finally:
        await engine.dispose()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture()
def gateway() -> NotificationGateway:
    return NotificationGateway(dispatcher=RecordingDispatcher())


@pytest_asyncio.fixture(scope="function")
async def client(
    db: AsyncSession,
    clock: FrozenClock,
    gateway: NotificationGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database, clock and gateway overrides.

    Args:
        db: Test database session
        clock: Frozen clock shared with the test
        gateway: Gateway whose dispatcher records notification ids

    Yields:
        AsyncClient configured for testing
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_notification_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": os.environ["ADMIN_TOKEN"]}


def auth_headers(user: User) -> dict[str, str]:
    """Bearer header the identity service would issue for ``user``."""
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


# Factories


async def create_plan(
    db: AsyncSession,
    tier: PlanTier,
    users: int | None = None,
    price: str = "0",
    name: str | None = None,
) -> Plan:
    plan = Plan(
        name=name or tier.value.replace("_", " ").title(),
        tier=tier,
        version=1,
        price=Decimal(price),
        limits=PlanLimits(users=users).to_column(),
    )
    db.add(plan)
    await db.flush()
    return plan


async def create_user(
    db: AsyncSession,
    email: str,
    first_name: str = "Test",
    last_name: str = "User",
) -> User:
    """User factory for creating test users."""
    user = User(email=email, first_name=first_name, last_name=last_name)
    db.add(user)
    await db.flush()
    return user


async def add_member(
    db: AsyncSession,
    workspace: Workspace,
    user: User,
    role: WorkspaceRole = WorkspaceRole.PHARMACIST,
) -> User:
    await db.execute(
        workspace_members.insert().values(workspace_id=workspace.id, user_id=user.id, joined_at=NOW)
    )
    user.workspace_id = workspace.id
    user.workspace_role = role
    await db.flush()
    return user


async def create_workspace(
    db: AsyncSession,
    owner: User,
    name: str = "Main Street Pharmacy",
    max_pending_invites: int = 20,
) -> Workspace:
    """Workspace with its owner as the first member."""
    workspace = Workspace(name=name, owner_id=owner.id, max_pending_invites=max_pending_invites)
    db.add(workspace)
    await db.flush()
    await add_member(db, workspace, owner, WorkspaceRole.OWNER)
    return workspace


async def create_subscription(
    db: AsyncSession,
    workspace: Workspace,
    plan: Plan,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    start_date: datetime = NOW - timedelta(days=10),
    trial_end_date: datetime | None = None,
    end_date: datetime | None = None,
    grace_period_end: datetime | None = None,
) -> Subscription:
    """Current subscription for ``workspace``; also sets the workspace mirror."""
    subscription = Subscription(
        workspace_id=workspace.id,
        plan_id=plan.id,
        tier=plan.tier,
        status=status,
        price_at_purchase=plan.price,
        start_date=start_date,
        trial_end_date=trial_end_date,
        end_date=end_date,
        grace_period_end=grace_period_end,
        limits=plan.limits,
    )
    db.add(subscription)
    await db.flush()
    workspace.current_subscription_id = subscription.id
    workspace.current_plan_id = plan.id
    workspace.subscription_status = status
    await db.flush()
    return subscription


async def create_invitation(
    db: AsyncSession,
    workspace: Workspace,
    inviter: User,
    email: str,
    role: WorkspaceRole = WorkspaceRole.PHARMACIST,
    status: InvitationStatus = InvitationStatus.ACTIVE,
    created_at: datetime = NOW,
    expires_at: datetime | None = None,
    status_changed_at: datetime | None = None,
    used_by: User | None = None,
) -> Invitation:
    """Invitation inserted directly, bypassing the capacity checks."""
    invitation = Invitation(
        code=generate_code(),
        email=email,
        workspace_id=workspace.id,
        invited_by=inviter.id,
        role=role,
        status=status,
        expires_at=expires_at or created_at + timedelta(days=7),
        status_changed_at=status_changed_at,
        metadata_json=InvitationMetadata(
            inviter_name=inviter.display_name, workspace_name=workspace.name
        ).to_column(),
        created_at=created_at,
        updated_at=created_at,
    )
    if status == InvitationStatus.USED:
        invitation.used_by = (used_by or inviter).id
        invitation.used_at = status_changed_at or created_at
    db.add(invitation)
    await db.flush()
    return invitation


# Shared fixtures


@pytest_asyncio.fixture
async def plans(db: AsyncSession) -> dict[PlanTier, Plan]:
    return {
        PlanTier.FREE_TRIAL: await create_plan(db, PlanTier.FREE_TRIAL, users=3),
        PlanTier.BASIC: await create_plan(db, PlanTier.BASIC, users=5, price="49.00"),
        PlanTier.PRO: await create_plan(db, PlanTier.PRO, users=25, price="149.00"),
        PlanTier.ENTERPRISE: await create_plan(db, PlanTier.ENTERPRISE, price="499.00"),
    }


@pytest_asyncio.fixture
async def owner(db: AsyncSession) -> User:
    return await create_user(db, "owner@example.com", first_name="Olivia", last_name="Owner")


@pytest_asyncio.fixture
async def workspace(db: AsyncSession, owner: User, plans: dict[PlanTier, Plan]) -> Workspace:
    """Workspace on an active Basic subscription (5 members) ending in 30 days."""
    workspace = await create_workspace(db, owner)
    await create_subscription(
        db,
        workspace,
        plans[PlanTier.BASIC],
        end_date=NOW + timedelta(days=30),
    )
    return workspace


@pytest_asyncio.fixture
async def invitee(db: AsyncSession) -> User:
    return await create_user(db, "new.hire@example.com", first_name="Nina", last_name="Hire")
