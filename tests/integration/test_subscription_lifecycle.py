"""Integration tests for the subscription lifecycle engine and endpoints."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import FrozenClock
from tenancy.core.errors import InvalidPlanChange
from tenancy.models.enums import NotificationKind, PlanTier, SubscriptionStatus
from tenancy.models.notification import Notification
from tenancy.models.plan import Plan
from tenancy.models.subscription import Subscription
from tenancy.models.user import User
from tenancy.models.workspace import Workspace
from tenancy.schemas.metadata import PlanLimits, ScheduledDowngrade
from tenancy.services.notification_service import NotificationGateway
from tenancy.services.subscription_service import SubscriptionService
from tests.conftest import (
    NOW,
    add_member,
    auth_headers,
    create_subscription,
    create_user,
    create_workspace,
)


async def notifications_of(db: AsyncSession, kind: NotificationKind) -> list[Notification]:
    result = await db.execute(select(Notification).where(Notification.kind == kind))
    return list(result.scalars().all())


@pytest_asyncio.fixture
async def trial_workspace(
    db: AsyncSession, owner: User, plans: dict[PlanTier, Plan]
) -> tuple[Workspace, Subscription]:
    """Workspace whose 14-day trial ended an hour ago."""
    workspace = await create_workspace(db, owner, name="Trial Pharmacy")
    subscription = await create_subscription(
        db,
        workspace,
        plans[PlanTier.FREE_TRIAL],
        status=SubscriptionStatus.TRIAL,
        start_date=NOW - timedelta(days=14, hours=1),
        trial_end_date=NOW - timedelta(hours=1),
    )
    return workspace, subscription


@pytest_asyncio.fixture
async def pro_workspace(
    db: AsyncSession, owner: User, plans: dict[PlanTier, Plan]
) -> tuple[Workspace, Subscription]:
    """Workspace on an active Pro subscription ending in 5 days."""
    workspace = await create_workspace(db, owner, name="Pro Pharmacy")
    subscription = await create_subscription(
        db,
        workspace,
        plans[PlanTier.PRO],
        end_date=NOW + timedelta(days=5),
    )
    return workspace, subscription


@pytest.mark.asyncio
class TestTrialExpiry:
    async def test_expires_trial_and_mirrors_workspace(
        self,
        db: AsyncSession,
        trial_workspace: tuple[Workspace, Subscription],
        owner: User,
        clock: FrozenClock,
    ):
        workspace, subscription = trial_workspace
        service = SubscriptionService(db, clock)

        first = await service.expire_trials()
        second = await service.expire_trials()

        assert first.processed == 1
        assert first.errors == []
        assert len(first.notifications) == 1
        assert second.processed == 0

        await db.refresh(subscription)
        await db.refresh(workspace)
        assert subscription.status == SubscriptionStatus.EXPIRED
        assert workspace.subscription_status == SubscriptionStatus.EXPIRED

        notices = await notifications_of(db, NotificationKind.TRIAL_EXPIRED)
        assert [n.recipient for n in notices] == [owner.email]
        assert notices[0].payload["workspace_name"] == "Trial Pharmacy"

    async def test_expired_trial_blocks_new_invitations(
        self,
        client: AsyncClient,
        db: AsyncSession,
        trial_workspace: tuple[Workspace, Subscription],
        owner: User,
        clock: FrozenClock,
    ):
        workspace, _ = trial_workspace
        await SubscriptionService(db, clock).expire_trials()
        await db.refresh(workspace)

        response = await client.post(
            f"/api/workspaces/{workspace.id}/invitations",
            headers=auth_headers(owner),
            json={"email": "new.hire@example.com", "role": "Pharmacist"},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "subscription_inactive"

    async def test_trial_still_running_is_untouched(
        self,
        db: AsyncSession,
        owner: User,
        plans: dict[PlanTier, Plan],
        clock: FrozenClock,
    ):
        workspace = await create_workspace(db, owner)
        subscription = await create_subscription(
            db,
            workspace,
            plans[PlanTier.FREE_TRIAL],
            status=SubscriptionStatus.TRIAL,
            trial_end_date=NOW + timedelta(days=4),
        )

        result = await SubscriptionService(db, clock).expire_trials()

        assert result.processed == 0
        await db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.TRIAL


@pytest.mark.asyncio
class TestPastDueAndGracePeriod:
    async def test_lapse_then_expire_after_grace(
        self,
        db: AsyncSession,
        workspace: Workspace,
        clock: FrozenClock,
    ):
        subscription = await SubscriptionService(db, clock).get_current(workspace)
        clock.advance(days=31)
        lapsed_at = clock.now()

        past_due = await SubscriptionService(db, clock).mark_past_due()

        assert past_due.processed == 1
        await db.refresh(subscription)
        await db.refresh(workspace)
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.grace_period_end == lapsed_at + timedelta(days=7)
        assert workspace.subscription_status == SubscriptionStatus.PAST_DUE
        assert len(await notifications_of(db, NotificationKind.SUBSCRIPTION_PAST_DUE)) == 1

        # Still inside the grace period
        clock.advance(days=6)
        assert (await SubscriptionService(db, clock).expire_grace_periods()).processed == 0

        clock.advance(days=2)
        expired = await SubscriptionService(db, clock).expire_grace_periods()

        assert expired.processed == 1
        await db.refresh(subscription)
        await db.refresh(workspace)
        assert subscription.status == SubscriptionStatus.EXPIRED
        assert subscription.grace_period_end is None
        assert workspace.subscription_status == SubscriptionStatus.EXPIRED
        assert len(await notifications_of(db, NotificationKind.SUBSCRIPTION_EXPIRED)) == 1

    async def test_past_due_workspace_can_still_invite(
        self,
        client: AsyncClient,
        db: AsyncSession,
        workspace: Workspace,
        owner: User,
        clock: FrozenClock,
    ):
        clock.advance(days=31)
        await SubscriptionService(db, clock).mark_past_due()
        await db.refresh(workspace)

        response = await client.post(
            f"/api/workspaces/{workspace.id}/invitations",
            headers=auth_headers(owner),
            json={"email": "new.hire@example.com", "role": "Pharmacist"},
        )

        assert response.status_code == 201


@pytest.mark.asyncio
class TestScheduledDowngrade:
    async def test_schedule_via_api_and_apply_once(
        self,
        client: AsyncClient,
        db: AsyncSession,
        pro_workspace: tuple[Workspace, Subscription],
        owner: User,
        plans: dict[PlanTier, Plan],
        clock: FrozenClock,
        gateway: NotificationGateway,
    ):
        workspace, subscription = pro_workspace
        basic = plans[PlanTier.BASIC]

        response = await client.post(
            f"/api/workspaces/{workspace.id}/subscription/downgrade",
            headers=auth_headers(owner),
            json={"planId": str(basic.id)},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["newPlan"] == "Basic"
        assert datetime.fromisoformat(data["effectiveDate"]) == NOW + timedelta(days=5)
        assert len(gateway.dispatcher.ids) == 1

        await db.refresh(subscription)
        downgrade = ScheduledDowngrade.from_column(subscription.scheduled_downgrade)
        assert downgrade.plan_id == basic.id
        assert subscription.tier == PlanTier.PRO

        clock.advance(days=5, minutes=1)
        service = SubscriptionService(db, clock)
        first = await service.apply_scheduled_downgrades()
        second = await service.apply_scheduled_downgrades()

        assert first.processed == 1
        assert second.processed == 0

        await db.refresh(subscription)
        await db.refresh(workspace)
        assert subscription.tier == PlanTier.BASIC
        assert subscription.plan_id == basic.id
        assert subscription.price_at_purchase == Decimal("49.00")
        assert PlanLimits.from_column(subscription.limits).users == 5
        assert subscription.scheduled_downgrade is None
        assert workspace.current_plan_id == basic.id
        assert len(await notifications_of(db, NotificationKind.SUBSCRIPTION_DOWNGRADED)) == 1

    async def test_not_applied_before_effective_date(
        self,
        db: AsyncSession,
        pro_workspace: tuple[Workspace, Subscription],
        plans: dict[PlanTier, Plan],
        owner: User,
        clock: FrozenClock,
    ):
        workspace, subscription = pro_workspace
        service = SubscriptionService(db, clock)
        await service.schedule_downgrade(workspace, plans[PlanTier.BASIC].id, actor=owner)

        result = await service.apply_scheduled_downgrades()

        assert result.processed == 0
        await db.refresh(subscription)
        assert subscription.tier == PlanTier.PRO

    async def test_upgrade_is_not_a_downgrade(
        self,
        client: AsyncClient,
        workspace: Workspace,
        owner: User,
        plans: dict[PlanTier, Plan],
    ):
        response = await client.post(
            f"/api/workspaces/{workspace.id}/subscription/downgrade",
            headers=auth_headers(owner),
            json={"planId": str(plans[PlanTier.PRO].id)},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_plan_change"

    async def test_trial_cannot_schedule_downgrade(
        self,
        db: AsyncSession,
        trial_workspace: tuple[Workspace, Subscription],
        plans: dict[PlanTier, Plan],
        clock: FrozenClock,
    ):
        workspace, _ = trial_workspace

        with pytest.raises(InvalidPlanChange):
            await SubscriptionService(db, clock).schedule_downgrade(
                workspace, plans[PlanTier.BASIC].id
            )

    async def test_only_owner_can_downgrade(
        self,
        client: AsyncClient,
        db: AsyncSession,
        workspace: Workspace,
        plans: dict[PlanTier, Plan],
    ):
        member = await add_member(db, workspace, await create_user(db, "tech@example.com"))

        response = await client.post(
            f"/api/workspaces/{workspace.id}/subscription/downgrade",
            headers=auth_headers(member),
            json={"planId": str(plans[PlanTier.FREE_TRIAL].id)},
        )

        assert response.status_code == 403


@pytest.mark.asyncio
class TestWarnings:
    async def test_trial_warning_sent_once(
        self,
        db: AsyncSession,
        owner: User,
        plans: dict[PlanTier, Plan],
        clock: FrozenClock,
    ):
        workspace = await create_workspace(db, owner)
        await create_subscription(
            db,
            workspace,
            plans[PlanTier.FREE_TRIAL],
            status=SubscriptionStatus.TRIAL,
            trial_end_date=NOW + timedelta(days=2),
        )
        service = SubscriptionService(db, clock)

        first = await service.send_trial_warnings()
        clock.advance(hours=6)
        second = await service.send_trial_warnings()

        assert first.processed == 1
        assert second.processed == 0
        notices = await notifications_of(db, NotificationKind.TRIAL_ENDING)
        assert len(notices) == 1
        assert notices[0].payload["trial_end_date"] == (NOW + timedelta(days=2)).date().isoformat()

    async def test_renewal_warning_sent_once(
        self,
        db: AsyncSession,
        workspace: Workspace,
        clock: FrozenClock,
    ):
        service = SubscriptionService(db, clock)
        assert (await service.send_renewal_warnings()).processed == 0

        clock.advance(days=25)
        first = await service.send_renewal_warnings()
        second = await service.send_renewal_warnings()

        assert first.processed == 1
        assert second.processed == 0
        notices = await notifications_of(db, NotificationKind.SUBSCRIPTION_ENDING)
        assert len(notices) == 1
        assert notices[0].payload["plan_name"] == "Basic"


@pytest.mark.asyncio
class TestLifecyclePass:
    async def test_full_pass_is_idempotent(
        self,
        db: AsyncSession,
        trial_workspace: tuple[Workspace, Subscription],
        clock: FrozenClock,
    ):
        service = SubscriptionService(db, clock)

        first = await service.run_lifecycle_pass()
        second = await service.run_lifecycle_pass()

        assert first.trials_expired.processed == 1
        assert first.errors == []
        assert all(job.processed == 0 for job in second.jobs().values())

    async def test_admin_endpoint_reports_each_job(
        self,
        client: AsyncClient,
        trial_workspace: tuple[Workspace, Subscription],
        admin_headers: dict[str, str],
        gateway: NotificationGateway,
    ):
        response = await client.post("/api/admin/subscriptions/lifecycle", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["trialsExpired"] == {"processed": 1, "errors": []}
        assert data["markedPastDue"] == {"processed": 0, "errors": []}
        assert set(data) == {
            "trialsExpired",
            "markedPastDue",
            "gracePeriodsExpired",
            "downgradesApplied",
            "trialWarningsSent",
            "renewalWarningsSent",
        }
        assert len(gateway.dispatcher.ids) == 1


@pytest.mark.asyncio
class TestSubscriptionService:
    async def test_start_trial(
        self,
        db: AsyncSession,
        owner: User,
        plans: dict[PlanTier, Plan],
        clock: FrozenClock,
    ):
        workspace = await create_workspace(db, owner)

        subscription = await SubscriptionService(db, clock).start_trial(workspace)

        assert subscription.status == SubscriptionStatus.TRIAL
        assert subscription.plan_id == plans[PlanTier.FREE_TRIAL].id
        assert subscription.trial_end_date == NOW + timedelta(days=14)
        assert workspace.current_subscription_id == subscription.id
        assert workspace.subscription_status == SubscriptionStatus.TRIAL

    async def test_activate_supersedes_current(
        self,
        db: AsyncSession,
        trial_workspace: tuple[Workspace, Subscription],
        plans: dict[PlanTier, Plan],
        clock: FrozenClock,
    ):
        workspace, trial = trial_workspace
        service = SubscriptionService(db, clock)

        active = await service.activate(workspace, plans[PlanTier.PRO])

        assert trial.superseded_at == NOW
        assert active.status == SubscriptionStatus.ACTIVE
        assert active.end_date == NOW + timedelta(days=30)
        assert (await service.get_current(workspace)).id == active.id
        assert workspace.current_plan_id == plans[PlanTier.PRO].id

    async def test_superseded_subscription_is_skipped_by_jobs(
        self,
        db: AsyncSession,
        trial_workspace: tuple[Workspace, Subscription],
        plans: dict[PlanTier, Plan],
        clock: FrozenClock,
    ):
        workspace, trial = trial_workspace
        service = SubscriptionService(db, clock)
        await service.activate(workspace, plans[PlanTier.BASIC])

        result = await service.expire_trials()

        assert result.processed == 0
        await db.refresh(trial)
        assert trial.status == SubscriptionStatus.TRIAL


@pytest.mark.asyncio
class TestSubscriptionEndpoint:
    async def test_member_reads_subscription(
        self, client: AsyncClient, workspace: Workspace, owner: User, plans: dict[PlanTier, Plan]
    ):
        response = await client.get(
            f"/api/workspaces/{workspace.id}/subscription", headers=auth_headers(owner)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "basic"
        assert data["status"] == "active"
        assert data["planId"] == str(plans[PlanTier.BASIC].id)
        assert data["limits"]["users"] == 5
        assert data["scheduledDowngrade"] is None

    async def test_outsider_cannot_read(
        self, client: AsyncClient, db: AsyncSession, workspace: Workspace
    ):
        outsider = await create_user(db, "outsider@example.com")

        response = await client.get(
            f"/api/workspaces/{workspace.id}/subscription", headers=auth_headers(outsider)
        )

        assert response.status_code == 403
