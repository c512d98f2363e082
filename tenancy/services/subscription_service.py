"""Subscription lifecycle engine.

Request-facing operations (trial start, activation, downgrade scheduling) and
the scheduler jobs that move subscriptions through
trial -> active -> past_due -> expired.

Every scheduler transition is a conditional UPDATE on the row's current status
and runs in its own savepoint; the workspace's ``subscription_status`` mirror
is written in the same savepoint.
"""
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import null, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, SystemClock
from tenancy.core.config import get_settings
from tenancy.core.errors import InvalidPlanChange, PlanNotFound, SubscriptionNotFound
from tenancy.core.metrics import observe_subscription_transition
from tenancy.core.structured_logging import log_json
from tenancy.core.subscription_workflow import is_valid_transition
from tenancy.models.enums import AuditAction, NotificationKind, PlanTier, SubscriptionStatus
from tenancy.models.notification import Notification
from tenancy.models.plan import Plan
from tenancy.models.subscription import Subscription
from tenancy.models.user import User
from tenancy.models.workspace import Workspace
from tenancy.schemas.metadata import PlanLimits, ScheduledDowngrade
from tenancy.services.audit_service import AuditService
from tenancy.services.job_result import JobResult, process_each
from tenancy.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class LifecycleReport:
    trials_expired: JobResult = field(default_factory=JobResult)
    downgrades_applied: JobResult = field(default_factory=JobResult)
    marked_past_due: JobResult = field(default_factory=JobResult)
    grace_periods_expired: JobResult = field(default_factory=JobResult)
    trial_warnings_sent: JobResult = field(default_factory=JobResult)
    renewal_warnings_sent: JobResult = field(default_factory=JobResult)

    def jobs(self) -> dict[str, JobResult]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def notifications(self) -> list[Notification]:
        return [n for job in self.jobs().values() for n in job.notifications]

    @property
    def errors(self) -> list[str]:
        return [e for job in self.jobs().values() for e in job.errors]

    def as_dict(self) -> dict[str, Any]:
        return {name: job.as_dict() for name, job in self.jobs().items()}


@dataclass
class ScheduledDowngradeResult:
    subscription: Subscription
    plan: Plan
    effective_date: datetime
    notification: Notification | None


def _iso(value: datetime | None) -> str | None:
    return value.date().isoformat() if value else None


class SubscriptionService:
    """Service for workspace subscriptions."""

    def __init__(self, db: AsyncSession, clock: Clock | None = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.settings = get_settings()
        self.audit_service = AuditService(db)
        self.notifications = NotificationService(db, self.clock)

    # Request-facing operations

    async def get_current(self, workspace: Workspace) -> Subscription:
        """Return the workspace's current (non-superseded) subscription."""
        if workspace.current_subscription_id is not None:
            subscription = await self.db.get(Subscription, workspace.current_subscription_id)
            if subscription is not None and subscription.superseded_at is None:
                return subscription

        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.workspace_id == workspace.id,
                Subscription.superseded_at.is_(None),
            )
            .order_by(Subscription.start_date.desc())
            .limit(1)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFound()
        return subscription

    async def start_trial(self, workspace: Workspace, plan: Plan | None = None) -> Subscription:
        """Start a free trial for a workspace that has no subscription yet."""
        if plan is None:
            plan = await self._latest_plan(PlanTier.FREE_TRIAL)
        now = self.clock.now()
        subscription = Subscription(
            workspace_id=workspace.id,
            plan_id=plan.id,
            tier=plan.tier,
            status=SubscriptionStatus.TRIAL,
            price_at_purchase=Decimal("0"),
            start_date=now,
            trial_end_date=now + timedelta(days=self.settings.trial_days),
            limits=PlanLimits.from_column(plan.limits).to_column(),
        )
        return await self._make_current(workspace, subscription, superseded=None)

    async def activate(
        self,
        workspace: Workspace,
        plan: Plan,
        period_days: int = 30,
    ) -> Subscription:
        """Start a paid period on ``plan``, superseding the current subscription."""
        try:
            current = await self.get_current(workspace)
        except SubscriptionNotFound:
            current = None

        now = self.clock.now()
        subscription = Subscription(
            workspace_id=workspace.id,
            plan_id=plan.id,
            tier=plan.tier,
            status=SubscriptionStatus.ACTIVE,
            price_at_purchase=plan.price,
            start_date=now,
            end_date=now + timedelta(days=period_days),
            limits=PlanLimits.from_column(plan.limits).to_column(),
        )
        return await self._make_current(workspace, subscription, superseded=current)

    async def schedule_downgrade(
        self,
        workspace: Workspace,
        plan_id: UUID,
        actor: User | None = None,
    ) -> ScheduledDowngradeResult:
        """Schedule a move to a lower tier at the end of the current period.

        Raises:
            SubscriptionNotFound, PlanNotFound, InvalidPlanChange
        """
        subscription = await self.get_current(workspace)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidPlanChange(
                "Only active subscriptions can be downgraded",
                status=subscription.status.value,
            )

        plan = await self.db.get(Plan, plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFound()
        if plan.tier.rank >= subscription.tier.rank:
            raise InvalidPlanChange(
                "Target plan must be a lower tier than the current plan",
                currentTier=subscription.tier.value,
                targetTier=plan.tier.value,
            )

        now = self.clock.now()
        effective_date = subscription.end_date or now
        downgrade = ScheduledDowngrade(plan_id=plan.id, effective_date=effective_date, scheduled_at=now)
        subscription.scheduled_downgrade = downgrade.to_column()
        await self.db.flush()

        await self.audit_service.log(
            workspace_id=workspace.id,
            action=AuditAction.SUBSCRIPTION_DOWNGRADE_SCHEDULE,
            entity_type="subscription",
            entity_id=subscription.id,
            user_id=actor.id if actor else None,
            diff_json={
                "from_tier": subscription.tier.value,
                "to_tier": plan.tier.value,
                "effective_date": effective_date.isoformat(),
            },
        )

        owner = await self._owner(workspace)
        current_plan = await self.db.get(Plan, subscription.plan_id)
        notification = None
        if owner is not None:
            notification = await self.notifications.enqueue(
                NotificationKind.DOWNGRADE_SCHEDULED,
                recipient=owner.email,
                payload={
                    "workspace_name": workspace.name,
                    "current_plan_name": current_plan.name,
                    "new_plan_name": plan.name,
                    "effective_date": _iso(effective_date),
                },
            )
        return ScheduledDowngradeResult(
            subscription=subscription,
            plan=plan,
            effective_date=effective_date,
            notification=notification,
        )

    # Scheduler jobs

    async def expire_trials(self) -> JobResult:
        """Expire trials whose ``trial_end_date`` has passed."""
        now = self.clock.now()
        due = await self._candidates(
            SubscriptionStatus.TRIAL,
            Subscription.trial_end_date.is_not(None),
            Subscription.trial_end_date < now,
        )

        async def expire(subscription: Subscription) -> Notification | bool:
            if not await self._transition(
                subscription,
                SubscriptionStatus.EXPIRED,
                Subscription.trial_end_date < now,
            ):
                return False
            return await self._notify_owner(
                subscription,
                NotificationKind.TRIAL_EXPIRED,
                trial_end_date=_iso(subscription.trial_end_date),
            )

        return await self._run("trial_expiry", due, expire)

    async def mark_past_due(self) -> JobResult:
        """Move lapsed active subscriptions into the grace period."""
        now = self.clock.now()
        due = await self._candidates(
            SubscriptionStatus.ACTIVE,
            Subscription.end_date.is_not(None),
            Subscription.end_date < now,
        )

        async def lapse(subscription: Subscription) -> Notification | bool:
            grace_end = now + timedelta(days=self.settings.grace_period_days)
            if not await self._transition(
                subscription,
                SubscriptionStatus.PAST_DUE,
                Subscription.end_date < now,
                grace_period_end=grace_end,
            ):
                return False
            return await self._notify_owner(
                subscription,
                NotificationKind.SUBSCRIPTION_PAST_DUE,
                end_date=_iso(subscription.end_date),
                grace_period_end=_iso(grace_end),
            )

        return await self._run("past_due", due, lapse)

    async def expire_grace_periods(self) -> JobResult:
        """Expire past-due subscriptions whose grace period has ended."""
        now = self.clock.now()
        due = await self._candidates(
            SubscriptionStatus.PAST_DUE,
            Subscription.grace_period_end < now,
        )

        async def expire(subscription: Subscription) -> Notification | bool:
            grace_end = subscription.grace_period_end
            if not await self._transition(
                subscription,
                SubscriptionStatus.EXPIRED,
                Subscription.grace_period_end < now,
                grace_period_end=None,
            ):
                return False
            return await self._notify_owner(
                subscription,
                NotificationKind.SUBSCRIPTION_EXPIRED,
                grace_period_end=_iso(grace_end),
            )

        return await self._run("grace_period_expiry", due, expire)

    async def apply_scheduled_downgrades(self) -> JobResult:
        """Apply downgrades whose effective date has been reached."""
        now = self.clock.now()
        candidates = await self._candidates(
            SubscriptionStatus.ACTIVE,
            Subscription.scheduled_downgrade.is_not(None),
        )
        due = []
        for subscription in candidates:
            downgrade = ScheduledDowngrade.from_column(subscription.scheduled_downgrade)
            if downgrade is not None and downgrade.effective_date <= now:
                due.append(subscription)

        async def apply(subscription: Subscription) -> Notification | bool:
            downgrade = ScheduledDowngrade.from_column(subscription.scheduled_downgrade)
            plan = await self.db.get(Plan, downgrade.plan_id)
            if plan is None:
                raise PlanNotFound(f"Downgrade target plan {downgrade.plan_id} not found")

            old_tier = subscription.tier
            result = await self.db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription.id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.superseded_at.is_(None),
                    Subscription.scheduled_downgrade.is_not(None),
                )
                .values(
                    plan_id=plan.id,
                    tier=plan.tier,
                    limits=PlanLimits.from_column(plan.limits).to_column(),
                    price_at_purchase=plan.price,
                    scheduled_downgrade=null(),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return False

            await self.db.execute(
                update(Workspace)
                .where(
                    Workspace.id == subscription.workspace_id,
                    Workspace.current_subscription_id == subscription.id,
                )
                .values(current_plan_id=plan.id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(
                subscription,
                [
                    "plan_id",
                    "tier",
                    "limits",
                    "price_at_purchase",
                    "scheduled_downgrade",
                    "updated_at",
                    "plan",
                ],
            )
            await self.audit_service.log(
                workspace_id=subscription.workspace_id,
                action=AuditAction.SUBSCRIPTION_DOWNGRADE_APPLY,
                entity_type="subscription",
                entity_id=subscription.id,
                diff_json={"from_tier": old_tier.value, "to_tier": plan.tier.value},
            )
            observe_subscription_transition("downgrade")
            return await self._notify_owner(
                subscription,
                NotificationKind.SUBSCRIPTION_DOWNGRADED,
                new_plan_name=plan.name,
            )

        return await self._run("downgrades", due, apply)

    async def send_trial_warnings(self) -> JobResult:
        """Warn owners once when their trial ends within the warning window."""
        now = self.clock.now()
        window_end = now + timedelta(days=self.settings.trial_warning_days)
        due = await self._candidates(
            SubscriptionStatus.TRIAL,
            Subscription.trial_end_date >= now,
            Subscription.trial_end_date <= window_end,
            Subscription.trial_warning_sent_at.is_(None),
        )

        async def warn(subscription: Subscription) -> Notification | bool:
            if not await self._stamp(subscription, Subscription.trial_warning_sent_at, now):
                return False
            notification = await self._notify_owner(
                subscription,
                NotificationKind.TRIAL_ENDING,
                dedupe_key=f"trial_ending:{subscription.id}",
                trial_end_date=_iso(subscription.trial_end_date),
            )
            return notification or True

        return await self._run("trial_warnings", due, warn)

    async def send_renewal_warnings(self) -> JobResult:
        """Warn owners once when an active period ends within the warning window."""
        now = self.clock.now()
        window_end = now + timedelta(days=self.settings.renewal_warning_days)
        due = await self._candidates(
            SubscriptionStatus.ACTIVE,
            Subscription.end_date >= now,
            Subscription.end_date <= window_end,
            Subscription.renewal_warning_sent_at.is_(None),
        )

        async def warn(subscription: Subscription) -> Notification | bool:
            if not await self._stamp(subscription, Subscription.renewal_warning_sent_at, now):
                return False
            plan = await self.db.get(Plan, subscription.plan_id)
            notification = await self._notify_owner(
                subscription,
                NotificationKind.SUBSCRIPTION_ENDING,
                dedupe_key=f"subscription_ending:{subscription.id}:{_iso(subscription.end_date)}",
                plan_name=plan.name,
                end_date=_iso(subscription.end_date),
            )
            return notification or True

        return await self._run("renewal_warnings", due, warn)

    async def run_lifecycle_pass(self) -> LifecycleReport:
        """Run every lifecycle job once. Each job is idempotent."""
        report = LifecycleReport()
        report.trials_expired = await self.expire_trials()
        report.downgrades_applied = await self.apply_scheduled_downgrades()
        report.marked_past_due = await self.mark_past_due()
        report.grace_periods_expired = await self.expire_grace_periods()
        report.trial_warnings_sent = await self.send_trial_warnings()
        report.renewal_warnings_sent = await self.send_renewal_warnings()
        return report

    # Helpers

    async def _candidates(self, status: SubscriptionStatus, *criteria) -> list[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.status == status,
                Subscription.superseded_at.is_(None),
                *criteria,
            )
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def _run(self, job: str, subscriptions: list[Subscription], handler) -> JobResult:
        return await process_each(
            self.db,
            job,
            subscriptions,
            handler,
            describe=lambda sub: f"subscription {sub.id}",
        )

    async def _transition(
        self,
        subscription: Subscription,
        to_status: SubscriptionStatus,
        *criteria,
        **values: Any,
    ) -> bool:
        """Compare-and-set ``subscription`` from its loaded status to ``to_status``."""
        from_status = subscription.status
        if not is_valid_transition(from_status, to_status):
            raise ValueError(f"Invalid subscription transition {from_status.value} -> {to_status.value}")

        now = self.clock.now()
        if "grace_period_end" in values and values["grace_period_end"] is None:
            values["grace_period_end"] = null()
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.status == from_status,
                Subscription.superseded_at.is_(None),
                *criteria,
            )
            .values(status=to_status, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        await self.db.execute(
            update(Workspace)
            .where(
                Workspace.id == subscription.workspace_id,
                Workspace.current_subscription_id == subscription.id,
            )
            .values(subscription_status=to_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(subscription, ["status", "grace_period_end", "updated_at"])
        await self.audit_service.log_subscription_transition(
            workspace_id=subscription.workspace_id,
            subscription_id=subscription.id,
            from_status=from_status.value,
            to_status=to_status.value,
        )
        observe_subscription_transition(f"{from_status.value}->{to_status.value}")
        log_json(
            logger,
            logging.INFO,
            "subscription_transition",
            subscription_id=str(subscription.id),
            workspace_id=str(subscription.workspace_id),
            from_status=from_status.value,
            to_status=to_status.value,
        )
        return True

    async def _stamp(self, subscription: Subscription, column, now: datetime) -> bool:
        """Set a ``*_sent_at`` column once; False if another pass already did."""
        result = await self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, column.is_(None))
            .values({column.key: now})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _notify_owner(
        self,
        subscription: Subscription,
        kind: NotificationKind,
        dedupe_key: str | None = None,
        **payload: Any,
    ) -> Notification | bool:
        workspace = await self.db.get(Workspace, subscription.workspace_id)
        owner = await self._owner(workspace) if workspace is not None else None
        if owner is None:
            return True
        notification = await self.notifications.enqueue(
            kind,
            recipient=owner.email,
            payload={"workspace_name": workspace.name, **payload},
            dedupe_key=dedupe_key,
        )
        return notification or True

    async def _make_current(
        self,
        workspace: Workspace,
        subscription: Subscription,
        superseded: Subscription | None,
    ) -> Subscription:
        now = subscription.start_date
        if superseded is not None:
            superseded.superseded_at = now
        self.db.add(subscription)
        await self.db.flush()

        workspace.current_subscription_id = subscription.id
        workspace.current_plan_id = subscription.plan_id
        workspace.subscription_status = subscription.status
        await self.db.flush()

        await self.audit_service.log(
            workspace_id=workspace.id,
            action=AuditAction.SUBSCRIPTION_CREATE,
            entity_type="subscription",
            entity_id=subscription.id,
            diff_json={
                "status": subscription.status.value,
                "tier": subscription.tier.value,
                "superseded": str(superseded.id) if superseded else None,
            },
        )
        return subscription

    async def _latest_plan(self, tier: PlanTier) -> Plan:
        result = await self.db.execute(
            select(Plan)
            .where(Plan.tier == tier, Plan.is_active.is_(True))
            .order_by(Plan.version.desc())
            .limit(1)
        )
        plan = result.scalar_one_or_none()
        if plan is None:
            raise PlanNotFound(f"No active {tier.value} plan")
        return plan

    async def _owner(self, workspace: Workspace) -> User | None:
        return await self.db.get(User, workspace.owner_id)
