"""Notification outbox and gateway.

State transitions never talk to SMTP directly. They call
``NotificationService.enqueue`` inside their own transaction, and once that
transaction commits the route (or scheduler job) hands the new row ids to
``NotificationGateway.dispatch``, which queues a Celery delivery task. Rows the
broker never received are picked up by the periodic outbox flush.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, SystemClock
from tenancy.core.config import get_settings
from tenancy.core.metrics import NOTIFICATION_DELIVERIES_TOTAL
from tenancy.core.structured_logging import log_json
from tenancy.models.enums import NotificationKind, NotificationStatus
from tenancy.models.notification import Notification
from tenancy.services.job_result import JobResult

logger = logging.getLogger(__name__)


class Sender(Protocol):
    def send(self, kind: NotificationKind, recipient: str, payload: dict[str, Any]) -> None:
        ...


def retry_delay_seconds(attempts: int) -> int:
    """Backoff before the next attempt after ``attempts`` failures.

    Examples:
        >>> retry_delay_seconds(1)
        120
        >>> retry_delay_seconds(50)
        3600
    """
    settings = get_settings()
    delay = settings.notification_retry_base_seconds * (2 ** min(attempts, 20))
    return min(delay, settings.notification_retry_max_seconds)


class NotificationService:
    """Outbox reads and writes."""

    def __init__(self, db: AsyncSession, clock: Clock | None = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.settings = get_settings()

    async def enqueue(
        self,
        kind: NotificationKind,
        recipient: str,
        payload: dict[str, Any],
        dedupe_key: str | None = None,
    ) -> Notification | None:
        """Add an outbox row in the caller's transaction.

        Returns None when a row with the same ``dedupe_key`` already exists.
        """
        if dedupe_key is not None:
            existing = await self.db.execute(
                select(Notification.id).where(Notification.dedupe_key == dedupe_key)
            )
            if existing.scalar_one_or_none() is not None:
                return None

        notification = Notification(
            kind=kind,
            recipient=recipient,
            payload=payload,
            status=NotificationStatus.PENDING,
            attempts=0,
            next_attempt_at=self.clock.now(),
            dedupe_key=dedupe_key,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(notification)
                await self.db.flush()
        except IntegrityError:
            # Lost a race on dedupe_key
            return None
        return notification

    async def due_ids(self, limit: int | None = None) -> list[UUID]:
        """Pending rows whose next attempt is due, oldest first."""
        now = self.clock.now()
        result = await self.db.execute(
            select(Notification.id)
            .where(
                Notification.status == NotificationStatus.PENDING,
                Notification.next_attempt_at <= now,
            )
            .order_by(Notification.next_attempt_at)
            .limit(limit or self.settings.notification_flush_batch_size)
        )
        return list(result.scalars().all())

    async def flush(self, sender: Sender, limit: int | None = None) -> JobResult:
        """Deliver every due pending row. Send failures are recorded on the row, not raised."""
        result = JobResult()
        for notification_id in await self.due_ids(limit):
            status = await self.deliver(notification_id, sender)
            if status == NotificationStatus.SENT:
                result.processed += 1
            elif status == NotificationStatus.FAILED:
                result.errors.append(f"notification {notification_id}: delivery failed permanently")
        return result

    async def deliver(self, notification_id: UUID, sender: Sender) -> NotificationStatus | None:
        """Attempt one delivery and record the outcome on the row.

        Returns the row's status afterwards, or None if the row is gone.
        Rows that are no longer pending are left untouched.
        """
        notification = await self.db.get(Notification, notification_id, with_for_update=True)
        if notification is None:
            return None
        if notification.status != NotificationStatus.PENDING:
            return notification.status

        try:
            await asyncio.to_thread(
                sender.send, notification.kind, notification.recipient, notification.payload
            )
        except Exception as exc:
            self._record_failure(notification, exc)
        else:
            notification.status = NotificationStatus.SENT
            notification.sent_at = self.clock.now()
            notification.attempts += 1
            notification.last_error = None
            NOTIFICATION_DELIVERIES_TOTAL.labels(kind=notification.kind.value, outcome="sent").inc()

        await self.db.flush()
        return notification.status

    def _record_failure(self, notification: Notification, exc: Exception) -> None:
        notification.attempts += 1
        notification.last_error = f"{exc.__class__.__name__}: {exc}"[:2000]

        if notification.attempts >= self.settings.notification_max_attempts:
            notification.status = NotificationStatus.FAILED
            notification.next_attempt_at = None
            outcome = "failed"
        else:
            notification.next_attempt_at = self.clock.now() + timedelta(
                seconds=retry_delay_seconds(notification.attempts)
            )
            outcome = "retry"

        NOTIFICATION_DELIVERIES_TOTAL.labels(kind=notification.kind.value, outcome=outcome).inc()
        log_json(
            logger,
            logging.WARNING,
            "notification_delivery_failed",
            notification_id=str(notification.id),
            kind=notification.kind.value,
            attempts=notification.attempts,
            outcome=outcome,
            error=notification.last_error,
        )


def _celery_dispatch(notification_id: str) -> None:
    from tenancy.tasks.notification_tasks import deliver_notification

    deliver_notification.delay(notification_id)


class NotificationGateway:
    """Hands committed outbox rows to the delivery worker.

    Must only be called after the enqueuing transaction committed, otherwise
    the worker may look for a row it cannot see yet.
    """

    def __init__(self, dispatcher: Callable[[str], None] | None = None):
        self.dispatcher = dispatcher or _celery_dispatch

    def dispatch(self, notifications: Iterable[Notification | UUID | None]) -> str | None:
        """Queue delivery for each row. Returns a warning instead of raising."""
        failed = 0
        for item in notifications:
            if item is None:
                continue
            notification_id = item.id if isinstance(item, Notification) else item
            try:
                self.dispatcher(str(notification_id))
            except Exception as exc:
                failed += 1
                log_json(
                    logger,
                    logging.WARNING,
                    "notification_dispatch_failed",
                    notification_id=str(notification_id),
                    error=str(exc),
                )

        if failed:
            return "Notification could not be queued for delivery; it will be retried later"
        return None


_default_gateway: NotificationGateway | None = None


def get_notification_gateway() -> NotificationGateway:
    """FastAPI dependency returning the process-wide gateway."""
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = NotificationGateway()
    return _default_gateway
