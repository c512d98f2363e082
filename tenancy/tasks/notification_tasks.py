"""Celery tasks delivering the notification outbox."""

import asyncio
import logging
from uuid import UUID

from tenancy.core.structured_logging import log_json
from tenancy.services.email_service import EmailService
from tenancy.services.notification_service import NotificationService
from tenancy.tasks.celery_app import celery_app
from tenancy.tasks.runner import run_job, task_session
from tenancy.tasks.scheduler import job_clock

logger = logging.getLogger(__name__)


@celery_app.task(name="tenancy.tasks.notification_tasks.deliver_notification")
def deliver_notification(notification_id: str) -> str | None:
    """Send one outbox row now.

    A failed send is recorded on the row with its next attempt time; the
    periodic flush picks it up again, so this task never retries itself.
    """

    async def _run() -> str | None:
        async with task_session() as session:
            service = NotificationService(session, job_clock())
            status = await service.deliver(UUID(notification_id), EmailService())
        return status.value if status else None

    status = asyncio.run(_run())
    log_json(
        logger,
        logging.INFO,
        "notification_delivery",
        notification_id=notification_id,
        status=status,
    )
    return status


@celery_app.task(name="tenancy.tasks.notification_tasks.flush_outbox")
def flush_outbox() -> dict:
    """Deliver pending rows whose next attempt is due. Runs every 5 minutes."""
    return run_job(
        "notification_outbox_flush",
        lambda session, clock: NotificationService(session, clock).flush(EmailService()),
    )
