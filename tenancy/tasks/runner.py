"""Shared plumbing for scheduled tasks.

Each task opens its own session, runs one service call, commits, and only
then hands any queued outbox rows to the notification gateway.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock
from tenancy.core.database import AsyncSessionLocal, engine
from tenancy.core.metrics import observe_job_run
from tenancy.core.structured_logging import logged_operation
from tenancy.models.notification import Notification
from tenancy.services.notification_service import get_notification_gateway
from tenancy.tasks.scheduler import job_clock

logger = logging.getLogger(__name__)


class JobOutcome(Protocol):
    notifications: list[Notification]
    errors: list[str]

    def as_dict(self) -> dict[str, Any]:
        ...


@asynccontextmanager
async def task_session() -> AsyncIterator[AsyncSession]:
    """Session committed on success and rolled back on error.

    Every task runs under its own ``asyncio.run`` loop, so pooled connections
    are dropped on exit instead of leaking into the next loop.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
            await engine.dispose()


def run_job(job: str, work: Callable[[AsyncSession, Clock], Awaitable[JobOutcome]]) -> dict:
    """Run ``work`` in a fresh session and return its summary dict."""

    async def _run() -> JobOutcome:
        async with task_session() as session:
            return await work(session, job_clock())

    with logged_operation(logger, job) as summary:
        try:
            outcome = asyncio.run(_run())
        except Exception:
            observe_job_run(job, ok=False)
            raise

        observe_job_run(job, ok=True, record_errors=len(outcome.errors))
        warning = get_notification_gateway().dispatch(outcome.notifications)
        summary.update(outcome.as_dict())
        if warning:
            summary["warning"] = warning

    return outcome.as_dict()
