"""Per-record isolation for scheduler jobs."""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.structured_logging import log_json
from tenancy.models.notification import Notification

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class JobResult:
    """Outcome of one scheduler job.

    ``notifications`` holds outbox rows queued by the job; the caller
    dispatches them after committing.
    """

    processed: int = 0
    errors: list[str] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, "errors": list(self.errors)}


async def process_each(
    db: AsyncSession,
    job: str,
    records: Iterable[T],
    handler: Callable[[T], Awaitable[Notification | bool]],
    describe: Callable[[T], str] = str,
) -> JobResult:
    """Run ``handler`` for every record inside its own savepoint.

    A record whose handler raises is rolled back to its savepoint, logged and
    reported in ``errors``; the rest of the batch continues. ``handler``
    returns False when the record turned out to need no change, True when it
    changed it, or the outbox row it queued for the change.
    """
    result = JobResult()
    for record in records:
        label = describe(record)
        try:
            async with db.begin_nested():
                outcome = await handler(record)
        except Exception as exc:
            result.errors.append(f"{label}: {exc}")
            log_json(
                logger,
                logging.ERROR,
                "job_record_failed",
                job=job,
                record=label,
                error=str(exc),
                exception=exc.__class__.__name__,
            )
            continue
        if outcome is False:
            continue
        result.processed += 1
        if isinstance(outcome, Notification):
            result.notifications.append(outcome)
    return result
