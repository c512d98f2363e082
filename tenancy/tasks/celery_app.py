"""Celery application configuration."""

from __future__ import annotations

import logging
import os
from contextvars import Token

from celery import Celery
from celery.signals import task_postrun, task_prerun

from tenancy.core.config import get_settings
from tenancy.core.request_context import reset_request_id, set_request_id
from tenancy.tasks.scheduler import Scheduler

logger = logging.getLogger(__name__)
_task_tokens: dict[str, Token[str | None]] = {}


def _get_broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")


def _get_backend_url() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", _get_broker_url())


celery_app = Celery(
    "tenancy",
    broker=_get_broker_url(),
    backend=_get_backend_url(),
    include=[
        "tenancy.tasks.invitation_tasks",
        "tenancy.tasks.subscription_tasks",
        "tenancy.tasks.notification_tasks",
    ],
)

celery_app.conf.update(
    timezone=get_settings().scheduler_timezone,
    enable_utc=True,
    task_acks_late=True,
)

scheduler = Scheduler(celery_app)
scheduler.start()


@task_prerun.connect
def _attach_correlation_id(
    task_id: str | None = None,
    task=None,
    **_: object,
) -> None:
    """Attach a correlation ID to the task execution context for logging."""

    if not task_id:
        return
    name = getattr(task, "name", None) or "task"
    _task_tokens[task_id] = set_request_id(f"job:{name.rsplit('.', 1)[-1]}:{task_id}")


@task_postrun.connect
def _detach_correlation_id(
    task_id: str | None = None,
    **_: object,
) -> None:
    """Detach the task correlation ID from the execution context."""

    if not task_id:
        return
    token = _task_tokens.pop(task_id, None)
    if not token:
        return
    try:
        reset_request_id(token)
    except ValueError:
        logger.exception("Failed to reset task correlation ID")
