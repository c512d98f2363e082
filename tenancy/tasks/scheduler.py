"""Process-wide scheduler for time-driven transitions.

The scheduler owns the list of periodic jobs and the clock those jobs read.
``start()`` installs the jobs into Celery beat; ``shutdown()`` removes them.
Jobs are referenced by Celery task name so this module never imports the task
modules (they import it for the clock).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from celery import Celery
from celery.schedules import crontab

from tenancy.core.clock import Clock, SystemClock
from tenancy.core.structured_logging import log_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    """A periodic job: a Celery task name and its crontab cadence."""

    name: str
    task: str
    schedule: crontab
    description: str = ""


JOBS: tuple[ScheduledJob, ...] = (
    ScheduledJob(
        name="invitation-expiry-hourly",
        task="tenancy.tasks.invitation_tasks.expire_invitations",
        schedule=crontab(minute=0),
        description="Expire active invitations past expires_at",
    ),
    ScheduledJob(
        name="invitation-reminders-twice-daily",
        task="tenancy.tasks.invitation_tasks.send_invitation_reminders",
        schedule=crontab(minute=0, hour="9,18"),
        description="Remind invitees whose invitation expires within 24 hours",
    ),
    ScheduledJob(
        name="invitation-retention-daily",
        task="tenancy.tasks.invitation_tasks.cleanup_invitations",
        schedule=crontab(minute=0, hour=2),
        description="Delete terminal invitations past the retention window",
    ),
    ScheduledJob(
        name="subscription-lifecycle-daily",
        task="tenancy.tasks.subscription_tasks.run_lifecycle",
        schedule=crontab(minute=0, hour=1),
        description="Trial expiry, past-due, grace expiry, downgrades and warnings",
    ),
    ScheduledJob(
        name="notification-outbox-flush",
        task="tenancy.tasks.notification_tasks.flush_outbox",
        schedule=crontab(minute="*/5"),
        description="Deliver pending outbox rows that are due",
    ),
)

_job_clock: Clock = SystemClock()


def job_clock() -> Clock:
    """Clock handed to services by scheduled tasks."""
    return _job_clock


class Scheduler:
    """Explicit scheduler component with a start/shutdown lifecycle.

    Example:
        scheduler = Scheduler(celery_app)
        scheduler.start()      # beat now runs every job in JOBS
        scheduler.run_now("invitation-expiry-hourly")
        scheduler.shutdown()
    """

    def __init__(
        self,
        app: Celery,
        jobs: tuple[ScheduledJob, ...] = JOBS,
        clock: Clock | None = None,
    ):
        names = [job.name for job in jobs]
        if len(names) != len(set(names)):
            raise ValueError("Scheduled job names must be unique")
        self.app = app
        self.jobs = jobs
        self.clock = clock or SystemClock()
        self.running = False

    def beat_schedule(self) -> dict[str, dict]:
        return {job.name: {"task": job.task, "schedule": job.schedule} for job in self.jobs}

    def get_job(self, name: str) -> ScheduledJob:
        for job in self.jobs:
            if job.name == name:
                return job
        raise KeyError(f"Unknown scheduled job: {name}")

    def start(self) -> None:
        """Install the beat schedule and publish the clock to scheduled tasks."""
        global _job_clock
        _job_clock = self.clock
        self.app.conf.beat_schedule = self.beat_schedule()
        self.running = True
        log_json(
            logger,
            logging.INFO,
            "scheduler_started",
            jobs=[job.name for job in self.jobs],
        )

    def shutdown(self) -> None:
        """Remove the beat schedule. Jobs already running finish on their own."""
        global _job_clock
        self.app.conf.beat_schedule = {}
        _job_clock = SystemClock()
        self.running = False
        log_json(logger, logging.INFO, "scheduler_stopped")

    def run_now(self, name: str):
        """Execute a job in-process, outside its cadence, and return its result."""
        job = self.get_job(name)
        self.app.loader.import_default_modules()
        return self.app.tasks[job.task].apply().get()
