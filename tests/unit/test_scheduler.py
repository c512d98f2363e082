"""Unit tests for the periodic job scheduler."""

from datetime import UTC, datetime

import pytest
from celery import Celery
from celery.schedules import crontab

from tenancy.core.clock import FrozenClock, SystemClock
from tenancy.tasks import scheduler as scheduler_module
from tenancy.tasks.scheduler import JOBS, ScheduledJob, Scheduler, job_clock


@pytest.fixture()
def app() -> Celery:
    return Celery("scheduler-test", broker="memory://", backend="cache+memory://")


class TestScheduler:
    def test_every_job_targets_a_tenancy_task(self):
        for job in JOBS:
            assert job.task.startswith("tenancy.tasks.")

    def test_cadences(self):
        schedule = Scheduler(Celery("cadence")).beat_schedule()

        assert schedule["invitation-expiry-hourly"]["schedule"] == crontab(minute=0)
        assert schedule["notification-outbox-flush"]["schedule"] == crontab(minute="*/5")
        assert schedule["subscription-lifecycle-daily"]["schedule"] == crontab(minute=0, hour=1)

    def test_duplicate_job_names_are_rejected(self, app):
        job = ScheduledJob(name="dup", task="tenancy.tasks.x", schedule=crontab())
        with pytest.raises(ValueError):
            Scheduler(app, jobs=(job, job))

    def test_start_installs_schedule_and_clock(self, app):
        clock = FrozenClock(datetime(2026, 3, 2, tzinfo=UTC))
        scheduler = Scheduler(app, clock=clock)

        scheduler.start()
        try:
            assert scheduler.running is True
            assert set(app.conf.beat_schedule) == {job.name for job in JOBS}
            assert job_clock() is clock
        finally:
            scheduler.shutdown()

        assert scheduler.running is False
        assert app.conf.beat_schedule == {}
        assert isinstance(job_clock(), SystemClock)

    def test_get_job_unknown_name(self, app):
        with pytest.raises(KeyError):
            Scheduler(app).get_job("nope")

    def test_run_now_executes_task_in_process(self, app):
        calls = []

        @app.task(name="tenancy.tasks.fake.sweep")
        def sweep():
            calls.append(scheduler_module.job_clock().now())
            return {"processed": 1, "errors": []}

        clock = FrozenClock(datetime(2026, 3, 2, tzinfo=UTC))
        job = ScheduledJob(name="fake-sweep", task="tenancy.tasks.fake.sweep", schedule=crontab())
        scheduler = Scheduler(app, jobs=(job,), clock=clock)
        scheduler.start()
        try:
            result = scheduler.run_now("fake-sweep")
        finally:
            scheduler.shutdown()

        assert result == {"processed": 1, "errors": []}
        assert calls == [clock.now()]
