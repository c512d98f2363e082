"""Celery task for the subscription lifecycle pass."""

from tenancy.services.subscription_service import SubscriptionService
from tenancy.tasks.celery_app import celery_app
from tenancy.tasks.runner import run_job


@celery_app.task(name="tenancy.tasks.subscription_tasks.run_lifecycle")
def run_lifecycle() -> dict:
    """Expire trials, apply downgrades, mark past due, expire grace periods, send warnings.

    Runs daily via Celery Beat (see ``tenancy.tasks.scheduler``).
    """
    return run_job(
        "subscription_lifecycle",
        lambda session, clock: SubscriptionService(session, clock).run_lifecycle_pass(),
    )
