"""Celery tasks for the invitation sweeps."""

from tenancy.services.invitation_service import InvitationService
from tenancy.tasks.celery_app import celery_app
from tenancy.tasks.runner import run_job


@celery_app.task(name="tenancy.tasks.invitation_tasks.expire_invitations")
def expire_invitations() -> dict:
    """Expire every active invitation past ``expires_at``. Runs hourly."""
    return run_job(
        "invitation_expiry",
        lambda session, clock: InvitationService(session, clock).sweep_expired(),
    )


@celery_app.task(name="tenancy.tasks.invitation_tasks.send_invitation_reminders")
def send_invitation_reminders() -> dict:
    """Queue one reminder per invitation expiring within the reminder window."""
    return run_job(
        "invitation_reminders",
        lambda session, clock: InvitationService(session, clock).send_expiry_reminders(),
    )


@celery_app.task(name="tenancy.tasks.invitation_tasks.cleanup_invitations")
def cleanup_invitations() -> dict:
    """Delete terminal invitations older than the retention window. Runs daily."""
    return run_job(
        "invitation_retention",
        lambda session, clock: InvitationService(session, clock).cleanup_old_invitations(),
    )
