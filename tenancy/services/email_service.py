"""SMTP email sender used by the notification worker.

Only the worker calls this module; request handlers and scheduler jobs write
to the outbox instead (see ``notification_service``).
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from tenancy.core.config import get_settings
from tenancy.core.structured_logging import log_json
from tenancy.models.enums import NotificationKind

logger = logging.getLogger(__name__)

# kind -> (subject, body); formatted with the notification payload
TEMPLATES: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.INVITATION: (
        "{inviter_name} invited you to join {workspace_name}",
        "{inviter_name} invited you to join {workspace_name} as {role}.\n\n"
        "{custom_message}"
        "Your invitation code is {code}. It expires on {expires_at}.\n"
        "Accept it here: {accept_url}\n",
    ),
    NotificationKind.INVITATION_REMINDER: (
        "Your invitation to {workspace_name} expires soon",
        "Your invitation to join {workspace_name} as {role} expires on {expires_at}.\n"
        "Invitation code: {code}\nAccept it here: {accept_url}\n",
    ),
    NotificationKind.INVITATION_ACCEPTED: (
        "{accepted_user_name} joined {workspace_name}",
        "Hi {inviter_name},\n\n{accepted_user_name} ({accepted_user_email}) accepted "
        "your invitation and joined {workspace_name} as {role}.\n",
    ),
    NotificationKind.INVITATION_EXPIRED: (
        "Invitation for {invited_email} expired",
        "Hi {inviter_name},\n\nThe invitation you sent to {invited_email} for "
        "{workspace_name} ({role}) expired without being accepted.\n",
    ),
    NotificationKind.TRIAL_ENDING: (
        "Your {workspace_name} trial ends on {trial_end_date}",
        "The free trial for {workspace_name} ends on {trial_end_date}. "
        "Choose a plan to keep your team's access.\n",
    ),
    NotificationKind.TRIAL_EXPIRED: (
        "Your {workspace_name} trial has ended",
        "The free trial for {workspace_name} ended on {trial_end_date}. "
        "Choose a plan to restore access.\n",
    ),
    NotificationKind.SUBSCRIPTION_ENDING: (
        "Your {workspace_name} subscription renews on {end_date}",
        "The {plan_name} subscription for {workspace_name} ends on {end_date}.\n",
    ),
    NotificationKind.SUBSCRIPTION_PAST_DUE: (
        "Payment overdue for {workspace_name}",
        "The subscription for {workspace_name} lapsed on {end_date}. Access continues "
        "until {grace_period_end}; settle the payment before then to avoid interruption.\n",
    ),
    NotificationKind.SUBSCRIPTION_EXPIRED: (
        "Your {workspace_name} subscription has expired",
        "The grace period for {workspace_name} ended on {grace_period_end} and the "
        "subscription has expired.\n",
    ),
    NotificationKind.DOWNGRADE_SCHEDULED: (
        "Plan change scheduled for {workspace_name}",
        "{workspace_name} moves from {current_plan_name} to {new_plan_name} on "
        "{effective_date}.\n",
    ),
    NotificationKind.SUBSCRIPTION_DOWNGRADED: (
        "{workspace_name} is now on {new_plan_name}",
        "The scheduled change for {workspace_name} took effect. The workspace is now "
        "on {new_plan_name}.\n",
    ),
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(kind: NotificationKind, payload: dict[str, Any]) -> tuple[str, str]:
    """Render subject and body for ``kind``; missing or None values render empty."""
    subject, body = TEMPLATES[kind]
    values = _Blank({key: value for key, value in payload.items() if value is not None})
    if values.get("custom_message"):
        values["custom_message"] = f"{values['custom_message']}\n\n"
    return subject.format_map(values), body.format_map(values)


class EmailService:
    """Send rendered notifications over SMTP."""

    def __init__(self):
        settings = get_settings()
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.smtp_from

    def send(self, kind: NotificationKind, recipient: str, payload: dict[str, Any]) -> None:
        """Render and send one notification. Raises on SMTP failure."""
        subject, body = render(kind, payload)

        message = MIMEMultipart()
        message["From"] = self.from_email
        message["To"] = recipient
        message["Subject"] = subject
        message.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
            if self.smtp_use_tls:
                server.starttls()
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(message)

        log_json(logger, logging.INFO, "email_sent", kind=kind.value, recipient=recipient)
