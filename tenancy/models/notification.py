"""Outbound notification outbox model."""
from sqlalchemy import Column, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Index

from tenancy.models.base import BaseModel, JSONType, UTCDateTime
from tenancy.models.enums import NotificationKind, NotificationStatus


class Notification(BaseModel):
    """A queued outbound email.

    Rows are written in the same transaction as the state change that caused
    them and delivered afterwards by the notification worker, so a send
    failure can never roll back the triggering transition. ``dedupe_key``
    guards against enqueuing the same warning twice.
    """

    __tablename__ = "notifications"

    kind = Column(
        SQLEnum(
            NotificationKind,
            name="notification_kind",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    recipient = Column(String(255), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(
        SQLEnum(
            NotificationStatus,
            name="notification_status",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(UTCDateTime(), nullable=True)
    last_error = Column(Text, nullable=True)
    sent_at = Column(UTCDateTime(), nullable=True)
    dedupe_key = Column(String(255), nullable=True, unique=True)

    __table_args__ = (
        Index("ix_notifications_status_next_attempt", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, kind={self.kind}, status={self.status})>"
