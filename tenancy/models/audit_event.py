"""AuditEvent model."""

from sqlalchemy import Column, ForeignKey, String, Uuid
from sqlalchemy import Enum as SQLEnum

from tenancy.models.base import BaseModel, JSONType
from tenancy.models.enums import AuditAction


class AuditEvent(BaseModel):
    """Append-only trail of invitation and subscription changes.

    ``user_id`` is None for transitions made by the scheduler.
    """

    __tablename__ = "audit_events"

    workspace_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    action = Column(
        SQLEnum(
            AuditAction,
            name="audit_action",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Uuid(as_uuid=True), nullable=False)
    diff_json = Column(JSONType, nullable=True)
    ip_address = Column(String(45), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, action={self.action}, entity_type={self.entity_type})>"
