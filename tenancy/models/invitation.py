"""Invitation model."""
from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, String, Uuid, text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from tenancy.models.base import BaseModel, JSONType, UTCDateTime
from tenancy.models.enums import InvitationStatus, WorkspaceRole


class Invitation(BaseModel):
    """Time-boxed, single-use offer of workspace membership at a given role.

    The 8-character ``code`` is stored upper-case and looked up upper-case,
    which makes it case-insensitive for people typing it in. Status only ever
    leaves ``active``; ``used_at``/``used_by`` are set exactly when the status
    is ``used``. ``metadata_json`` holds a serialized ``InvitationMetadata``.
    """

    __tablename__ = "invitations"

    code = Column(String(8), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=False)
    workspace_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invited_by = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    role = Column(
        SQLEnum(
            WorkspaceRole,
            name="workspace_role",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    status = Column(
        SQLEnum(
            InvitationStatus,
            name="invitation_status",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=InvitationStatus.ACTIVE,
    )
    expires_at = Column(UTCDateTime(), nullable=False, index=True)
    used_at = Column(UTCDateTime(), nullable=True)
    used_by = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
    )
    status_changed_at = Column(UTCDateTime(), nullable=True)
    reminder_sent_at = Column(UTCDateTime(), nullable=True)
    metadata_json = Column(JSONType, nullable=False, default=dict)

    # Relationships
    workspace = relationship("Workspace", lazy="joined")
    inviter = relationship("User", foreign_keys=[invited_by], lazy="joined")
    accepted_by = relationship("User", foreign_keys=[used_by])

    __table_args__ = (
        # One active invitation per (workspace, email); enforced by the store
        Index(
            "uq_invitations_active_workspace_email",
            "workspace_id",
            "email",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_invitations_status_expires_at", "status", "expires_at"),
        CheckConstraint(
            "(status = 'used') = (used_at IS NOT NULL AND used_by IS NOT NULL)",
            name="invitation_used_fields_iff_used",
        ),
        CheckConstraint("email = LOWER(email)", name="invitation_email_lowercase"),
    )

    def __repr__(self) -> str:
        return f"<Invitation(id={self.id}, code={self.code}, status={self.status})>"
