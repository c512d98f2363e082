"""Workspace model and member association table."""
from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    Table,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from tenancy.models.base import Base, BaseModel, UTCDateTime, utcnow
from tenancy.models.enums import SubscriptionStatus

# Member references. The unique constraint makes concurrent adds of the same
# user collapse into one row; the live COUNT(*) is the member count.
workspace_members = Table(
    "workspace_members",
    Base.metadata,
    Column(
        "workspace_id",
        Uuid(as_uuid=True),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column(
        "user_id",
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("joined_at", UTCDateTime(), nullable=False, default=utcnow),
    UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
)


class Workspace(BaseModel):
    """Tenant boundary owning members, invitations and a subscription.

    ``subscription_status`` and ``current_plan_id`` mirror the current
    subscription; they are only written by the subscription lifecycle engine,
    in the same transaction that changes the subscription row.
    """

    __tablename__ = "workspaces"

    name = Column(String(255), nullable=False)
    owner_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT", use_alter=True),
        nullable=False,
        index=True,
    )
    max_pending_invites = Column(Integer, nullable=False, default=20)
    current_plan_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True,
    )
    current_subscription_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
    )
    subscription_status = Column(
        SQLEnum(
            SubscriptionStatus,
            name="subscription_status",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
    )
    last_activity_at = Column(UTCDateTime(), nullable=True)

    # Relationships
    owner = relationship("User", foreign_keys=[owner_id])
    members = relationship(
        "User",
        secondary=workspace_members,
        lazy="selectin",
        viewonly=True,
    )
    current_plan = relationship("Plan", foreign_keys=[current_plan_id])

    __table_args__ = (
        CheckConstraint("LENGTH(name) > 0", name="workspace_name_not_empty"),
        CheckConstraint("max_pending_invites >= 0", name="workspace_max_pending_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Workspace(id={self.id}, name={self.name})>"
