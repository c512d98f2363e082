"""Subscription model."""
from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Numeric, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from tenancy.models.base import BaseModel, JSONType, UTCDateTime
from tenancy.models.enums import PlanTier, SubscriptionStatus


class Subscription(BaseModel):
    """Time-bounded billing relationship between a workspace and a plan.

    Which date drives the next scheduled transition depends on ``status``:
    ``trial_end_date`` while in trial, ``end_date`` while active and
    ``grace_period_end`` while past due. Rows are never deleted; an upgrade
    stamps ``superseded_at`` and a new row becomes current.
    """

    __tablename__ = "subscriptions"

    workspace_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
    )
    tier = Column(
        SQLEnum(
            PlanTier,
            name="plan_tier",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    status = Column(
        SQLEnum(
            SubscriptionStatus,
            name="subscription_status",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        index=True,
    )
    price_at_purchase = Column(Numeric(12, 2), nullable=False, default=0)
    start_date = Column(UTCDateTime(), nullable=False)
    trial_end_date = Column(UTCDateTime(), nullable=True)
    end_date = Column(UTCDateTime(), nullable=True)
    grace_period_end = Column(UTCDateTime(), nullable=True)
    # Serialized ScheduledDowngrade: {plan_id, effective_date, scheduled_at}
    scheduled_downgrade = Column(JSONType, nullable=True)
    # Serialized PlanLimits copied from the plan at purchase/downgrade time
    limits = Column(JSONType, nullable=False, default=dict)
    trial_warning_sent_at = Column(UTCDateTime(), nullable=True)
    renewal_warning_sent_at = Column(UTCDateTime(), nullable=True)
    superseded_at = Column(UTCDateTime(), nullable=True)

    workspace = relationship("Workspace", foreign_keys=[workspace_id])
    plan = relationship("Plan", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "(status = 'past_due') = (grace_period_end IS NOT NULL)",
            name="subscription_grace_period_iff_past_due",
        ),
        Index("ix_subscriptions_status_superseded", "status", "superseded_at"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, workspace_id={self.workspace_id}, status={self.status})>"
