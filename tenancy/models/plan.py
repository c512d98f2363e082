"""Plan model (read-only reference data)."""
from sqlalchemy import Boolean, CheckConstraint, Column, Integer, Numeric, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum

from tenancy.models.base import BaseModel, JSONType
from tenancy.models.enums import PlanTier


class Plan(BaseModel):
    """Billable plan with resource limits.

    Plans are immutable once an active subscription references them; a price
    or limit change is published as a new row with a higher ``version``.
    ``limits`` holds a serialized ``PlanLimits``.
    """

    __tablename__ = "plans"

    name = Column(String(100), nullable=False)
    tier = Column(
        SQLEnum(
            PlanTier,
            name="plan_tier",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    version = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    limits = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("tier", "version", name="uq_plans_tier_version"),
        CheckConstraint("price >= 0", name="plan_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, tier={self.tier}, version={self.version})>"
