"""Versioned structs stored in JSON columns.

Each struct is validated when written and again when read back, so a record
that drifted from the schema surfaces as a ``ValidationError`` at the boundary
instead of as a ``KeyError`` deep inside a scheduler job.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvitationMetadata(BaseModel):
    """Display data and cancellation audit fields for an invitation."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    inviter_name: str = Field(..., max_length=255)
    workspace_name: str = Field(..., max_length=255)
    custom_message: str | None = Field(None, max_length=1000)
    cancel_reason: str | None = Field(None, max_length=500)
    canceled_by: UUID | None = None
    canceled_at: datetime | None = None

    @field_validator("custom_message", "cancel_reason")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @classmethod
    def from_column(cls, raw: dict[str, Any] | None) -> InvitationMetadata:
        return cls.model_validate(raw or {})

    def to_column(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class PlanLimits(BaseModel):
    """Resource ceilings granted by a plan. ``None`` means unlimited."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    users: int | None = Field(None, ge=0)
    patients: int | None = Field(None, ge=0)
    locations: int | None = Field(None, ge=0)
    storage_mb: int | None = Field(None, ge=0)
    api_calls: int | None = Field(None, ge=0)

    @classmethod
    def from_column(cls, raw: dict[str, Any] | None) -> PlanLimits:
        return cls.model_validate(raw or {})

    def to_column(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ScheduledDowngrade(BaseModel):
    """Pending plan change applied by the lifecycle engine on ``effective_date``."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    plan_id: UUID
    effective_date: datetime
    scheduled_at: datetime

    @classmethod
    def from_column(cls, raw: dict[str, Any] | None) -> ScheduledDowngrade | None:
        if not raw:
            return None
        return cls.model_validate(raw)

    def to_column(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
