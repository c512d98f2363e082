"""Error response schemas."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Standard error response schema.

    Used for all error responses (4xx, 5xx) across the API. Capacity errors
    carry ``current``, ``limit`` and ``upgradeRequired`` in ``details``.
    """

    error: str = Field(
        ...,
        description="Error type identifier",
        examples=["invitation_expired", "member_limit_exceeded", "email_mismatch"],
    )
    message: str = Field(
        ...,
        description="Human-readable error message",
        examples=["This invitation is expired and cannot be used"],
    )
    details: Optional[dict] = Field(
        None,
        description="Additional error context (limits, current status, field errors)",
        examples=[{"current": 5, "limit": 5, "upgradeRequired": True}],
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "error": "invitation_already_used",
                    "message": "This invitation has already been used",
                    "details": {"status": "used"},
                },
                {
                    "error": "member_limit_exceeded",
                    "message": "Workspace member limit reached for the current plan",
                    "details": {"current": 5, "limit": 5, "upgradeRequired": True},
                },
            ]
        }
    )
