"""Pydantic schemas for invitation endpoints."""

from datetime import datetime
from uuid import UUID

from pydantic import EmailStr, Field, field_validator

from tenancy.models.enums import InvitationStatus, WorkspaceRole
from tenancy.schemas.base import CamelModel


class InviteRequest(CamelModel):
    """Request schema for creating an invitation.

    Used for POST /workspaces/{workspace_id}/invitations.
    """

    email: EmailStr = Field(..., description="Email address of the person to invite")
    role: WorkspaceRole = Field(..., description="Role granted on acceptance")
    custom_message: str | None = Field(None, max_length=1000)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


class InvitationCreatedResponse(CamelModel):
    """Response for a newly created invitation.

    ``warning`` is set when the invitation email could not be queued; the
    invitation itself is still valid.
    """

    invitation_id: UUID
    email: str
    role: WorkspaceRole
    code: str
    expires_at: datetime
    status: InvitationStatus
    warning: str | None = None


class InvitationSummary(CamelModel):
    """Invitation row as shown to workspace owners."""

    id: UUID
    code: str
    email: str
    role: WorkspaceRole
    status: InvitationStatus
    expires_at: datetime
    created_at: datetime
    invited_by: UUID
    inviter_name: str | None = None
    used_at: datetime | None = None
    used_by: UUID | None = None
    custom_message: str | None = None
    cancel_reason: str | None = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class InvitationStatusCounts(CamelModel):
    active: int = 0
    expired: int = 0
    used: int = 0
    canceled: int = 0
    total: int = 0


class InvitationListResponse(CamelModel):
    invitations: list[InvitationSummary]
    pagination: Pagination
    stats: InvitationStatusCounts


class InvitationValidationResponse(CamelModel):
    """Public view of an invitation looked up by code."""

    valid: bool
    email: str
    workspace_id: UUID
    workspace_name: str
    inviter_name: str
    role: WorkspaceRole
    status: InvitationStatus
    expires_at: datetime
    can_be_used: bool
    custom_message: str | None = None


class AcceptInviteRequest(CamelModel):
    """Request schema for accepting an invitation by code."""

    code: str = Field(..., min_length=8, max_length=8, description="Invitation code")


class AcceptedUser(CamelModel):
    id: UUID
    email: str
    first_name: str
    last_name: str
    role: WorkspaceRole


class AcceptedWorkspace(CamelModel):
    id: UUID
    name: str


class AcceptInviteResponse(CamelModel):
    success: bool = True
    user: AcceptedUser
    workspace: AcceptedWorkspace
    role: WorkspaceRole


class CancelInviteRequest(CamelModel):
    reason: str | None = Field(None, max_length=500)


class CancelInviteResponse(CamelModel):
    invitation_id: UUID
    status: InvitationStatus


class CapacityResponse(CamelModel):
    """Capacity on one axis (members or pending invitations)."""

    max: int | None
    current: int
    remaining: int | None
    can_send_more: bool
    upgrade_required: bool


class SweepResponse(CamelModel):
    expired_count: int
    notifications_queued: int
    errors: list[str]
