"""Domain error taxonomy.

Services raise these instead of ``HTTPException`` so the same failure kinds can
be produced by API handlers, scheduler jobs and tests. ``tenancy.main``
registers a handler that renders them as ``ErrorResponse`` bodies.

Taxonomy (status code, retry policy):
    ValidationFailed   400  never retried
    NotAuthorized      403  never retried
    NotFound           404  never retried
    StateConflict      400/409  client re-fetches and decides
    CapacityExceeded   403/409  requires a plan change
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for expected, client-visible failures."""

    status_code: int = 400
    error: str = "domain_error"
    message: str = "Request could not be completed"

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.message
        self.details = details or None
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(error={self.error}, message={self.message!r})>"


# Validation


class ValidationFailed(DomainError):
    status_code = 400
    error = "validation_error"
    message = "Request validation failed"


class InvalidInvitationCode(ValidationFailed):
    error = "invalid_code"
    message = "Invalid invitation code format"


class CannotInviteSelf(ValidationFailed):
    error = "cannot_invite_self"
    message = "You cannot invite yourself"


class InvalidPlanChange(ValidationFailed):
    error = "invalid_plan_change"
    message = "Requested plan change is not allowed"


# Authorization


class NotAuthorized(DomainError):
    status_code = 403
    error = "permission_denied"
    message = "You are not allowed to perform this action"


class EmailMismatch(NotAuthorized):
    error = "email_mismatch"
    message = "This invitation is for a different email address"


class SubscriptionInactive(NotAuthorized):
    error = "subscription_inactive"
    message = "The workspace subscription is not active"


# Not found


class NotFound(DomainError):
    status_code = 404
    error = "not_found"
    message = "Resource not found"


class WorkspaceNotFound(NotFound):
    error = "workspace_not_found"
    message = "Workspace not found"


class InvitationNotFound(NotFound):
    error = "invitation_not_found"
    message = "Invitation not found"


class UserNotFound(NotFound):
    error = "user_not_found"
    message = "User not found"


class PlanNotFound(NotFound):
    error = "plan_not_found"
    message = "Plan not found"


class SubscriptionNotFound(NotFound):
    error = "subscription_not_found"
    message = "No current subscription found"


# State conflicts


class StateConflict(DomainError):
    status_code = 409
    error = "state_conflict"
    message = "Resource is in a state incompatible with this operation"


class InvalidState(StateConflict):
    status_code = 400
    error = "invalid_state"


class InvitationExpired(InvalidState):
    error = "invitation_expired"
    message = "This invitation is expired and cannot be used"


class InvitationAlreadyUsed(InvalidState):
    error = "invitation_already_used"
    message = "This invitation has already been used"


class InvitationCanceled(InvalidState):
    error = "invitation_canceled"
    message = "This invitation has been canceled"


class DuplicateActive(StateConflict):
    error = "duplicate_active_invitation"
    message = "An active invitation already exists for this email"


class AlreadyMember(StateConflict):
    error = "already_member"
    message = "User is already a member of this workspace"


class AlreadyInOtherWorkspace(StateConflict):
    error = "already_in_other_workspace"
    message = (
        "You are already a member of another workspace. "
        "Please leave your current workspace first."
    )


# Capacity


class CapacityExceeded(DomainError):
    status_code = 409
    error = "limit_exceeded"
    message = "Limit reached"


class MemberLimitExceeded(CapacityExceeded):
    status_code = 403
    error = "member_limit_exceeded"
    message = "Workspace member limit reached for the current plan"


class PendingInviteLimitExceeded(CapacityExceeded):
    status_code = 409
    error = "pending_invite_limit_exceeded"
    message = "Maximum pending invitations limit reached"
