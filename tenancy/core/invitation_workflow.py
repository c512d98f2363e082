"""Invitation status workflow state machine."""

from tenancy.models.enums import InvitationStatus

# Valid status transitions for the invitation lifecycle
# Key: current status, Value: list of allowed next statuses
VALID_TRANSITIONS: dict[InvitationStatus, list[InvitationStatus]] = {
    InvitationStatus.ACTIVE: [
        InvitationStatus.USED,
        InvitationStatus.EXPIRED,
        InvitationStatus.CANCELED,
    ],
    InvitationStatus.USED: [],  # Terminal states - no further transitions
    InvitationStatus.EXPIRED: [],
    InvitationStatus.CANCELED: [],
}


def is_valid_transition(from_status: InvitationStatus, to_status: InvitationStatus) -> bool:
    """Check if a status transition is valid.

    Args:
        from_status: Current invitation status
        to_status: Target invitation status

    Returns:
        True if the transition is allowed, False otherwise

    Examples:
        >>> is_valid_transition(InvitationStatus.ACTIVE, InvitationStatus.USED)
        True
        >>> is_valid_transition(InvitationStatus.EXPIRED, InvitationStatus.ACTIVE)
        False
        >>> is_valid_transition(InvitationStatus.USED, InvitationStatus.CANCELED)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def get_allowed_transitions(from_status: InvitationStatus) -> list[InvitationStatus]:
    """Get list of allowed transitions from a given status.

    Examples:
        >>> get_allowed_transitions(InvitationStatus.CANCELED)
        []
    """
    return VALID_TRANSITIONS.get(from_status, [])
