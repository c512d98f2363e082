"""Subscription status workflow state machine."""

from tenancy.models.enums import SubscriptionStatus

VALID_TRANSITIONS: dict[SubscriptionStatus, list[SubscriptionStatus]] = {
    SubscriptionStatus.TRIAL: [SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED],
    SubscriptionStatus.ACTIVE: [SubscriptionStatus.PAST_DUE, SubscriptionStatus.EXPIRED],
    # A payment settled upstream during the grace period reactivates the row
    SubscriptionStatus.PAST_DUE: [SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED],
    SubscriptionStatus.EXPIRED: [],
}

# Statuses that still grant access to the workspace
ACCESS_GRANTING: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


def is_valid_transition(from_status: SubscriptionStatus, to_status: SubscriptionStatus) -> bool:
    """Check if a subscription status transition is valid.

    Examples:
        >>> is_valid_transition(SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED)
        True
        >>> is_valid_transition(SubscriptionStatus.EXPIRED, SubscriptionStatus.ACTIVE)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def get_allowed_transitions(from_status: SubscriptionStatus) -> list[SubscriptionStatus]:
    return VALID_TRANSITIONS.get(from_status, [])
