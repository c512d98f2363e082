"""Enumerations for roles, lifecycle statuses and audit actions."""

from enum import Enum


class WorkspaceRole(str, Enum):
    """Role a member holds inside a workspace.

    The set is closed: every permission check below switches over all four
    members explicitly, so adding a role fails loudly at the ``_PERMISSIONS``
    lookup instead of silently granting nothing.
    """

    OWNER = "Owner"
    PHARMACIST = "Pharmacist"
    TECHNICIAN = "Technician"
    INTERN = "Intern"

    def can_invite(self) -> bool:
        return _PERMISSIONS[self]["invite"]

    def can_cancel_any_invitation(self) -> bool:
        return _PERMISSIONS[self]["cancel_any"]

    def can_view_analytics(self) -> bool:
        return _PERMISSIONS[self]["analytics"]


_PERMISSIONS: dict[WorkspaceRole, dict[str, bool]] = {
    WorkspaceRole.OWNER: {"invite": True, "cancel_any": True, "analytics": True},
    WorkspaceRole.PHARMACIST: {"invite": False, "cancel_any": False, "analytics": False},
    WorkspaceRole.TECHNICIAN: {"invite": False, "cancel_any": False, "analytics": False},
    WorkspaceRole.INTERN: {"invite": False, "cancel_any": False, "analytics": False},
}


class InvitationStatus(str, Enum):
    """Invitation lifecycle status. Every status but ACTIVE is terminal."""

    ACTIVE = "active"
    EXPIRED = "expired"
    USED = "used"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not InvitationStatus.ACTIVE


class SubscriptionStatus(str, Enum):
    """Billing lifecycle status of a workspace subscription."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class PlanTier(str, Enum):
    """Plan tiers, ordered from cheapest to most expensive."""

    FREE_TRIAL = "free_trial"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return list(PlanTier).index(self)


class NotificationKind(str, Enum):
    """Outbound email templates handled by the notifier gateway."""

    INVITATION = "invitation"
    INVITATION_REMINDER = "invitation_reminder"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_EXPIRED = "invitation_expired"
    TRIAL_EXPIRED = "trial_expired"
    TRIAL_ENDING = "trial_ending"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_ENDING = "subscription_ending"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class AuditAction(str, Enum):
    """Audit action enumeration for invitation and subscription changes."""

    # Invitation
    INVITATION_CREATE = "invitation.create"
    INVITATION_ACCEPT = "invitation.accept"
    INVITATION_EXPIRE = "invitation.expire"
    INVITATION_CANCEL = "invitation.cancel"

    # Subscription
    SUBSCRIPTION_CREATE = "subscription.create"
    SUBSCRIPTION_STATUS_CHANGE = "subscription.status_change"
    SUBSCRIPTION_DOWNGRADE_SCHEDULE = "subscription.downgrade_schedule"
    SUBSCRIPTION_DOWNGRADE_APPLY = "subscription.downgrade_apply"
