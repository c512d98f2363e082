"""SQLAlchemy models."""

from tenancy.models.audit_event import AuditEvent
from tenancy.models.base import Base, BaseModel
from tenancy.models.enums import (
    AuditAction,
    InvitationStatus,
    NotificationKind,
    NotificationStatus,
    PlanTier,
    SubscriptionStatus,
    WorkspaceRole,
)
from tenancy.models.invitation import Invitation
from tenancy.models.notification import Notification
from tenancy.models.plan import Plan
from tenancy.models.subscription import Subscription
from tenancy.models.user import User
from tenancy.models.workspace import Workspace, workspace_members

__all__ = [
    "Base",
    "BaseModel",
    "AuditAction",
    "InvitationStatus",
    "NotificationKind",
    "NotificationStatus",
    "PlanTier",
    "SubscriptionStatus",
    "WorkspaceRole",
    "AuditEvent",
    "Invitation",
    "Notification",
    "Plan",
    "Subscription",
    "User",
    "Workspace",
    "workspace_members",
]
