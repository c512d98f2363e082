"""Audit trail for invitation and subscription changes."""
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.models.audit_event import AuditEvent
from tenancy.models.enums import AuditAction


class AuditService:
    """Appends audit rows inside the caller's transaction.

    Rows are flushed, never committed here, so a rolled-back change leaves
    no trail behind.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        workspace_id: UUID,
        action: AuditAction,
        entity_type: str,
        entity_id: UUID,
        user_id: Optional[UUID] = None,
        diff_json: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEvent:
        """Record ``action`` on an invitation or subscription.

        ``user_id`` is None for scheduler-driven changes.
        """
        event = AuditEvent(
            workspace_id=workspace_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            diff_json=diff_json,
            ip_address=ip_address,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def log_subscription_transition(
        self,
        workspace_id: UUID,
        subscription_id: UUID,
        from_status: str,
        to_status: str,
        **extra: Any,
    ) -> AuditEvent:
        return await self.log(
            workspace_id=workspace_id,
            action=AuditAction.SUBSCRIPTION_STATUS_CHANGE,
            entity_type="subscription",
            entity_id=subscription_id,
            diff_json={"from": from_status, "to": to_status, **extra},
        )
