"""Workspace-scoped invitation and capacity endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.api.deps import client_ip, get_current_user
from tenancy.core.clock import Clock, get_clock
from tenancy.core.database import get_db
from tenancy.core.limits import CapacityReport
from tenancy.models.enums import InvitationStatus
from tenancy.models.invitation import Invitation
from tenancy.models.user import User
from tenancy.schemas.analytics import InvitationAnalyticsResponse
from tenancy.schemas.errors import ErrorResponse
from tenancy.schemas.invitation import (
    CapacityResponse,
    InvitationCreatedResponse,
    InvitationListResponse,
    InvitationStatusCounts,
    InvitationSummary,
    InviteRequest,
    Pagination,
)
from tenancy.schemas.metadata import InvitationMetadata
from tenancy.services.analytics_service import AnalyticsService
from tenancy.services.invitation_service import InvitationService
from tenancy.services.notification_service import NotificationGateway, get_notification_gateway

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def invitation_to_summary(invitation: Invitation) -> InvitationSummary:
    """Convert Invitation model to InvitationSummary."""
    metadata = InvitationMetadata.from_column(invitation.metadata_json)
    return InvitationSummary(
        id=invitation.id,
        code=invitation.code,
        email=invitation.email,
        role=invitation.role,
        status=invitation.status,
        expires_at=invitation.expires_at,
        created_at=invitation.created_at,
        invited_by=invitation.invited_by,
        inviter_name=metadata.inviter_name,
        used_at=invitation.used_at,
        used_by=invitation.used_by,
        custom_message=metadata.custom_message,
        cancel_reason=metadata.cancel_reason,
    )


def capacity_to_response(report: CapacityReport) -> CapacityResponse:
    return CapacityResponse(
        max=report.max,
        current=report.current,
        remaining=report.remaining,
        can_send_more=report.can_admit,
        upgrade_required=report.upgrade_required,
    )


@router.post(
    "/{workspace_id}/invitations",
    response_model=InvitationCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Invite a user to the workspace",
)
async def create_invitation(
    workspace_id: UUID,
    body: InviteRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    gateway: NotificationGateway = Depends(get_notification_gateway),
) -> InvitationCreatedResponse:
    """Create an invitation.

    Owner only. Fails with 403 when accepting every pending invitation plus
    this one would exceed the plan's member limit, and with 409 when the
    pending-invitation ceiling is reached or the email already has an active
    invitation. The email is queued after commit; if queuing fails the
    response carries a ``warning`` instead of an error.
    """
    service = InvitationService(db, clock)
    created = await service.create(
        workspace_id=workspace_id,
        email=body.email,
        role=body.role,
        inviter=current_user,
        custom_message=body.custom_message,
        ip_address=client_ip(request),
    )
    invitation = created.invitation
    response = InvitationCreatedResponse(
        invitation_id=invitation.id,
        email=invitation.email,
        role=invitation.role,
        code=invitation.code,
        expires_at=invitation.expires_at,
        status=invitation.status,
    )
    await db.commit()

    response.warning = gateway.dispatch([created.notification])
    return response


@router.get(
    "/{workspace_id}/invitations",
    response_model=InvitationListResponse,
    responses=ERROR_RESPONSES,
    summary="List workspace invitations",
)
async def list_invitations(
    workspace_id: UUID,
    status: InvitationStatus | None = Query(None),
    page: int = Query(1),
    limit: int = Query(10),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> InvitationListResponse:
    """List invitations, newest first. ``limit`` is clamped to 1..50."""
    service = InvitationService(db)
    result = await service.list_invitations(
        workspace_id, current_user, status=status, page=page, limit=limit
    )
    return InvitationListResponse(
        invitations=[invitation_to_summary(inv) for inv in result.invitations],
        pagination=Pagination(
            page=result.page,
            limit=result.limit,
            total=result.total,
            pages=result.pages,
        ),
        stats=InvitationStatusCounts(**result.stats),
    )


@router.get(
    "/{workspace_id}/invitations/limits",
    response_model=CapacityResponse,
    responses=ERROR_RESPONSES,
    summary="Pending invitation capacity",
)
async def get_invitation_limits(
    workspace_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CapacityResponse:
    report = await AnalyticsService(db).pending_capacity(workspace_id, current_user)
    return capacity_to_response(report)


@router.get(
    "/{workspace_id}/invitations/analytics",
    response_model=InvitationAnalyticsResponse,
    responses=ERROR_RESPONSES,
    summary="Invitation analytics",
)
async def get_invitation_analytics(
    workspace_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> InvitationAnalyticsResponse:
    analytics = await AnalyticsService(db).invitation_analytics(workspace_id, current_user)
    return InvitationAnalyticsResponse(**analytics)


@router.get(
    "/{workspace_id}/members/limits",
    response_model=CapacityResponse,
    responses=ERROR_RESPONSES,
    summary="Member capacity for the current plan",
)
async def get_member_limits(
    workspace_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CapacityResponse:
    report = await AnalyticsService(db).member_capacity(workspace_id, current_user)
    return capacity_to_response(report)
