"""Invitation lookup, acceptance and cancellation endpoints."""

from uuid import UUID

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.api.deps import client_ip, get_current_user
from tenancy.core.clock import Clock, get_clock
from tenancy.core.database import get_db
from tenancy.models.user import User
from tenancy.schemas.errors import ErrorResponse
from tenancy.schemas.invitation import (
    AcceptedUser,
    AcceptedWorkspace,
    AcceptInviteRequest,
    AcceptInviteResponse,
    CancelInviteRequest,
    CancelInviteResponse,
    InvitationValidationResponse,
)
from tenancy.services.acceptance_service import AcceptanceService
from tenancy.services.invitation_service import InvitationService
from tenancy.services.notification_service import NotificationGateway, get_notification_gateway

router = APIRouter()


@router.post(
    "/accept",
    response_model=AcceptInviteResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Accept an invitation",
)
async def accept_invitation(
    body: AcceptInviteRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    gateway: NotificationGateway = Depends(get_notification_gateway),
) -> AcceptInviteResponse:
    """Join the invitation's workspace as the authenticated user.

    Exactly one of several concurrent accepts for the same code succeeds; the
    others get 400 ``invitation_already_used``.
    """
    service = AcceptanceService(db, clock)
    result = await service.accept(body.code, current_user, ip_address=client_ip(request))
    response = AcceptInviteResponse(
        success=True,
        user=AcceptedUser(
            id=result.user.id,
            email=result.user.email,
            first_name=result.user.first_name,
            last_name=result.user.last_name,
            role=result.role,
        ),
        workspace=AcceptedWorkspace(id=result.workspace.id, name=result.workspace.name),
        role=result.role,
    )
    await db.commit()

    gateway.dispatch([result.notification])
    return response


@router.get(
    "/{code}",
    response_model=InvitationValidationResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Validate an invitation code",
)
async def validate_invitation(
    code: str,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> InvitationValidationResponse:
    """Public lookup used by the signup page before the user logs in."""
    service = InvitationService(db, clock)
    result = await service.validate(code)
    invitation = result.invitation
    response = InvitationValidationResponse(
        valid=True,
        email=invitation.email,
        workspace_id=invitation.workspace_id,
        workspace_name=result.metadata.workspace_name,
        inviter_name=result.metadata.inviter_name,
        role=invitation.role,
        status=result.status,
        expires_at=invitation.expires_at,
        can_be_used=result.can_be_used,
        custom_message=result.metadata.custom_message,
    )
    await db.commit()
    return response


@router.delete(
    "/{invitation_id}",
    response_model=CancelInviteResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Cancel an invitation",
)
async def cancel_invitation(
    invitation_id: UUID,
    request: Request,
    body: CancelInviteRequest | None = Body(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
) -> CancelInviteResponse:
    """Cancel an active invitation. Inviter or workspace owner only."""
    service = InvitationService(db, clock)
    invitation = await service.cancel(
        invitation_id,
        current_user,
        reason=body.reason if body else None,
        ip_address=client_ip(request),
    )
    response = CancelInviteResponse(invitation_id=invitation.id, status=invitation.status)
    await db.commit()
    return response
