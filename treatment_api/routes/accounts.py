"""
Treatment AI Backend — Linked Account Routes
=============================================

What:  Family / caregiver account linking: invitations, the resulting
       two-way links, per-link permissions and the access audit log.
Who:   The "Linked accounts" screens of the web and mobile clients.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.middleware.logging import client_ip
from treatment_api.models.user import User
from treatment_api.schemas.accounts import (
    AccessHistoryResponse,
    InvitationItem,
    InvitationsResponse,
    InviteRequest,
    InviteResponse,
    LinkedAccountsResponse,
    ManagePermissionsRequest,
    ManagePermissionsResponse,
    RespondInvitationRequest,
    RespondInvitationResponse,
    UnlinkRequest,
    UnlinkResponse,
    ValidateAccessRequest,
    ValidateAccessResponse,
)
from treatment_api.schemas.common import ErrorResponse
from treatment_api.services.account_link_service import account_link_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["Linked Accounts"])


@router.post(
    "/invite",
    response_model=InviteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Invite someone to link accounts",
)
async def invite(
    body: InviteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> InviteResponse:
    invitation = await account_link_service.invite(
        db,
        user,
        invitee_email=body.invitee_email,
        permissions=body.permissions,
        relationship_type=body.relationship_type,
        message=body.message,
    )
    return InviteResponse(invitation=InvitationItem.model_validate(invitation))


@router.post(
    "/accept-invitation",
    response_model=RespondInvitationResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"description": "Invitation addressed to someone else", "model": ErrorResponse},
        404: {"description": "Unknown or expired invitation", "model": ErrorResponse},
    },
    summary="Accept or reject an invitation",
)
async def respond_to_invitation(
    body: RespondInvitationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> RespondInvitationResponse:
    linked = await account_link_service.respond(
        db,
        user,
        link_token=body.link_token,
        action=body.action,
        reciprocal_permissions=body.reciprocal_permissions,
    )
    if linked is None:
        return RespondInvitationResponse(message="Invitation rejected successfully")
    return RespondInvitationResponse(
        message="Invitation accepted successfully", linked_account=linked
    )


@router.get(
    "/linked",
    response_model=LinkedAccountsResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Links plus received and sent invitations",
)
async def list_linked(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> LinkedAccountsResponse:
    data = await account_link_service.list_linked(db, user)
    return LinkedAccountsResponse(data=data)


@router.get(
    "/invitations",
    response_model=InvitationsResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Pending invitations addressed to the caller",
)
async def list_invitations(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> InvitationsResponse:
    invitations = await account_link_service.list_pending_invitations(db, user)
    return InvitationsResponse(
        invitations=[InvitationItem.model_validate(i) for i in invitations]
    )


@router.put(
    "/manage-permissions",
    response_model=ManagePermissionsResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Change what a linked account may see",
)
async def manage_permissions(
    body: ManagePermissionsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ManagePermissionsResponse:
    update = await account_link_service.update_permissions(
        db, user, body.linked_account_id, body.new_permissions
    )
    return ManagePermissionsResponse(data=update)


@router.delete(
    "/unlink",
    response_model=UnlinkResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Remove a link in both directions",
)
async def unlink(
    body: UnlinkRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UnlinkResponse:
    data = await account_link_service.unlink(
        db, user, body.linked_account_id, confirm_email=body.confirm_email
    )
    return UnlinkResponse(data=data)


@router.post(
    "/validate-access",
    response_model=ValidateAccessResponse,
    responses={
        403: {"description": "Insufficient permissions", "model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Check a linked account permission before reading shared data",
)
async def validate_access(
    body: ValidateAccessRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ValidateAccessResponse:
    link = await account_link_service.validate_access(
        db,
        user,
        linked_account_id=body.linked_account_id,
        data_type=body.data_type,
        required_permission=body.required_permission,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ValidateAccessResponse(
        linked_user=link.linked_email,
        permission=body.required_permission or body.data_type,
        relationship_type=link.relationship_type,
    )


@router.get(
    "/access-history",
    response_model=AccessHistoryResponse,
    responses={401: {"model": ErrorResponse}},
    summary="The caller's linked-data access log",
)
async def access_history(
    limit: int = Query(default=50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> AccessHistoryResponse:
    logs, stats = await account_link_service.access_history(db, user, limit=limit)
    return AccessHistoryResponse(access_logs=logs, access_stats=stats)
