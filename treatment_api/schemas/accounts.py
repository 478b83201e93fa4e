"""
Treatment AI Backend — Account Linking Schemas
===============================================

Request bodies are camelCase (`inviteeEmail`, `linkedAccountId`). Listing
payloads keep the snake_case keys the linked-accounts screen reads, while
the permission-management, unlink and access-validation results are
camelCase, as the app has always received them.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from treatment_api.schemas.common import CamelModel


# ── Requests ──────────────────────────────────────────────────────────────

class InviteRequest(CamelModel):
    invitee_email: Optional[str] = None
    permissions: Optional[List[str]] = None
    relationship_type: Optional[str] = Field(default=None, description="Defaults to family")
    message: Optional[str] = Field(default=None, max_length=1000)


class RespondInvitationRequest(CamelModel):
    link_token: Optional[str] = None
    action: Optional[str] = Field(default=None, description="accept or reject")
    reciprocal_permissions: List[str] = Field(default_factory=list)


class ManagePermissionsRequest(CamelModel):
    linked_account_id: Optional[uuid.UUID] = None
    new_permissions: Optional[List[str]] = None


class UnlinkRequest(CamelModel):
    linked_account_id: Optional[uuid.UUID] = None
    confirm_email: Optional[str] = None


class ValidateAccessRequest(CamelModel):
    linked_account_id: Optional[uuid.UUID] = None
    data_type: Optional[str] = None
    required_permission: Optional[str] = Field(
        default=None, description="Defaults to data_type"
    )


# ── Listing payloads (snake_case) ─────────────────────────────────────────

class InvitationItem(BaseModel):
    id: uuid.UUID
    inviter_email: str
    invitee_email: str
    relationship_type: str
    permissions: List[str]
    status: str
    message: Optional[str] = None
    link_token: str
    created_at: datetime
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class InviteResponse(BaseModel):
    success: bool = True
    invitation: InvitationItem
    message: str = "Invitation created successfully"


class LinkedAccountItem(BaseModel):
    id: uuid.UUID
    linked_user_id: uuid.UUID
    linked_user_email: Optional[str] = None
    relationship_type: str
    permissions: List[str]
    created_at: datetime
    is_inviter: bool = False


class RespondInvitationResponse(BaseModel):
    success: bool = True
    message: str
    linked_account: Optional[LinkedAccountItem] = None


class LinkSummary(BaseModel):
    total_links: int
    pending_received: int
    pending_sent: int


class LinkedAccountsData(BaseModel):
    linked_accounts: List[LinkedAccountItem]
    pending_invitations: List[InvitationItem]
    sent_invitations: List[InvitationItem]
    summary: LinkSummary


class LinkedAccountsResponse(BaseModel):
    success: bool = True
    data: LinkedAccountsData


class InvitationsResponse(BaseModel):
    success: bool = True
    invitations: List[InvitationItem]


class AccessLogItem(BaseModel):
    id: uuid.UUID
    requesting_user_email: Optional[str] = None
    linked_account_id: Optional[uuid.UUID] = None
    data_type: str
    permission_used: Optional[str] = None
    access_granted: bool
    error_message: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AccessFrequency(BaseModel):
    daily: int = 0
    weekly: int = 0
    monthly: int = 0


class AccessStatsItem(BaseModel):
    linked_account_id: uuid.UUID
    linked_user_email: Optional[str] = None
    total_accesses: int = 0
    last_access: Optional[datetime] = None
    data_types_accessed: List[str] = Field(default_factory=list)
    access_frequency: AccessFrequency = Field(default_factory=AccessFrequency)


class AccessHistoryResponse(BaseModel):
    success: bool = True
    access_logs: List[AccessLogItem]
    access_stats: List[AccessStatsItem]


# ── Mutation results (camelCase) ──────────────────────────────────────────

class PermissionsUpdate(CamelModel):
    linked_account_id: uuid.UUID
    linked_user_email: Optional[str] = None
    old_permissions: List[str]
    new_permissions: List[str]
    updated_at: datetime


class ManagePermissionsResponse(CamelModel):
    success: bool = True
    message: str = "Permissions updated successfully"
    data: PermissionsUpdate


class UnlinkedAccount(CamelModel):
    id: uuid.UUID
    email: Optional[str] = None
    relationship_type: str
    was_linked_since: datetime
    had_permissions: List[str]


class UnlinkData(CamelModel):
    unlinked_account: UnlinkedAccount
    unlinked_at: datetime


class UnlinkResponse(CamelModel):
    success: bool = True
    message: str = "Account successfully unlinked"
    data: UnlinkData


class ValidateAccessResponse(CamelModel):
    success: bool = True
    message: str = "Access granted"
    linked_user: Optional[str] = None
    permission: str
    relationship_type: str
