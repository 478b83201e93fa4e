"""
Treatment AI Backend — Chat Sharing Schemas
============================================
"""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import Field

from treatment_api.schemas.common import CamelModel


class InternalShareRequest(CamelModel):
    """
    Body of POST /api/share/internal.

    `messages` is the chat transcript as the client renders it
    (`{id, content, sender, timestamp}` items); it is stored verbatim.
    """
    linked_account_id: Optional[uuid.UUID] = None
    messages: Optional[List[Dict[str, Any]]] = None
    session_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=255)


class InternalShareResponse(CamelModel):
    success: bool = True
    message: str = "Chat session shared successfully"
    share_id: str
    recipient_email: Optional[str] = None


class EmailShareRequest(CamelModel):
    """Body of POST /api/share/send-email."""
    emails: Optional[List[str]] = None
    personal_message: Optional[str] = Field(default=None, max_length=2000)
    messages: Optional[List[Dict[str, Any]]] = None
    session_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=255)


class EmailShareDetails(CamelModel):
    successful: int
    failed: int


class EmailShareResponse(CamelModel):
    success: bool = True
    message: str
    details: EmailShareDetails


class PdfExportRequest(CamelModel):
    """Body of POST /api/share/download-pdf."""
    messages: Optional[List[Dict[str, Any]]] = None
    session_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=255)
