"""
Treatment AI Backend — Wearables Schemas
=========================================

Terra posts snake_case JSON, so the webhook models use plain BaseModel;
the connection listing goes to our own clients and is camelCase.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from treatment_api.schemas.common import CamelModel


class TerraUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: Optional[str] = None
    provider: Optional[str] = None
    scopes: Optional[str] = None
    # Our own user id, passed to Terra when the widget session was created
    reference_id: Optional[str] = None


class TerraWebhookEvent(BaseModel):
    """
    One Terra webhook delivery.

    Example (data event):
        {"type": "daily",
         "user": {"user_id": "3f1e...", "provider": "OURA"},
         "data": [{"metadata": {"start_time": "2025-01-15T00:00:00+00:00"}, ...}]}
    """
    model_config = ConfigDict(extra="allow")

    type: str
    user: TerraUser = Field(default_factory=TerraUser)
    data: List[Dict[str, Any]] = Field(default_factory=list)


class WebhookAck(BaseModel):
    message: str


class WearableConnectionItem(CamelModel):
    id: uuid.UUID
    provider: str
    terra_user_id: str
    status: str
    scopes: List[str] = Field(default_factory=list)
    connected_at: datetime
    last_sync: Optional[datetime] = None


class WearableConnectionsResponse(CamelModel):
    success: bool = True
    connections: List[WearableConnectionItem]
