"""Provider webhook schemas"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from fulfillment.schemas.catalog import ProviderKind


class WebhookEvent(BaseModel):
    """Normalised provider callback"""
    event_id: str
    event_type: str
    provider: ProviderKind
    provider_order_reference: Optional[str] = None
    provider_status: Optional[str] = None
    occurred_at: Optional[datetime] = None
    user_id: Optional[str] = None
    raw_payload: Dict[str, Any] = {}
    received_at: datetime


class WebhookAck(BaseModel):
    """Webhook response body"""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    event_id: str = Field(..., serialization_alias="eventId")
    processed_at: datetime = Field(..., serialization_alias="processedAt")
    duplicate: bool = False
    applied: bool = False
