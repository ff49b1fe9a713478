"""Provider client request/response schemas"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel

from fulfillment.schemas.catalog import ProviderKind
from fulfillment.schemas.order import OrderStatus


class FulfillmentRequest(BaseModel):
    """Uniform input to quote/place for every provider"""
    order_id: str
    line_id: str
    user_id: str
    quantity: int = 1
    scheduled_for: Optional[datetime] = None
    metadata: Dict[str, Any] = {}

    @property
    def idempotency_key(self) -> str:
        """Deterministic external id derived from the internal order"""
        return f"{self.order_id}-{self.line_id}"


class Estimate(BaseModel):
    """Price estimate; amounts always in minor units"""
    provider: ProviderKind
    low_amount: int
    high_amount: int
    currency: str = "USD"
    product_id: Optional[str] = None
    display_name: Optional[str] = None
    eta_seconds: Optional[int] = None
    expires_at: Optional[datetime] = None
    quote_id: Optional[str] = None


class ProviderReference(BaseModel):
    """Identifier a provider assigned to a placed order"""
    provider: ProviderKind
    reference: str
    raw_status: Optional[str] = None
    status: OrderStatus = OrderStatus.CONFIRMED
    tracking_url: Optional[str] = None
    fee_amount: Optional[int] = None


class ProviderStatus(BaseModel):
    """Provider-side state of a placed order"""
    provider: ProviderKind
    reference: str
    raw_status: str
    status: Optional[OrderStatus] = None  # None when the raw status has no mapping
    tracking_url: Optional[str] = None
    updated_at: Optional[datetime] = None
    details: Dict[str, Any] = {}


class OAuthToken(BaseModel):
    """End-user OAuth2 credential"""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expires_at: datetime

    def needs_refresh(self, safety_margin_seconds: int, now: Optional[datetime] = None) -> bool:
        """True when the token expires within the safety margin"""
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=safety_margin_seconds) > self.expires_at


class RideAuthorizationCallback(BaseModel):
    """Authorization code returned to the ride OAuth redirect"""
    code: str
    redirect_uri: str
    state: Optional[str] = None


class ReplacementDecision(BaseModel):
    """Guest answer to a grocery item substitution"""
    original_product_id: str
    replacement_product_id: Optional[str] = None
    approve: bool = True
