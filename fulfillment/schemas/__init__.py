"""Pydantic schemas for request/response validation"""

from fulfillment.schemas.catalog import (
    CatalogItem,
    CatalogResponse,
    ProviderKind,
    UpsellCategory,
)
from fulfillment.schemas.order import (
    Dispatch,
    DispatchOutcome,
    Order,
    OrderCreate,
    OrderCreateResult,
    OrderItemCreate,
    OrderLine,
    OrderRating,
    OrderStatus,
    OrderStatusUpdate,
    Priority,
)
from fulfillment.schemas.provider import (
    Estimate,
    FulfillmentRequest,
    OAuthToken,
    RideAuthorizationCallback,
    ProviderReference,
    ProviderStatus,
    ReplacementDecision,
)
from fulfillment.schemas.webhook import WebhookAck, WebhookEvent

__all__ = [
    "CatalogItem",
    "CatalogResponse",
    "ProviderKind",
    "UpsellCategory",
    "Dispatch",
    "DispatchOutcome",
    "Order",
    "OrderCreate",
    "OrderCreateResult",
    "OrderItemCreate",
    "OrderLine",
    "OrderRating",
    "OrderStatus",
    "OrderStatusUpdate",
    "Priority",
    "Estimate",
    "FulfillmentRequest",
    "OAuthToken",
    "RideAuthorizationCallback",
    "ProviderReference",
    "ProviderStatus",
    "ReplacementDecision",
    "WebhookAck",
    "WebhookEvent",
]
