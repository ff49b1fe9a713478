"""Grocery delivery provider client (Instacart Connect API)"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel

from fulfillment.config import settings
from fulfillment.errors import AlreadyTerminal, Conflict, NotFound, ValidationError
from fulfillment.providers.base import (
    BaseProviderClient,
    hmac_sha256_matches,
    parse_timestamp,
)
from fulfillment.retry import RetryExecutor
from fulfillment.schemas.catalog import ProviderKind
from fulfillment.schemas.order import OrderStatus
from fulfillment.schemas.provider import (
    Estimate,
    FulfillmentRequest,
    ProviderReference,
    ProviderStatus,
)
from fulfillment.schemas.webhook import WebhookEvent

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Instacart-Signature"
ITEM_REPLACED = "item.replaced"


class CartItem(BaseModel):
    product_id: str
    quantity: int = 1
    allow_substitution: bool = True


class DeliveryAddress(BaseModel):
    street_address: str
    city: str
    state: str
    zipcode: str
    country: str = "US"
    apt_suite: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class GroceryDetails(BaseModel):
    """Line metadata required to place a grocery order"""
    store_id: str
    items: List[CartItem]
    delivery_address: DeliveryAddress
    contact_phone: str
    contact_email: Optional[str] = None
    delivery_instructions: Optional[str] = None
    tip: Optional[int] = None


class GroceryStore(BaseModel):
    id: str
    name: str
    logo_url: Optional[str] = None
    available: bool = True
    delivery_time_minutes: Optional[int] = None


class GroceryProduct(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: int = 0  # cents
    currency: str = "USD"
    image_url: Optional[str] = None
    available: bool = True
    quantity_available: Optional[int] = None
    unit: Optional[str] = None
    store_id: Optional[str] = None


class GroceryDeliveryProvider(BaseProviderClient):
    """Grocery delivery provider client (static API key and partner id)"""

    kind = ProviderKind.GROCERY

    RAW_STATUS_MAP = {
        "created": OrderStatus.CONFIRMED,
        "shopping": OrderStatus.IN_PROGRESS,
        "delivering": OrderStatus.IN_PROGRESS,
        "delivered": OrderStatus.COMPLETED,
        "cancelled": OrderStatus.CANCELLED,
        "refunded": OrderStatus.REFUNDED,
    }

    EVENT_STATUS_MAP = {
        "order.created": OrderStatus.CONFIRMED,
        "order.shopping": OrderStatus.IN_PROGRESS,
        "order.delivering": OrderStatus.IN_PROGRESS,
        "order.delivered": OrderStatus.COMPLETED,
        "order.cancelled": OrderStatus.CANCELLED,
        ITEM_REPLACED: None,
        "item.refunded": None,
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        partner_id: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        executor: Optional[RetryExecutor] = None,
    ):
        super().__init__(
            base_url or settings.grocery_base_url,
            http_client=http_client,
            executor=executor,
        )
        self.api_key = api_key if api_key is not None else settings.grocery_api_key
        self.partner_id = partner_id if partner_id is not None else settings.grocery_partner_id
        secret = webhook_secret if webhook_secret is not None else settings.grocery_webhook_secret
        self.webhook_secret = secret or self.api_key

    async def _auth_headers(self, auth: str, user_id: Optional[str]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Partner-ID": self.partner_id,
        }

    def _cart(self, details: GroceryDetails) -> List[dict]:
        return [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "replacement_preferences": {"allow_substitution": item.allow_substitution},
            }
            for item in details.items
        ]

    def _address(self, details: GroceryDetails) -> dict:
        address = details.delivery_address.model_dump(exclude_none=True)
        if details.delivery_instructions:
            address["delivery_instructions"] = details.delivery_instructions
        return address

    # ------------------------------------------------------------------
    # Stores & products
    # ------------------------------------------------------------------

    async def get_nearby_stores(
        self,
        zipcode: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> List[GroceryStore]:
        params = {"zipcode": zipcode}
        if lat is not None and lng is not None:
            params.update({"lat": lat, "lng": lng})

        data = await self._request("GET", "/stores", "get_nearby_stores", safe=True, params=params)
        return [GroceryStore.model_validate(store) for store in data.get("stores", [])]

    async def search_products(self, query: str, store_id: str, limit: int = 20) -> List[GroceryProduct]:
        data = await self._request(
            "GET",
            "/products/search",
            "search_products",
            safe=True,
            params={"q": query, "store_id": store_id, "limit": limit},
        )
        return [GroceryProduct.model_validate(product) for product in data.get("products", [])]

    async def get_product(self, product_id: str, store_id: str) -> Optional[GroceryProduct]:
        """Product detail, or None when the store does not carry it"""
        try:
            data = await self._request(
                "GET",
                f"/products/{product_id}",
                "get_product",
                safe=True,
                params={"store_id": store_id},
            )
        except NotFound:
            return None
        return GroceryProduct.model_validate(data)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def quote(self, request: FulfillmentRequest) -> Estimate:
        details = self._parse_details(GroceryDetails, request, "quote")
        data = await self._request(
            "POST",
            "/orders/estimate",
            "get_order_estimate",
            safe=True,
            json={
                "store_id": details.store_id,
                "items": self._cart(details),
                "delivery_address": self._address(details),
                "tip": details.tip or 0,
            },
        )

        total = int(data.get("total", 0))
        return Estimate(
            provider=self.kind,
            low_amount=total,
            high_amount=total,
            currency=data.get("currency") or "USD",
            expires_at=parse_timestamp(data.get("estimated_delivery_time")),
        )

    async def place(self, request: FulfillmentRequest) -> ProviderReference:
        details = self._parse_details(GroceryDetails, request, "place")
        estimate = await self.quote(request)

        body = {
            "store_id": details.store_id,
            "items": self._cart(details),
            "delivery_address": self._address(details),
            "contact": {
                "phone": details.contact_phone,
                "email": details.contact_email,
            },
            "tip": details.tip if details.tip is not None else 0,
            "leave_unattended": True,
        }
        if request.scheduled_for:
            body["scheduled_for"] = request.scheduled_for.isoformat()

        key = request.idempotency_key
        try:
            data = await self._request(
                "POST",
                "/orders",
                "create_order",
                idempotency_key=key,
                headers={"Idempotency-Key": key},
                json=body,
            )
        except Conflict as e:
            # Same idempotency key already produced an order
            body = e.response_data if isinstance(e.response_data, dict) else {}
            reference = body.get("order_id")
            if not reference:
                raise
            logger.info("Grocery order already exists", reference=reference, idempotency_key=key)
            data = {"order_id": reference, "status": "created"}

        raw_status = data.get("status")
        return ProviderReference(
            provider=self.kind,
            reference=self._required(data, "order_id", "create_order"),
            raw_status=raw_status,
            status=self.map_raw_status(raw_status) or OrderStatus.CONFIRMED,
            tracking_url=data.get("tracking_url"),
            fee_amount=data.get("total_amount", estimate.low_amount),
        )

    def _order_status(self, reference: str, data: dict) -> ProviderStatus:
        raw_status = data.get("status", "")
        return ProviderStatus(
            provider=self.kind,
            reference=reference,
            raw_status=raw_status,
            status=self.map_raw_status(raw_status),
            tracking_url=data.get("tracking_url"),
            details={
                "shopper": data.get("shopper"),
                "estimated_delivery_time": data.get("estimated_delivery_time"),
                "total_amount": data.get("total_amount"),
            },
        )

    async def get_status(self, reference: str, user_id: Optional[str] = None) -> ProviderStatus:
        data = await self._request(
            "GET",
            f"/orders/{reference}",
            "get_order_status",
            safe=True,
        )
        return self._order_status(reference, data)

    async def update_tip(self, reference: str, tip: int) -> ProviderStatus:
        """Set the shopper tip (cents) on a placed order"""
        if tip < 0:
            raise ValidationError("Tip cannot be negative", provider=self.name, operation="update_order_tip")

        data = await self._request(
            "PATCH",
            f"/orders/{reference}",
            "update_order_tip",
            safe=True,
            json={"tip": tip},
        )

        logger.info("Grocery tip updated", reference=reference, tip=tip)

        return self._order_status(reference, data)

    async def approve_replacement(
        self,
        reference: str,
        original_product_id: str,
        replacement_product_id: str,
    ) -> None:
        await self._request(
            "POST",
            f"/orders/{reference}/replacements/approve",
            "approve_replacement",
            safe=True,
            json={
                "original_product_id": original_product_id,
                "replacement_product_id": replacement_product_id,
            },
        )

        logger.info(
            "Grocery replacement approved",
            reference=reference,
            original_product_id=original_product_id,
            replacement_product_id=replacement_product_id,
        )

    async def reject_replacement(self, reference: str, original_product_id: str) -> None:
        await self._request(
            "POST",
            f"/orders/{reference}/replacements/reject",
            "reject_replacement",
            safe=True,
            json={"original_product_id": original_product_id},
        )

        logger.info("Grocery replacement rejected", reference=reference, original_product_id=original_product_id)

    async def cancel(self, reference: str, user_id: Optional[str] = None) -> None:
        try:
            data = await self._request(
                "POST",
                f"/orders/{reference}/cancel",
                "cancel_order",
                safe=True,
            )
        except Conflict as e:
            raise self._reclassify(e, AlreadyTerminal)

        logger.info(
            "Grocery order cancelled",
            reference=reference,
            refund_amount=data.get("refund_amount"),
        )

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return hmac_sha256_matches(self.webhook_secret, payload, signature)

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        payload = self._load_webhook_json(raw_body)

        if not payload.get("event_id") or not payload.get("event_type"):
            raise ValidationError(
                "Grocery webhook is missing event_id or event_type",
                provider=self.name,
                operation="parse_webhook",
            )

        return WebhookEvent(
            event_id=str(payload["event_id"]),
            event_type=payload["event_type"],
            provider=self.kind,
            provider_order_reference=payload.get("order_id"),
            provider_status=payload.get("status"),
            occurred_at=parse_timestamp(payload.get("event_time")),
            raw_payload=payload,
            received_at=datetime.now(timezone.utc),
        )

    async def event_details(self, event: WebhookEvent, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if event.event_type != ITEM_REPLACED:
            return None
        # [{original_product_id, replacement_product_id, reason}]
        return {"replacements": event.raw_payload.get("replacement_items") or []}
