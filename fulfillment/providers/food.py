"""Food delivery provider client (DoorDash Drive API)"""

import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx
import structlog
from jose import jwt
from pydantic import BaseModel

from fulfillment.config import settings
from fulfillment.errors import AlreadyTerminal, Conflict, ValidationError
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

SIGNATURE_HEADER = "X-DoorDash-Signature"
DEFAULT_TIP_RATE = 0.15


class Address(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: Optional[str] = None
    subpremise: Optional[str] = None

    def formatted(self) -> str:
        text = self.street
        if self.subpremise:
            text += f" {self.subpremise}"
        text += f", {self.city}, {self.state} {self.zip_code}"
        if self.country:
            text += f", {self.country}"
        return text


class Contact(BaseModel):
    first_name: str
    last_name: str
    phone_number: str
    email: Optional[str] = None


class DeliveryItem(BaseModel):
    name: str
    quantity: int = 1
    price: int = 0  # cents
    description: Optional[str] = None
    external_id: Optional[str] = None


class FoodDetails(BaseModel):
    """Line metadata required to book a delivery"""
    pickup_address: Address
    dropoff_address: Address
    pickup_contact: Contact
    dropoff_contact: Contact
    items: List[DeliveryItem] = []
    pickup_business_name: str = "Property Location"
    pickup_instructions: Optional[str] = None
    dropoff_instructions: Optional[str] = None
    tip: Optional[int] = None


class FoodDeliveryProvider(BaseProviderClient):
    """
    Food delivery provider client.

    Every request carries a freshly signed JWT. The delivery id sent to the
    provider is derived from the internal order and line, so a repeated
    create for the same line is recognised by the provider.
    """

    kind = ProviderKind.FOOD

    RAW_STATUS_MAP = {
        "created": OrderStatus.CONFIRMED,
        "scheduled": OrderStatus.CONFIRMED,
        "confirmed": OrderStatus.CONFIRMED,
        "dasher_confirmed": OrderStatus.CONFIRMED,
        "picking_up": OrderStatus.IN_PROGRESS,
        "picked_up": OrderStatus.IN_PROGRESS,
        "delivering": OrderStatus.IN_PROGRESS,
        "delivered": OrderStatus.COMPLETED,
        "cancelled": OrderStatus.CANCELLED,
        "returned": OrderStatus.CANCELLED,
    }

    EVENT_STATUS_MAP = {
        "delivery.created": OrderStatus.CONFIRMED,
        "delivery.confirmed": OrderStatus.CONFIRMED,
        "delivery.picked_up": OrderStatus.IN_PROGRESS,
        "delivery.delivered": OrderStatus.COMPLETED,
        "delivery.cancelled": OrderStatus.CANCELLED,
        "delivery.returned": OrderStatus.CANCELLED,
    }

    def __init__(
        self,
        developer_id: Optional[str] = None,
        key_id: Optional[str] = None,
        signing_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        jwt_ttl_seconds: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        executor: Optional[RetryExecutor] = None,
    ):
        super().__init__(
            base_url or settings.food_base_url,
            http_client=http_client,
            executor=executor,
        )
        self.developer_id = developer_id if developer_id is not None else settings.food_developer_id
        self.key_id = key_id if key_id is not None else settings.food_key_id
        self.signing_secret = signing_secret if signing_secret is not None else settings.food_signing_secret
        self.jwt_ttl_seconds = jwt_ttl_seconds or settings.food_jwt_ttl_seconds

    def generate_jwt(self, now: Optional[int] = None) -> str:
        """Short-lived HS256 assertion; never cached"""
        issued_at = int(now if now is not None else time.time())
        claims = {
            "aud": "doordash",
            "iss": self.developer_id,
            "kid": self.key_id,
            "iat": issued_at,
            "nbf": issued_at,
            "exp": issued_at + self.jwt_ttl_seconds,
        }
        return jwt.encode(
            claims,
            self.signing_secret,
            algorithm="HS256",
            headers={"dd-ver": "DD-JWT-V1"},
        )

    async def _auth_headers(self, auth: str, user_id: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.generate_jwt()}"}

    async def _reauthenticate(self, auth: str, user_id: Optional[str]) -> bool:
        # A new token is minted for every request anyway
        return True

    def _delivery_body(self, details: FoodDetails, delivery_id: str) -> dict:
        return {
            "external_delivery_id": delivery_id,
            "pickup_address": details.pickup_address.formatted(),
            "pickup_business_name": details.pickup_business_name,
            "pickup_phone_number": details.pickup_contact.phone_number,
            "pickup_instructions": details.pickup_instructions or "Contact guest upon arrival",
            "dropoff_address": details.dropoff_address.formatted(),
            "dropoff_business_name": f"{details.dropoff_contact.first_name} {details.dropoff_contact.last_name}",
            "dropoff_phone_number": details.dropoff_contact.phone_number,
            "dropoff_instructions": details.dropoff_instructions or "Leave at door if no answer",
            "order_value": sum(item.price * item.quantity for item in details.items),
            "items": [
                {
                    "name": item.name,
                    "description": item.description or "",
                    "quantity": item.quantity,
                    "external_id": item.external_id or "",
                }
                for item in details.items
            ],
        }

    async def quote(self, request: FulfillmentRequest) -> Estimate:
        details = self._parse_details(FoodDetails, request, "quote")
        data = await self._request(
            "POST",
            "/quotes",
            "get_delivery_quote",
            safe=True,
            json=self._delivery_body(details, request.idempotency_key),
        )

        fee = int(data.get("fee", 0))
        return Estimate(
            provider=self.kind,
            low_amount=fee,
            high_amount=fee,
            currency=data.get("currency") or "USD",
            expires_at=parse_timestamp(data.get("expires_at")),
            quote_id=data.get("external_delivery_id") or request.idempotency_key,
        )

    async def place(self, request: FulfillmentRequest) -> ProviderReference:
        details = self._parse_details(FoodDetails, request, "place")
        estimate = await self.quote(request)
        delivery_id = request.idempotency_key

        body = self._delivery_body(details, delivery_id)
        body.update({
            "tip": details.tip if details.tip is not None else round(estimate.low_amount * DEFAULT_TIP_RATE),
            "contactless_dropoff": True,
            "action_if_undeliverable": "return_to_pickup",
        })

        try:
            data = await self._request(
                "POST",
                "/deliveries",
                "create_delivery",
                idempotency_key=delivery_id,
                json=body,
            )
        except Conflict:
            # An earlier attempt already created this delivery
            logger.info("Delivery already exists, reading it back", delivery_id=delivery_id)
            data = await self._request(
                "GET",
                f"/deliveries/{delivery_id}",
                "get_delivery",
                safe=True,
            )

        raw_status = data.get("delivery_status")
        return ProviderReference(
            provider=self.kind,
            reference=data.get("external_delivery_id") or delivery_id,
            raw_status=raw_status,
            status=self.map_raw_status(raw_status) or OrderStatus.CONFIRMED,
            tracking_url=data.get("tracking_url"),
            fee_amount=data.get("fee", estimate.low_amount),
        )

    def _delivery_status(self, reference: str, data: dict) -> ProviderStatus:
        raw_status = data.get("delivery_status", "")
        return ProviderStatus(
            provider=self.kind,
            reference=reference,
            raw_status=raw_status,
            status=self.map_raw_status(raw_status),
            tracking_url=data.get("tracking_url"),
            details={
                "dasher": data.get("dasher"),
                "pickup_time": data.get("pickup_time"),
                "dropoff_time": data.get("dropoff_time"),
                "cancellation_reason": data.get("cancellation_reason"),
            },
        )

    async def get_status(self, reference: str, user_id: Optional[str] = None) -> ProviderStatus:
        data = await self._request(
            "GET",
            f"/deliveries/{reference}",
            "get_delivery_status",
            safe=True,
        )
        return self._delivery_status(reference, data)

    async def update_delivery(
        self,
        reference: str,
        dropoff_address: Optional[Address] = None,
        dropoff_phone_number: Optional[str] = None,
        dropoff_instructions: Optional[str] = None,
        tip: Optional[int] = None,
    ) -> ProviderStatus:
        """Change drop-off details or tip of a booked delivery"""
        body = {}
        if dropoff_address is not None:
            body["dropoff_address"] = dropoff_address.formatted()
        if dropoff_phone_number is not None:
            body["dropoff_phone_number"] = dropoff_phone_number
        if dropoff_instructions is not None:
            body["dropoff_instructions"] = dropoff_instructions
        if tip is not None:
            body["tip"] = tip
        if not body:
            raise ValidationError(
                "Nothing to update on the delivery",
                provider=self.name,
                operation="update_delivery",
            )

        data = await self._request(
            "PATCH",
            f"/deliveries/{reference}",
            "update_delivery",
            safe=True,
            json=body,
        )

        logger.info("Delivery updated", reference=reference, fields=sorted(body))

        return self._delivery_status(reference, data)

    async def cancel(self, reference: str, user_id: Optional[str] = None) -> None:
        try:
            await self._request(
                "DELETE",
                f"/deliveries/{reference}",
                "cancel_delivery",
                safe=True,
            )
        except Conflict as e:
            raise self._reclassify(e, AlreadyTerminal)

        logger.info("Delivery cancelled", reference=reference)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return hmac_sha256_matches(self.signing_secret, payload, signature)

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        payload = self._load_webhook_json(raw_body)

        if not payload.get("event_id") or not payload.get("event_name"):
            raise ValidationError(
                "Food webhook is missing event_id or event_name",
                provider=self.name,
                operation="parse_webhook",
            )

        return WebhookEvent(
            event_id=str(payload["event_id"]),
            event_type=payload["event_name"],
            provider=self.kind,
            provider_order_reference=payload.get("external_delivery_id"),
            provider_status=payload.get("delivery_status"),
            occurred_at=parse_timestamp(payload.get("event_time")),
            raw_payload=payload,
            received_at=datetime.now(timezone.utc),
        )
