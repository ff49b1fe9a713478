"""Ride-hailing provider client (Uber Rides API)"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import BaseModel

from fulfillment.cache import CacheStore
from fulfillment.config import settings
from fulfillment.errors import (
    AlreadyTerminal,
    AuthExpired,
    Conflict,
    InvalidAddress,
    NotFound,
    ProviderError,
    RateUnavailable,
    ValidationError,
)
from fulfillment.providers.base import BaseProviderClient, parse_timestamp
from fulfillment.retry import RetryExecutor
from fulfillment.schemas.catalog import ProviderKind
from fulfillment.schemas.order import OrderStatus
from fulfillment.schemas.provider import (
    Estimate,
    FulfillmentRequest,
    OAuthToken,
    ProviderReference,
    ProviderStatus,
)
from fulfillment.schemas.webhook import WebhookEvent

logger = structlog.get_logger()

STATUS_CHANGED = "requests.status_changed"
RECEIPT_READY = "requests.receipt_ready"


class RideDetails(BaseModel):
    """Line metadata required to request a ride"""
    product_id: str
    start_lat: float
    start_lng: float
    end_lat: float
    end_lng: float
    fare_id: Optional[str] = None
    seat_count: Optional[int] = None


class TokenStore:
    """OAuth2 user tokens kept in the shared cache, keyed by user id"""

    def __init__(self, cache: CacheStore, provider: str = "ride", ttl_seconds: Optional[int] = None):
        self.cache = cache
        self.provider = provider
        self.ttl_seconds = ttl_seconds or settings.provider_token_ttl

    def _key(self, user_id: str) -> str:
        return f"oauth:{self.provider}:{user_id}"

    async def get(self, user_id: str) -> Optional[OAuthToken]:
        data = await self.cache.get_json(self._key(user_id))
        if not data:
            return None
        return OAuthToken.model_validate(data)

    async def save(self, user_id: str, token: OAuthToken) -> None:
        await self.cache.set_json(self._key(user_id), token.model_dump(mode="json"), self.ttl_seconds)


class RideProvider(BaseProviderClient):
    """
    Ride provider client.

    Product and price lookups authenticate with the server token
    (``Authorization: Token <key>``). Creating, reading and cancelling
    rides act on behalf of the guest and need their OAuth2 access token
    (``Authorization: Bearer <token>``), which is refreshed proactively
    before it expires. Webhooks are unsigned.
    """

    kind = ProviderKind.RIDE
    SIGNED_WEBHOOKS = False
    AMOUNT_UNIT = "major"

    RAW_STATUS_MAP = {
        "processing": OrderStatus.CONFIRMED,
        "accepted": OrderStatus.CONFIRMED,
        "arriving": OrderStatus.CONFIRMED,
        "in_progress": OrderStatus.IN_PROGRESS,
        "completed": OrderStatus.COMPLETED,
        "driver_canceled": OrderStatus.CANCELLED,
        "rider_canceled": OrderStatus.CANCELLED,
        "no_drivers_available": OrderStatus.CANCELLED,
    }

    EVENT_STATUS_MAP = {
        STATUS_CHANGED: None,  # resolved from the ride status carried by the event
        RECEIPT_READY: None,
    }

    def __init__(
        self,
        token_store: TokenStore,
        api_key: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        token_url: Optional[str] = None,
        authorize_url: Optional[str] = None,
        safety_margin_seconds: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        executor: Optional[RetryExecutor] = None,
    ):
        super().__init__(
            base_url or settings.ride_base_url,
            http_client=http_client,
            executor=executor,
        )
        self.token_store = token_store
        self.api_key = api_key if api_key is not None else settings.ride_api_key
        self.client_id = client_id if client_id is not None else settings.ride_client_id
        self.client_secret = client_secret if client_secret is not None else settings.ride_client_secret
        self.token_url = token_url or settings.ride_token_url
        self.authorize_url = authorize_url or settings.ride_authorize_url
        self.safety_margin_seconds = (
            settings.ride_token_safety_margin_seconds
            if safety_margin_seconds is None
            else safety_margin_seconds
        )

    # ------------------------------------------------------------------
    # OAuth2
    # ------------------------------------------------------------------

    def authorization_url(self, redirect_uri: str, state: str, scope: str = "request profile") -> str:
        """Authorization-code flow entry point for a guest"""
        params = urlencode({
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
        })
        return f"{self.authorize_url}?{params}"

    def _token_from_response(
        self,
        data: dict,
        operation: str,
        previous: Optional[OAuthToken] = None,
    ) -> OAuthToken:
        expires_in = int(data.get("expires_in", 0))
        return OAuthToken(
            access_token=self._required(data, "access_token", operation),
            # Refresh responses may omit the refresh token; keep the old one
            refresh_token=data.get("refresh_token") or (previous.refresh_token if previous else None),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    async def exchange_code(self, user_id: str, code: str, redirect_uri: str) -> OAuthToken:
        """Exchange an authorization code and store the guest's token"""
        data = await self._request(
            "POST",
            self.token_url,
            "exchange_code",
            auth="none",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )
        token = self._token_from_response(data, "exchange_code")
        await self.token_store.save(user_id, token)

        logger.info("Stored ride authorization", user_id=user_id, expires_at=token.expires_at.isoformat())

        return token

    async def refresh(self, user_id: str) -> OAuthToken:
        """
        Refresh a guest's access token using the stored refresh token.

        A single token-endpoint exchange; the ride call that triggered the
        refresh owns the retries.
        """
        current = await self.token_store.get(user_id)
        if not current or not current.refresh_token:
            raise AuthExpired(
                "No refresh token available for user",
                provider=self.name,
                operation="refresh_token",
            )

        data = await self._send(
            "POST",
            self.token_url,
            "refresh_token",
            "none",
            None,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
            },
        )
        token = self._token_from_response(data, "refresh_token", previous=current)
        await self.token_store.save(user_id, token)

        logger.info("Refreshed ride access token", user_id=user_id)

        return token

    async def get_user_token(self, user_id: Optional[str]) -> str:
        """Valid access token for a guest, refreshing it when close to expiry"""
        if not user_id:
            raise AuthExpired("Ride request needs a user identity", provider=self.name)

        token = await self.token_store.get(user_id)
        if token is None:
            raise AuthExpired(
                "Guest has not authorized ride requests",
                provider=self.name,
                suggestion="Send the guest through the ride authorization flow.",
            )

        if token.needs_refresh(self.safety_margin_seconds):
            if not token.refresh_token:
                raise AuthExpired(
                    "Ride access token expired and cannot be refreshed",
                    provider=self.name,
                    suggestion="Send the guest through the ride authorization flow.",
                )
            token = await self.refresh(user_id)

        return token.access_token

    async def _auth_headers(self, auth: str, user_id: Optional[str]) -> Dict[str, str]:
        if auth == "none":
            return {}
        if auth == "user":
            return {"Authorization": f"Bearer {await self.get_user_token(user_id)}"}
        return {"Authorization": f"Token {self.api_key}", "Accept-Language": "en_US"}

    async def _reauthenticate(self, auth: str, user_id: Optional[str]) -> bool:
        if auth != "user" or not user_id:
            return False
        try:
            await self.refresh(user_id)
        except ProviderError as e:
            logger.warning("Ride token refresh failed", user_id=user_id, error_code=e.code)
            return False
        return True

    # ------------------------------------------------------------------
    # Products & estimates
    # ------------------------------------------------------------------

    async def get_products(self, latitude: float, longitude: float) -> List[dict]:
        data = await self._request(
            "GET",
            "/products",
            "get_products",
            auth="server",
            safe=True,
            params={"latitude": latitude, "longitude": longitude},
        )
        return data.get("products", [])

    async def get_price_estimates(
        self,
        start_lat: float,
        start_lng: float,
        end_lat: float,
        end_lng: float,
    ) -> List[Estimate]:
        """Price estimates for every product, in minor units"""
        try:
            data = await self._request(
                "GET",
                "/estimates/price",
                "get_price_estimates",
                auth="server",
                safe=True,
                params={
                    "start_latitude": start_lat,
                    "start_longitude": start_lng,
                    "end_latitude": end_lat,
                    "end_longitude": end_lng,
                },
            )
        except ValidationError as e:
            if e.status_code == 422:
                raise self._reclassify(e, InvalidAddress)
            raise

        estimates = []
        for price in data.get("prices", []):
            currency = price.get("currency_code") or "USD"
            if price.get("low_estimate") is None or price.get("high_estimate") is None:
                continue
            estimates.append(Estimate(
                provider=self.kind,
                low_amount=self.normalize_amount(price["low_estimate"], currency),
                high_amount=self.normalize_amount(price["high_estimate"], currency),
                currency=currency,
                product_id=price.get("product_id"),
                display_name=price.get("display_name"),
                eta_seconds=price.get("duration"),
            ))
        return estimates

    async def get_time_estimates(
        self,
        latitude: float,
        longitude: float,
        product_id: Optional[str] = None,
    ) -> List[dict]:
        """Pickup ETA per product, ``estimate`` in seconds"""
        params = {"start_latitude": latitude, "start_longitude": longitude}
        if product_id:
            params["product_id"] = product_id

        data = await self._request(
            "GET",
            "/estimates/time",
            "get_time_estimates",
            auth="server",
            safe=True,
            params=params,
        )
        return data.get("times", [])

    async def quote(self, request: FulfillmentRequest) -> Estimate:
        details = self._parse_details(RideDetails, request, "quote")
        estimates = await self.get_price_estimates(
            details.start_lat,
            details.start_lng,
            details.end_lat,
            details.end_lng,
        )

        for estimate in estimates:
            if estimate.product_id == details.product_id:
                return estimate

        raise RateUnavailable(
            f"No price estimate for product {details.product_id}",
            provider=self.name,
            operation="quote",
        )

    # ------------------------------------------------------------------
    # Rides
    # ------------------------------------------------------------------

    async def place(self, request: FulfillmentRequest) -> ProviderReference:
        details = self._parse_details(RideDetails, request, "place")

        body = {
            "product_id": details.product_id,
            "start_latitude": details.start_lat,
            "start_longitude": details.start_lng,
            "end_latitude": details.end_lat,
            "end_longitude": details.end_lng,
        }
        if details.fare_id:
            body["fare_id"] = details.fare_id
        if details.seat_count:
            body["seat_count"] = details.seat_count

        # Ride creation has no idempotency key, so it is not retried blindly
        data = await self._request(
            "POST",
            "/requests",
            "request_ride",
            auth="user",
            user_id=request.user_id,
            json=body,
        )

        raw_status = data.get("status")
        return ProviderReference(
            provider=self.kind,
            reference=self._required(data, "request_id", "request_ride"),
            raw_status=raw_status,
            status=self.map_raw_status(raw_status) or OrderStatus.CONFIRMED,
        )

    def _ride_status(self, reference: str, data: dict) -> ProviderStatus:
        raw_status = data.get("status", "")
        return ProviderStatus(
            provider=self.kind,
            reference=reference,
            raw_status=raw_status,
            status=self.map_raw_status(raw_status),
            details={
                "driver": data.get("driver"),
                "vehicle": data.get("vehicle"),
                "location": data.get("location"),
                "eta": data.get("eta"),
                "surge_multiplier": data.get("surge_multiplier"),
            },
        )

    async def get_status(self, reference: str, user_id: Optional[str] = None) -> ProviderStatus:
        data = await self._request(
            "GET",
            f"/requests/{reference}",
            "get_ride_details",
            auth="user",
            user_id=user_id,
            safe=True,
        )
        return self._ride_status(reference, data)

    async def get_current_ride(self, user_id: str) -> Optional[ProviderStatus]:
        """The guest's active ride, or None when they have none"""
        try:
            data = await self._request(
                "GET",
                "/requests/current",
                "get_current_ride",
                auth="user",
                user_id=user_id,
                safe=True,
            )
        except NotFound:
            return None
        return self._ride_status(self._required(data, "request_id", "get_current_ride"), data)

    async def update_destination(
        self,
        reference: str,
        end_lat: float,
        end_lng: float,
        user_id: Optional[str] = None,
    ) -> None:
        await self._request(
            "PATCH",
            f"/requests/{reference}",
            "update_destination",
            auth="user",
            user_id=user_id,
            safe=True,
            json={"end_latitude": end_lat, "end_longitude": end_lng},
        )

        logger.info("Ride destination updated", reference=reference)

    async def get_receipt(self, reference: str, user_id: Optional[str] = None) -> dict:
        """Fare breakdown of a finished ride"""
        return await self._request(
            "GET",
            f"/requests/{reference}/receipt",
            "get_ride_receipt",
            auth="user",
            user_id=user_id,
            safe=True,
        )

    async def cancel(self, reference: str, user_id: Optional[str] = None) -> None:
        try:
            await self._request(
                "DELETE",
                f"/requests/{reference}",
                "cancel_ride",
                auth="user",
                user_id=user_id,
                safe=True,
            )
        except Conflict as e:
            raise self._reclassify(e, AlreadyTerminal)

        logger.info("Ride cancelled", reference=reference)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        # No signature scheme: trust rests on the network path to this endpoint
        return True

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        payload = self._load_webhook_json(raw_body)
        meta = payload.get("meta") or {}

        if not payload.get("event_id") or not payload.get("event_type"):
            raise ValidationError(
                "Ride webhook is missing event_id or event_type",
                provider=self.name,
                operation="parse_webhook",
            )

        return WebhookEvent(
            event_id=str(payload["event_id"]),
            event_type=payload["event_type"],
            provider=self.kind,
            provider_order_reference=meta.get("resource_id"),
            provider_status=meta.get("status"),
            occurred_at=parse_timestamp(payload.get("event_time")),
            user_id=meta.get("user_id"),
            raw_payload=payload,
            received_at=datetime.now(timezone.utc),
        )

    def status_for_event(self, event: WebhookEvent) -> Optional[OrderStatus]:
        if event.event_type != STATUS_CHANGED:
            return None
        return self.map_raw_status(event.provider_status)

    def requires_status_lookup(self, event: WebhookEvent) -> bool:
        return event.event_type == STATUS_CHANGED and not event.provider_status

    async def event_details(self, event: WebhookEvent, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if event.event_type != RECEIPT_READY or not event.provider_order_reference:
            return None
        receipt = await self.get_receipt(event.provider_order_reference, user_id=user_id)
        return {"receipt": receipt}
