"""Base provider client interface"""

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from fulfillment.config import settings
from fulfillment.errors import (
    ProviderError,
    ProviderUnreachable,
    ValidationError,
    AuthExpired,
    error_for_status,
)
from fulfillment.money import to_minor_units
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

DetailsT = TypeVar("DetailsT", bound=BaseModel)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch seconds or ISO-8601 strings into an aware datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def hmac_sha256_matches(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature over raw bytes"""
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided.lower(), expected)


class BaseProviderClient(ABC):
    """
    Abstract base class for fulfillment providers.

    Subclasses supply authentication and request/response mapping; the base
    class owns the HTTP transport, failure classification, the single
    re-authentication attempt and retry/backoff.
    """

    kind: ProviderKind
    # Whether inbound webhooks carry a verifiable signature
    SIGNED_WEBHOOKS = True
    # "major" when the provider reports amounts in whole currency units
    AMOUNT_UNIT = "minor"
    # Webhook event type -> internal status (None = informational event)
    EVENT_STATUS_MAP: Dict[str, Optional[OrderStatus]] = {}
    # Provider order status -> internal status
    RAW_STATUS_MAP: Dict[str, OrderStatus] = {}

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        executor: Optional[RetryExecutor] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.executor = executor or RetryExecutor()
        self.timeout = timeout or settings.provider_timeout_seconds

    @property
    def name(self) -> str:
        return self.kind.value

    # ------------------------------------------------------------------
    # Provider contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def quote(self, request: FulfillmentRequest) -> Estimate:
        """Price a fulfillment without placing it"""
        pass

    @abstractmethod
    async def place(self, request: FulfillmentRequest) -> ProviderReference:
        """Place the fulfillment and return the provider reference"""
        pass

    @abstractmethod
    async def get_status(self, reference: str, user_id: Optional[str] = None) -> ProviderStatus:
        """Fetch the provider-side status of a placed fulfillment"""
        pass

    @abstractmethod
    async def cancel(self, reference: str, user_id: Optional[str] = None) -> None:
        """Cancel a placed fulfillment"""
        pass

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Verify an inbound webhook payload"""
        pass

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        """Turn a raw webhook body into a normalised event"""
        pass

    # ------------------------------------------------------------------
    # Status mapping
    # ------------------------------------------------------------------

    def map_raw_status(self, raw_status: Optional[str]) -> Optional[OrderStatus]:
        if not raw_status:
            return None
        return self.RAW_STATUS_MAP.get(raw_status)

    def status_for_event(self, event: WebhookEvent) -> Optional[OrderStatus]:
        """Internal status an event moves its dispatch to, if any"""
        return self.EVENT_STATUS_MAP.get(event.event_type)

    def requires_status_lookup(self, event: WebhookEvent) -> bool:
        """True when the event must be resolved through get_status"""
        return False

    async def event_details(self, event: WebhookEvent, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Extra data an informational event carries or points at, kept on the dispatch"""
        return None

    def normalize_amount(self, amount: Any, currency: str = "USD") -> int:
        """Amount in minor units regardless of the provider's convention"""
        if amount is None:
            return 0
        if self.AMOUNT_UNIT == "major":
            return to_minor_units(amount, currency)
        return int(amount)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _auth_headers(self, auth: str, user_id: Optional[str]) -> Dict[str, str]:
        """Authentication headers for a request (override in subclass)"""
        return {}

    async def _reauthenticate(self, auth: str, user_id: Optional[str]) -> bool:
        """Refresh credentials after a 401; True if the call may be repeated"""
        return False

    def _parse_details(
        self,
        model: Type[DetailsT],
        request: FulfillmentRequest,
        operation: str,
    ) -> DetailsT:
        """Validate the provider-specific part of a line's metadata"""
        try:
            return model.model_validate(request.metadata)
        except SchemaError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ValidationError(
                f"Missing or invalid {self.name} metadata: {fields}",
                provider=self.name,
                operation=operation,
                response_data=e.errors(include_url=False),
            ) from e

    def _required(self, data: Any, field: str, operation: str) -> Any:
        """Field a successful response must carry"""
        value = data.get(field) if isinstance(data, dict) else None
        if value is None or value == "":
            raise ProviderError(
                f"{self.name} API response missing {field}",
                provider=self.name,
                operation=operation,
                response_data=data,
            )
        return value

    def _reclassify(self, error: ProviderError, error_class: Type[ProviderError]) -> ProviderError:
        return error_class(
            error.message,
            provider=error.provider,
            operation=error.operation,
            status_code=error.status_code,
            response_data=error.response_data,
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        auth: str = "default",
        user_id: Optional[str] = None,
        safe: bool = False,
        idempotency_key: Optional[str] = None,
        **kwargs,
    ) -> Any:
        """Provider call with re-authentication and retry/backoff"""

        async def attempt():
            try:
                return await self._send(method, path, operation, auth, user_id, **kwargs)
            except AuthExpired:
                if not await self._reauthenticate(auth, user_id):
                    raise
                logger.info(
                    "Re-authenticated with provider, repeating call",
                    provider=self.name,
                    operation=operation,
                )
                return await self._send(method, path, operation, auth, user_id, **kwargs)

        return await self.executor.run(
            attempt,
            name=operation,
            provider=self.name,
            safe=safe,
            idempotency_key=idempotency_key,
        )

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        auth: str,
        user_id: Optional[str],
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Single HTTP exchange; raises a classified ProviderError on failure"""
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        request_headers = {"Accept": "application/json"}
        request_headers.update(await self._auth_headers(auth, user_id))
        if headers:
            request_headers.update(headers)

        logger.debug(
            "Provider request",
            provider=self.name,
            operation=operation,
            method=method,
            url=url,
        )

        request_kwargs = {
            "json": json,
            "data": data,
            "params": params,
            "headers": request_headers,
        }

        try:
            if self.http_client is not None:
                response = await self.http_client.request(method, url, timeout=self.timeout, **request_kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, **request_kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise ProviderUnreachable(
                f"Could not connect to {self.name} API: {e}",
                request_sent=False,
                provider=self.name,
                operation=operation,
                suggestion="Check network connectivity and try again.",
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderUnreachable(
                f"{self.name} API timed out after {self.timeout}s",
                provider=self.name,
                operation=operation,
            ) from e
        except httpx.TransportError as e:
            raise ProviderUnreachable(
                f"Network error talking to {self.name} API: {e}",
                provider=self.name,
                operation=operation,
                suggestion="Check network connectivity and try again.",
            ) from e

        if response.is_error:
            raise self._classify(response, operation)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name} API returned a non-JSON response",
                provider=self.name,
                operation=operation,
                status_code=response.status_code,
                response_data=response.text[:500],
            ) from e

    def _classify(self, response: httpx.Response, operation: str) -> ProviderError:
        """Map an error response onto the shared taxonomy"""
        try:
            body = response.json()
        except ValueError:
            body = response.text

        message = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or body.get("code")
        if not message:
            message = f"{self.name} API returned HTTP {response.status_code}"

        error = error_for_status(
            response.status_code,
            str(message),
            provider=self.name,
            operation=operation,
            response_data=body,
        )

        logger.warning(
            "Provider API error",
            provider=self.name,
            operation=operation,
            status_code=response.status_code,
            error_code=error.code,
            error=error.message,
        )

        return error

    # ------------------------------------------------------------------
    # Webhook helpers
    # ------------------------------------------------------------------

    def _load_webhook_json(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError(
                f"Malformed {self.name} webhook payload",
                provider=self.name,
                operation="parse_webhook",
            ) from e
        if not isinstance(payload, dict):
            raise ValidationError(
                f"Unexpected {self.name} webhook payload",
                provider=self.name,
                operation="parse_webhook",
            )
        return payload
