"""Error taxonomy for provider calls, webhooks and orders"""

from typing import Any, Optional


class FulfillmentError(Exception):
    """Base class for every error raised by the fulfillment layer"""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderError(FulfillmentError):
    """
    Failure returned by (or while talking to) an external provider.
    Carries enough context to log the failure and decide on retries.
    """

    code = "PROVIDER_ERROR"
    transient = False
    suggestion = "Please try again later or contact support."

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        response_data: Any = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.response_data = response_data
        if suggestion:
            self.suggestion = suggestion

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "provider": self.provider,
            "operation": self.operation,
            "status_code": self.status_code,
            "suggestion": self.suggestion,
        }


class ValidationError(ProviderError):
    code = "VALIDATION_ERROR"
    suggestion = "Check request parameters and ensure all required fields are provided."


class AuthExpired(ProviderError):
    code = "AUTH_EXPIRED"
    suggestion = "Credentials are invalid or expired. Re-authenticate and try again."


class Forbidden(ProviderError):
    code = "FORBIDDEN"
    suggestion = "Access forbidden. Check API credentials and account permissions."


class NotFound(ProviderError):
    code = "NOT_FOUND"
    suggestion = "Resource not found. Verify the provider reference is correct."


class Conflict(ProviderError):
    code = "CONFLICT"
    suggestion = "Conflict detected. The external id may already be in use."


class AlreadyTerminal(ProviderError):
    code = "ALREADY_TERMINAL"
    suggestion = "The provider order already reached a final state."


class RateUnavailable(ProviderError):
    code = "RATE_UNAVAILABLE"
    suggestion = "No price is available for this request right now."


class InvalidAddress(ProviderError):
    code = "INVALID_ADDRESS"
    suggestion = "Address is invalid or outside the provider's service area."


class RateLimited(ProviderError):
    code = "RATE_LIMITED"
    transient = True
    suggestion = "Rate limit exceeded. Retry with exponential backoff."


class ProviderUnreachable(ProviderError):
    code = "PROVIDER_UNREACHABLE"
    transient = True
    suggestion = "Provider temporarily unavailable. Retry with exponential backoff."

    def __init__(self, message: str, request_sent: bool = True, **kwargs):
        super().__init__(message, **kwargs)
        # False when the failure happened before the request left the process
        self.request_sent = request_sent


class InvalidSignature(FulfillmentError):
    """Webhook payload failed authenticity verification"""

    def __init__(self, provider: str, reason: str = "Invalid webhook signature"):
        super().__init__(reason)
        self.provider = provider
        self.reason = reason


def error_for_status(
    status_code: int,
    message: str,
    provider: Optional[str] = None,
    operation: Optional[str] = None,
    response_data: Any = None,
) -> ProviderError:
    """Map an HTTP status code from a provider onto the shared taxonomy"""
    kwargs = {
        "provider": provider,
        "operation": operation,
        "status_code": status_code,
        "response_data": response_data,
    }

    if status_code in (400, 422):
        error = ValidationError(message, **kwargs)
        if status_code == 422:
            error.suggestion = (
                "Provider rejected the request content. Common issues: address out of "
                "service area, invalid time window, unconfirmed surge pricing."
            )
        return error
    if status_code == 401:
        return AuthExpired(message, **kwargs)
    if status_code == 403:
        return Forbidden(message, **kwargs)
    if status_code == 404:
        return NotFound(message, **kwargs)
    if status_code == 409:
        return Conflict(message, **kwargs)
    if status_code == 429:
        return RateLimited(message, **kwargs)
    if status_code >= 500:
        return ProviderUnreachable(message, **kwargs)

    return ProviderError(message, **kwargs)


# ---------------------------------------------------------------------------
# Order errors
# ---------------------------------------------------------------------------

class OrderError(FulfillmentError):
    """Order orchestration failure surfaced to the caller"""


class ItemNotFound(OrderError):
    def __init__(self, item_id: str):
        super().__init__(f"Upsell item not found: {item_id}")
        self.item_id = item_id


class ItemUnavailable(OrderError):
    def __init__(self, item_id: str, name: str):
        super().__init__(f"Upsell item not available: {name}")
        self.item_id = item_id
        self.name = name


class OrderNotFound(OrderError):
    def __init__(self, order_id: str):
        super().__init__("Order not found")
        self.order_id = order_id


class DispatchNotFound(OrderError):
    def __init__(self, provider: str, reference: str):
        super().__init__(f"No dispatch found for {provider} reference {reference}")
        self.provider = provider
        self.reference = reference


class InvalidStatusTransition(OrderError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move order from {current} to {requested}")
        self.current = current
        self.requested = requested


class RatingNotAllowed(OrderError):
    """Rating rejected: order not completed or value out of range"""


class CurrencyMismatch(OrderError):
    def __init__(self, currencies):
        super().__init__(f"Order lines must share one currency, got {', '.join(sorted(currencies))}")
        self.currencies = sorted(currencies)


class ReplacementNotAllowed(OrderError):
    """Line is not a live grocery dispatch"""
