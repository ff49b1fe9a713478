"""Tests for provider clients"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from jose import jwt

from fulfillment.errors import (
    AlreadyTerminal,
    AuthExpired,
    Conflict,
    Forbidden,
    NotFound,
    ProviderError,
    ProviderUnreachable,
    RateLimited,
    ValidationError,
    error_for_status,
)
from fulfillment.money import to_minor_units
from fulfillment.providers.food import Address, FoodDeliveryProvider
from fulfillment.providers.grocery import GroceryDeliveryProvider
from fulfillment.providers.ride import RideProvider, TokenStore
from fulfillment.schemas.order import OrderStatus
from fulfillment.schemas.provider import FulfillmentRequest

from tests.conftest import mock_http, valid_token


RIDE_METADATA = {
    "product_id": "uberx",
    "start_lat": 37.7749,
    "start_lng": -122.4194,
    "end_lat": 37.6213,
    "end_lng": -122.3790,
}

FOOD_METADATA = {
    "pickup_address": {"street": "1 Market St", "city": "San Francisco", "state": "CA", "zip_code": "94105"},
    "dropoff_address": {"street": "500 Beach St", "city": "San Francisco", "state": "CA", "zip_code": "94133", "subpremise": "Unit 4"},
    "pickup_contact": {"first_name": "Front", "last_name": "Desk", "phone_number": "+14155550100"},
    "dropoff_contact": {"first_name": "Ada", "last_name": "Guest", "phone_number": "+14155550199"},
    "items": [{"name": "Margherita Pizza", "quantity": 2, "price": 1500}],
}

GROCERY_METADATA = {
    "store_id": "store-9",
    "items": [{"product_id": "milk-1l", "quantity": 2}],
    "delivery_address": {"street_address": "500 Beach St", "city": "San Francisco", "state": "CA", "zipcode": "94133"},
    "contact_phone": "+14155550199",
}


def fulfillment_request(metadata, user_id="guest-1"):
    return FulfillmentRequest(order_id="order-1", line_id="1", user_id=user_id, metadata=metadata)


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class Recorder:
    """MockTransport handler answering from a route table and recording requests"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        responses = self.routes[key]
        if isinstance(responses, list):
            return responses.pop(0)
        return responses


# ---------------------------------------------------------------------------
# Error taxonomy and amounts
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "status_code,error_class",
    [
        (400, ValidationError),
        (422, ValidationError),
        (401, AuthExpired),
        (403, Forbidden),
        (404, NotFound),
        (409, Conflict),
        (429, RateLimited),
        (500, ProviderUnreachable),
        (503, ProviderUnreachable),
    ],
)
def test_error_for_status(status_code, error_class):
    error = error_for_status(status_code, "failed", provider="food", operation="create_delivery")

    assert type(error) is error_class
    assert error.status_code == status_code
    assert error.to_dict()["provider"] == "food"


def test_unmapped_status_is_generic_provider_error():
    error = error_for_status(418, "teapot")

    assert type(error) is ProviderError
    assert not error.transient


def test_amounts_normalised_to_minor_units():
    assert to_minor_units(12.5, "USD") == 1250
    assert to_minor_units("19.99", "USD") == 1999
    assert to_minor_units(1500, "JPY") == 1500


# ---------------------------------------------------------------------------
# Ride
# ---------------------------------------------------------------------------

def ride_provider(cache, executor, handler):
    return RideProvider(
        TokenStore(cache),
        api_key="server-key",
        client_id="client-1",
        client_secret="client-secret",
        base_url="https://ride.test/v1.2",
        token_url="https://login.ride.test/oauth/v2/token",
        authorize_url="https://login.ride.test/oauth/v2/authorize",
        http_client=mock_http(handler),
        executor=executor,
    )


@pytest.mark.asyncio
async def test_ride_estimates_use_server_token_and_minor_units(cache, executor):
    handler = Recorder({
        ("GET", "/v1.2/estimates/price"): httpx.Response(200, json={
            "prices": [
                {
                    "product_id": "uberx",
                    "display_name": "UberX",
                    "currency_code": "USD",
                    "low_estimate": 12,
                    "high_estimate": 15.5,
                    "duration": 900,
                },
            ],
        }),
    })
    ride = ride_provider(cache, executor, handler)

    estimates = await ride.get_price_estimates(37.77, -122.41, 37.62, -122.37)

    assert len(estimates) == 1
    assert estimates[0].low_amount == 1200
    assert estimates[0].high_amount == 1550
    assert estimates[0].eta_seconds == 900
    assert handler.requests[0].headers["Authorization"] == "Token server-key"


@pytest.mark.asyncio
async def test_ride_place_without_authorization_fails_without_calling_provider(cache, executor, sleeper):
    handler = Recorder({})
    ride = ride_provider(cache, executor, handler)

    with pytest.raises(AuthExpired):
        await ride.place(fulfillment_request(RIDE_METADATA))

    assert handler.requests == []
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_ride_refreshes_token_before_expiry(cache, executor):
    store = TokenStore(cache)
    await store.save("guest-1", valid_token(expires_at=datetime.now(timezone.utc) + timedelta(seconds=30)))

    handler = Recorder({
        ("POST", "/oauth/v2/token"): httpx.Response(200, json={
            "access_token": "fresh-token",
            "expires_in": 2592000,
        }),
        ("POST", "/v1.2/requests"): httpx.Response(202, json={
            "request_id": "ride-123",
            "status": "processing",
        }),
    })
    ride = ride_provider(cache, executor, handler)

    reference = await ride.place(fulfillment_request(RIDE_METADATA))

    assert reference.reference == "ride-123"
    assert reference.status == OrderStatus.CONFIRMED
    assert b"grant_type=refresh_token" in handler.requests[0].content
    assert handler.requests[1].headers["Authorization"] == "Bearer fresh-token"

    stored = await store.get("guest-1")
    assert stored.access_token == "fresh-token"
    assert stored.refresh_token == "user-refresh-token"


@pytest.mark.asyncio
async def test_ride_reauthenticates_once_after_401(cache, executor):
    await TokenStore(cache).save("guest-1", valid_token())

    handler = Recorder({
        ("POST", "/v1.2/requests"): [
            httpx.Response(401, json={"message": "Invalid OAuth 2.0 credentials provided."}),
            httpx.Response(202, json={"request_id": "ride-456", "status": "accepted"}),
        ],
        ("POST", "/oauth/v2/token"): httpx.Response(200, json={
            "access_token": "fresh-token",
            "refresh_token": "new-refresh",
            "expires_in": 3600,
        }),
    })
    ride = ride_provider(cache, executor, handler)

    reference = await ride.place(fulfillment_request(RIDE_METADATA))

    assert reference.reference == "ride-456"
    assert [r.url.path for r in handler.requests] == ["/v1.2/requests", "/oauth/v2/token", "/v1.2/requests"]
    assert handler.requests[0].headers["Authorization"] == "Bearer user-access-token"
    assert handler.requests[2].headers["Authorization"] == "Bearer fresh-token"


@pytest.mark.asyncio
async def test_ride_cancel_conflict_is_already_terminal(cache, executor):
    await TokenStore(cache).save("guest-1", valid_token())
    handler = Recorder({
        ("DELETE", "/v1.2/requests/ride-1"): httpx.Response(409, json={"message": "Ride already completed"}),
    })
    ride = ride_provider(cache, executor, handler)

    with pytest.raises(AlreadyTerminal):
        await ride.cancel("ride-1", user_id="guest-1")


@pytest.mark.asyncio
async def test_ride_exchange_code_stores_token(cache, executor):
    handler = Recorder({
        ("POST", "/oauth/v2/token"): httpx.Response(200, json={
            "access_token": "granted",
            "refresh_token": "refresh",
            "expires_in": 2592000,
            "scope": "request profile",
        }),
    })
    ride = ride_provider(cache, executor, handler)

    token = await ride.exchange_code("guest-1", "auth-code", "https://app.test/callback")

    assert token.access_token == "granted"
    assert (await TokenStore(cache).get("guest-1")).refresh_token == "refresh"
    assert b"grant_type=authorization_code" in handler.requests[0].content
    assert "Authorization" not in handler.requests[0].headers


@pytest.mark.asyncio
async def test_ride_refresh_failure_during_reauth_is_not_retried(cache, executor, sleeper):
    await TokenStore(cache).save("guest-1", valid_token())
    handler = Recorder({
        ("POST", "/v1.2/requests"): httpx.Response(401, json={"message": "Invalid OAuth 2.0 credentials provided."}),
        ("POST", "/oauth/v2/token"): httpx.Response(503, json={"error": "Service unavailable"}),
    })
    ride = ride_provider(cache, executor, handler)

    with pytest.raises(AuthExpired):
        await ride.place(fulfillment_request(RIDE_METADATA))

    assert [r.url.path for r in handler.requests] == ["/v1.2/requests", "/oauth/v2/token"]
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_ride_token_response_without_access_token(cache, executor):
    handler = Recorder({
        ("POST", "/oauth/v2/token"): httpx.Response(200, json={"expires_in": 3600}),
    })
    ride = ride_provider(cache, executor, handler)

    with pytest.raises(ProviderError) as exc_info:
        await ride.exchange_code("guest-1", "auth-code", "https://app.test/callback")

    assert exc_info.value.operation == "exchange_code"
    assert await TokenStore(cache).get("guest-1") is None


@pytest.mark.asyncio
async def test_ride_create_response_without_request_id(cache, executor):
    await TokenStore(cache).save("guest-1", valid_token())
    handler = Recorder({
        ("POST", "/v1.2/requests"): httpx.Response(202, json={"status": "processing"}),
    })
    ride = ride_provider(cache, executor, handler)

    with pytest.raises(ProviderError) as exc_info:
        await ride.place(fulfillment_request(RIDE_METADATA))

    assert "request_id" in exc_info.value.message


@pytest.mark.asyncio
async def test_ride_read_timeout_on_create_is_not_repeated(cache, executor, sleeper):
    await TokenStore(cache).save("guest-1", valid_token())
    requests = []

    def handler(request):
        requests.append(request)
        raise httpx.ReadTimeout("timed out waiting for response", request=request)

    ride = ride_provider(cache, executor, handler)

    with pytest.raises(ProviderUnreachable) as exc_info:
        await ride.place(fulfillment_request(RIDE_METADATA))

    assert exc_info.value.request_sent
    assert len(requests) == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_ride_connect_timeout_on_create_is_repeated(cache, executor, sleeper):
    await TokenStore(cache).save("guest-1", valid_token())
    requests = []

    def handler(request):
        requests.append(request)
        if len(requests) == 1:
            raise httpx.ConnectTimeout("connect timed out", request=request)
        return httpx.Response(202, json={"request_id": "ride-789", "status": "processing"})

    ride = ride_provider(cache, executor, handler)

    reference = await ride.place(fulfillment_request(RIDE_METADATA))

    assert reference.reference == "ride-789"
    assert len(requests) == 2
    assert sleeper.delays == [1.0]


@pytest.mark.asyncio
async def test_ride_connect_timeout_marks_request_unsent(cache, executor):
    def handler(request):
        raise httpx.ConnectTimeout("connect timed out", request=request)

    ride = ride_provider(cache, executor, handler)

    with pytest.raises(ProviderUnreachable) as exc_info:
        await ride._send("GET", "/products", "get_products", "server", None)

    assert exc_info.value.request_sent is False


@pytest.mark.asyncio
async def test_ride_time_estimates(cache, executor):
    handler = Recorder({
        ("GET", "/v1.2/estimates/time"): httpx.Response(200, json={
            "times": [{"product_id": "uberx", "display_name": "UberX", "estimate": 240}],
        }),
    })
    ride = ride_provider(cache, executor, handler)

    times = await ride.get_time_estimates(37.77, -122.41, product_id="uberx")

    assert times[0]["estimate"] == 240
    assert handler.requests[0].url.params["product_id"] == "uberx"
    assert handler.requests[0].headers["Authorization"] == "Token server-key"


@pytest.mark.asyncio
async def test_ride_current_ride(cache, executor):
    await TokenStore(cache).save("guest-1", valid_token())
    handler = Recorder({
        ("GET", "/v1.2/requests/current"): [
            httpx.Response(200, json={"request_id": "ride-1", "status": "arriving", "eta": 3}),
            httpx.Response(404, json={"message": "No current ride"}),
        ],
    })
    ride = ride_provider(cache, executor, handler)

    current = await ride.get_current_ride("guest-1")
    assert current.reference == "ride-1"
    assert current.status == OrderStatus.CONFIRMED
    assert current.details["eta"] == 3

    assert await ride.get_current_ride("guest-1") is None


@pytest.mark.asyncio
async def test_ride_update_destination(cache, executor):
    await TokenStore(cache).save("guest-1", valid_token())
    handler = Recorder({
        ("PATCH", "/v1.2/requests/ride-1"): httpx.Response(204),
    })
    ride = ride_provider(cache, executor, handler)

    await ride.update_destination("ride-1", 37.80, -122.42, user_id="guest-1")

    assert json.loads(handler.requests[0].content) == {"end_latitude": 37.80, "end_longitude": -122.42}
    assert handler.requests[0].headers["Authorization"] == "Bearer user-access-token"


@pytest.mark.asyncio
async def test_ride_receipt_fetched_for_receipt_event(cache, executor):
    await TokenStore(cache).save("guest-1", valid_token())
    handler = Recorder({
        ("GET", "/v1.2/requests/ride-1/receipt"): httpx.Response(200, json={
            "request_id": "ride-1",
            "total_charged": "$23.50",
            "currency_code": "USD",
        }),
    })
    ride = ride_provider(cache, executor, handler)
    event = ride.parse_webhook(json.dumps({
        "event_id": "evt-9",
        "event_type": "requests.receipt_ready",
        "meta": {"resource_id": "ride-1"},
    }).encode())

    details = await ride.event_details(event, user_id="guest-1")

    assert details["receipt"]["total_charged"] == "$23.50"
    assert ride.status_for_event(event) is None


def test_ride_authorization_url(cache, executor):
    ride = ride_provider(cache, executor, Recorder({}))

    url = ride.authorization_url("https://app.test/callback", state="guest-1")

    assert url.startswith("https://login.ride.test/oauth/v2/authorize?")
    assert "client_id=client-1" in url
    assert "state=guest-1" in url


def test_ride_webhook_parsing(cache, executor):
    ride = ride_provider(cache, executor, Recorder({}))
    body = json.dumps({
        "event_id": "evt-1",
        "event_time": 1700000000,
        "event_type": "requests.status_changed",
        "meta": {"user_id": "rider-1", "resource_id": "ride-1", "status": "in_progress"},
    }).encode()

    event = ride.parse_webhook(body)

    assert event.provider_order_reference == "ride-1"
    assert event.occurred_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert ride.status_for_event(event) == OrderStatus.IN_PROGRESS
    assert not ride.requires_status_lookup(event)
    assert ride.verify_signature(body, None)


def test_ride_status_event_without_status_needs_lookup(cache, executor):
    ride = ride_provider(cache, executor, Recorder({}))
    event = ride.parse_webhook(json.dumps({
        "event_id": "evt-2",
        "event_type": "requests.status_changed",
        "meta": {"resource_id": "ride-1"},
    }).encode())

    assert ride.requires_status_lookup(event)
    assert ride.status_for_event(event) is None


# ---------------------------------------------------------------------------
# Food
# ---------------------------------------------------------------------------

def food_provider(executor, handler=None):
    return FoodDeliveryProvider(
        developer_id="dev-1",
        key_id="key-1",
        signing_secret="signing-secret",
        base_url="https://food.test/drive/v2",
        http_client=mock_http(handler or Recorder({})),
        executor=executor,
    )


def test_food_jwt_claims_and_header(executor):
    food = food_provider(executor)

    token = food.generate_jwt()

    header = jwt.get_unverified_header(token)
    claims = jwt.decode(token, "signing-secret", algorithms=["HS256"], audience="doordash")
    assert header["dd-ver"] == "DD-JWT-V1"
    assert header["alg"] == "HS256"
    assert claims["iss"] == "dev-1"
    assert claims["kid"] == "key-1"
    assert claims["exp"] - claims["iat"] == 300


@pytest.mark.asyncio
async def test_food_place_quotes_then_creates_delivery(executor):
    handler = Recorder({
        ("POST", "/drive/v2/quotes"): httpx.Response(200, json={
            "external_delivery_id": "order-1-1",
            "fee": 975,
            "currency": "USD",
        }),
        ("POST", "/drive/v2/deliveries"): httpx.Response(200, json={
            "external_delivery_id": "order-1-1",
            "delivery_status": "created",
            "tracking_url": "https://track.test/order-1-1",
            "fee": 975,
        }),
    })
    food = food_provider(executor, handler)

    reference = await food.place(fulfillment_request(FOOD_METADATA))

    assert reference.reference == "order-1-1"
    assert reference.status == OrderStatus.CONFIRMED
    assert reference.tracking_url == "https://track.test/order-1-1"

    body = json.loads(handler.requests[1].content)
    assert body["external_delivery_id"] == "order-1-1"
    assert body["tip"] == 146
    assert body["order_value"] == 3000
    assert body["dropoff_address"] == "500 Beach St Unit 4, San Francisco, CA 94133"
    assert handler.requests[1].headers["Authorization"].startswith("Bearer ")


@pytest.mark.asyncio
async def test_food_place_rejects_missing_metadata_before_calling_provider(executor):
    handler = Recorder({})
    food = food_provider(executor, handler)

    with pytest.raises(ValidationError):
        await food.place(fulfillment_request({"items": []}))

    assert handler.requests == []


@pytest.mark.asyncio
async def test_food_status_not_found(executor):
    handler = Recorder({
        ("GET", "/drive/v2/deliveries/missing"): httpx.Response(404, json={"message": "Delivery not found"}),
    })
    food = food_provider(executor, handler)

    with pytest.raises(NotFound) as exc_info:
        await food.get_status("missing")

    assert exc_info.value.message == "Delivery not found"
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_food_status_read_timeout_is_retried(executor, sleeper):
    requests = []

    def handler(request):
        requests.append(request)
        if len(requests) == 1:
            raise httpx.ReadTimeout("timed out waiting for response", request=request)
        return httpx.Response(200, json={"external_delivery_id": "order-1-1", "delivery_status": "picked_up"})

    food = food_provider(executor, handler)

    status = await food.get_status("order-1-1")

    assert status.status == OrderStatus.IN_PROGRESS
    assert len(requests) == 2
    assert sleeper.delays == [1.0]


@pytest.mark.asyncio
async def test_food_update_delivery(executor):
    handler = Recorder({
        ("PATCH", "/drive/v2/deliveries/order-1-1"): httpx.Response(200, json={
            "external_delivery_id": "order-1-1",
            "delivery_status": "confirmed",
            "tracking_url": "https://track.test/order-1-1",
        }),
    })
    food = food_provider(executor, handler)

    status = await food.update_delivery(
        "order-1-1",
        dropoff_address=Address(street="600 Beach St", city="San Francisco", state="CA", zip_code="94133"),
        dropoff_instructions="Ring twice",
        tip=300,
    )

    assert status.status == OrderStatus.CONFIRMED
    assert json.loads(handler.requests[0].content) == {
        "dropoff_address": "600 Beach St, San Francisco, CA 94133",
        "dropoff_instructions": "Ring twice",
        "tip": 300,
    }


@pytest.mark.asyncio
async def test_food_update_delivery_needs_a_change(executor):
    handler = Recorder({})
    food = food_provider(executor, handler)

    with pytest.raises(ValidationError):
        await food.update_delivery("order-1-1")

    assert handler.requests == []


def test_food_signature_verification(executor):
    food = food_provider(executor)
    body = b'{"event_id":"evt-1"}'

    assert food.verify_signature(body, sign("signing-secret", body))
    assert not food.verify_signature(body, sign("other-secret", body))
    assert not food.verify_signature(body, None)


def test_food_webhook_parsing(executor):
    food = food_provider(executor)
    event = food.parse_webhook(json.dumps({
        "event_id": "evt-1",
        "event_name": "delivery.picked_up",
        "event_time": "2024-05-01T12:00:00Z",
        "external_delivery_id": "order-1-1",
        "delivery_status": "picked_up",
    }).encode())

    assert event.provider_order_reference == "order-1-1"
    assert event.occurred_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert food.status_for_event(event) == OrderStatus.IN_PROGRESS


def test_food_malformed_webhook(executor):
    with pytest.raises(ValidationError):
        food_provider(executor).parse_webhook(b"not json")


# ---------------------------------------------------------------------------
# Grocery
# ---------------------------------------------------------------------------

def grocery_provider(executor, handler=None, webhook_secret="webhook-secret"):
    return GroceryDeliveryProvider(
        api_key="api-key",
        partner_id="partner-1",
        webhook_secret=webhook_secret,
        base_url="https://grocery.test/v2",
        http_client=mock_http(handler or Recorder({})),
        executor=executor,
    )


@pytest.mark.asyncio
async def test_grocery_create_retried_with_same_idempotency_key(executor, sleeper):
    handler = Recorder({
        ("POST", "/v2/orders/estimate"): httpx.Response(200, json={"total": 4599, "currency": "USD"}),
        ("POST", "/v2/orders"): [
            httpx.Response(503, json={"error": "Service unavailable"}),
            httpx.Response(201, json={"order_id": "ic-1", "status": "created", "total_amount": 4599}),
        ],
    })
    grocery = grocery_provider(executor, handler)

    reference = await grocery.place(fulfillment_request(GROCERY_METADATA))

    assert reference.reference == "ic-1"
    assert reference.fee_amount == 4599
    assert sleeper.delays == [1.0]

    creates = [r for r in handler.requests if r.url.path == "/v2/orders"]
    assert len(creates) == 2
    assert {r.headers["Idempotency-Key"] for r in creates} == {"order-1-1"}
    assert creates[0].headers["X-Partner-ID"] == "partner-1"
    assert creates[0].headers["Authorization"] == "Bearer api-key"


def test_grocery_webhook_secret_falls_back_to_api_key(executor):
    grocery = grocery_provider(executor, webhook_secret="")
    body = b'{"event_id":"evt-1"}'

    assert grocery.verify_signature(body, sign("api-key", body))


def test_grocery_informational_events(executor):
    grocery = grocery_provider(executor)

    delivered = grocery.parse_webhook(json.dumps({
        "event_id": "evt-1",
        "event_type": "order.delivered",
        "order_id": "ic-1",
        "status": "delivered",
    }).encode())
    replaced = grocery.parse_webhook(json.dumps({
        "event_id": "evt-2",
        "event_type": "item.replaced",
        "order_id": "ic-1",
    }).encode())

    assert grocery.status_for_event(delivered) == OrderStatus.COMPLETED
    assert grocery.status_for_event(replaced) is None


@pytest.mark.asyncio
async def test_grocery_create_response_without_order_id(executor):
    handler = Recorder({
        ("POST", "/v2/orders/estimate"): httpx.Response(200, json={"total": 4599}),
        ("POST", "/v2/orders"): httpx.Response(200, json={"status": "created"}),
    })
    grocery = grocery_provider(executor, handler)

    with pytest.raises(ProviderError) as exc_info:
        await grocery.place(fulfillment_request(GROCERY_METADATA))

    assert exc_info.value.operation == "create_order"
    assert exc_info.value.response_data == {"status": "created"}


@pytest.mark.asyncio
async def test_grocery_nearby_stores(executor):
    handler = Recorder({
        ("GET", "/v2/stores"): httpx.Response(200, json={
            "stores": [
                {"id": "store-9", "name": "Corner Market", "available": True, "delivery_time_minutes": 45},
            ],
        }),
    })
    grocery = grocery_provider(executor, handler)

    stores = await grocery.get_nearby_stores("94133", lat=37.80, lng=-122.41)

    assert stores[0].id == "store-9"
    assert stores[0].delivery_time_minutes == 45
    assert handler.requests[0].url.params["zipcode"] == "94133"
    assert handler.requests[0].url.params["lat"] == "37.8"


@pytest.mark.asyncio
async def test_grocery_product_search_and_detail(executor):
    handler = Recorder({
        ("GET", "/v2/products/search"): httpx.Response(200, json={
            "products": [{"id": "milk-1l", "name": "Whole Milk 1L", "price": 349, "unit": "each"}],
        }),
        ("GET", "/v2/products/milk-1l"): httpx.Response(200, json={
            "id": "milk-1l",
            "name": "Whole Milk 1L",
            "price": 349,
            "quantity_available": 12,
            "store_id": "store-9",
        }),
        ("GET", "/v2/products/gone"): httpx.Response(404, json={"error": "Product not found"}),
    })
    grocery = grocery_provider(executor, handler)

    results = await grocery.search_products("milk", "store-9")
    product = await grocery.get_product("milk-1l", "store-9")
    missing = await grocery.get_product("gone", "store-9")

    assert [p.id for p in results] == ["milk-1l"]
    assert handler.requests[0].url.params["q"] == "milk"
    assert handler.requests[0].url.params["limit"] == "20"
    assert product.quantity_available == 12
    assert missing is None


@pytest.mark.asyncio
async def test_grocery_update_tip(executor):
    handler = Recorder({
        ("PATCH", "/v2/orders/ic-1"): httpx.Response(200, json={"order_id": "ic-1", "status": "shopping"}),
    })
    grocery = grocery_provider(executor, handler)

    status = await grocery.update_tip("ic-1", 500)

    assert status.status == OrderStatus.IN_PROGRESS
    assert json.loads(handler.requests[0].content) == {"tip": 500}


@pytest.mark.asyncio
async def test_grocery_replacement_review(executor):
    handler = Recorder({
        ("POST", "/v2/orders/ic-1/replacements/approve"): httpx.Response(200, json={"success": True}),
        ("POST", "/v2/orders/ic-1/replacements/reject"): httpx.Response(200, json={"success": True}),
    })
    grocery = grocery_provider(executor, handler)

    await grocery.approve_replacement("ic-1", "milk-1l", "milk-2l")
    await grocery.reject_replacement("ic-1", "bread-1")

    assert json.loads(handler.requests[0].content) == {
        "original_product_id": "milk-1l",
        "replacement_product_id": "milk-2l",
    }
    assert json.loads(handler.requests[1].content) == {"original_product_id": "bread-1"}


@pytest.mark.asyncio
async def test_grocery_replacement_event_details(executor):
    grocery = grocery_provider(executor)
    event = grocery.parse_webhook(json.dumps({
        "event_id": "evt-2",
        "event_type": "item.replaced",
        "order_id": "ic-1",
        "replacement_items": [
            {"original_product_id": "milk-1l", "replacement_product_id": "milk-2l", "reason": "out of stock"},
        ],
    }).encode())

    details = await grocery.event_details(event)

    assert details == {"replacements": [
        {"original_product_id": "milk-1l", "replacement_product_id": "milk-2l", "reason": "out of stock"},
    ]}
