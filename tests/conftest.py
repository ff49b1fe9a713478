"""Test configuration and fixtures"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from fulfillment.cache import CacheStore
from fulfillment.dependencies import get_cache, get_provider_registry
from fulfillment.main import app
from fulfillment.providers.base import BaseProviderClient
from fulfillment.providers.registry import ProviderRegistry
from fulfillment.retry import RetryExecutor, RetryPolicy
from fulfillment.schemas.catalog import ProviderKind
from fulfillment.schemas.order import OrderStatus
from fulfillment.schemas.provider import (
    Estimate,
    OAuthToken,
    ProviderReference,
    ProviderStatus,
)
from fulfillment.services.catalog import CatalogService
from fulfillment.services.orders import OrderService


class FakeRedis:
    """In-memory stand-in for the async Redis commands the cache uses"""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}
        self.locks = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
            removed += int(self.sets.pop(key, None) is not None)
        return removed

    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key, *members):
        bucket = self.sets.get(key, set())
        before = len(bucket)
        bucket.difference_update(members)
        return before - len(bucket)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def lock(self, name, timeout=None, blocking_timeout=None):
        return self.locks.setdefault(name, asyncio.Lock())

    async def ping(self):
        return True

    async def aclose(self):
        pass


class SleepRecorder:
    """Records backoff delays instead of sleeping"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class FakeProvider(BaseProviderClient):
    """Scriptable provider client for orchestration tests"""

    def __init__(self, kind: ProviderKind, fail_with: Optional[Exception] = None):
        super().__init__("https://provider.test", executor=RetryExecutor(sleep=SleepRecorder()))
        self.kind = kind
        self.fail_with = fail_with
        self.cancel_error = None
        self.placed = []
        self.cancelled = []
        self.statuses = {}
        self.replacement_reviews = []

    async def quote(self, request):
        return Estimate(provider=self.kind, low_amount=1000, high_amount=1000)

    async def place(self, request):
        if self.fail_with:
            raise self.fail_with
        self.placed.append(request)
        return ProviderReference(
            provider=self.kind,
            reference=request.idempotency_key,
            raw_status="created",
            status=OrderStatus.CONFIRMED,
        )

    async def get_status(self, reference, user_id=None):
        return self.statuses[reference]

    async def cancel(self, reference, user_id=None):
        self.cancelled.append((reference, user_id))
        if self.cancel_error:
            raise self.cancel_error

    async def approve_replacement(self, reference, original_product_id, replacement_product_id):
        self.replacement_reviews.append(("approve", reference, original_product_id, replacement_product_id))

    async def reject_replacement(self, reference, original_product_id):
        self.replacement_reviews.append(("reject", reference, original_product_id, None))

    def verify_signature(self, payload, signature):
        return True

    def parse_webhook(self, raw_body):
        raise NotImplementedError

    def set_status(self, reference: str, raw_status: str, status: Optional[OrderStatus]):
        self.statuses[reference] = ProviderStatus(
            provider=self.kind,
            reference=reference,
            raw_status=raw_status,
            status=status,
        )


def mock_http(handler) -> httpx.AsyncClient:
    """HTTP client whose requests are answered by ``handler``"""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def valid_token(**overrides) -> OAuthToken:
    data = {
        "access_token": "user-access-token",
        "refresh_token": "user-refresh-token",
        "expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    data.update(overrides)
    return OAuthToken(**data)


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def cache(redis_client):
    return CacheStore(redis_client)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def executor(sleeper):
    return RetryExecutor(RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=10000), sleep=sleeper)


@pytest.fixture
def fake_providers():
    return {kind: FakeProvider(kind) for kind in ProviderKind}


@pytest.fixture
def registry(fake_providers):
    return ProviderRegistry(fake_providers)


@pytest.fixture
def catalog(cache):
    return CatalogService(cache)


@pytest.fixture
def order_service(cache, catalog, registry):
    return OrderService(cache, catalog, registry)


@pytest.fixture
async def client(cache, registry):
    """Create test client with overridden cache and providers"""
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_provider_registry] = lambda: registry
    app.state.cache = cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
