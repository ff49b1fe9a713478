"""FastAPI dependencies for shared services"""

from fastapi import Depends, Request

from fulfillment.cache import CacheStore
from fulfillment.providers.registry import ProviderRegistry
from fulfillment.services.catalog import CatalogService
from fulfillment.services.orders import OrderService
from fulfillment.services.webhooks import WebhookIngestor


def get_cache(request: Request) -> CacheStore:
    """Cache store created at application startup"""
    return request.app.state.cache


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.providers


def get_catalog_service(cache: CacheStore = Depends(get_cache)) -> CatalogService:
    return CatalogService(cache)


def get_order_service(
    cache: CacheStore = Depends(get_cache),
    catalog: CatalogService = Depends(get_catalog_service),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> OrderService:
    return OrderService(cache, catalog, providers)


def get_webhook_ingestor(
    cache: CacheStore = Depends(get_cache),
    providers: ProviderRegistry = Depends(get_provider_registry),
    orders: OrderService = Depends(get_order_service),
) -> WebhookIngestor:
    return WebhookIngestor(providers, orders, cache)
