"""Background job tasks"""

import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog

from fulfillment.cache import CacheStore
from fulfillment.config import settings
from fulfillment.jobs.celery_app import celery_app
from fulfillment.providers.registry import ProviderRegistry
from fulfillment.services.catalog import CatalogService
from fulfillment.services.orders import OrderService

logger = structlog.get_logger()


def run_async(coro):
    """Helper to run async functions in sync context"""
    return asyncio.run(coro)


@asynccontextmanager
async def order_service():
    """Order service with its own connections for one task run"""
    cache = CacheStore.from_url(settings.redis_url)
    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as http_client:
        registry = ProviderRegistry.from_settings(cache, http_client=http_client)
        try:
            yield OrderService(cache, CatalogService(cache), registry)
        finally:
            await cache.close()


async def reconcile(service: OrderService) -> int:
    return await service.reconcile_open_orders()


async def flag_overdue(service: OrderService) -> list:
    overdue = await service.find_overdue_orders()
    for order in overdue:
        # Picked up by the staff notification pipeline
        logger.warning(
            "Order overdue",
            order_id=order.id,
            reservation_id=order.reservation_id,
            property_id=order.property_id,
            status=order.status.value,
            priority=order.priority.value,
            sla_deadline=order.sla_deadline.isoformat(),
        )
    return [order.id for order in overdue]


@celery_app.task(name="reconcile_dispatches")
def reconcile_dispatches():
    """Poll providers for dispatches whose webhooks may have been missed"""
    logger.info("Reconciling provider dispatches")

    async def _reconcile():
        async with order_service() as service:
            return await reconcile(service)

    return run_async(_reconcile())


@celery_app.task(name="flag_overdue_orders")
def flag_overdue_orders():
    """Log open orders that are past their SLA deadline"""
    logger.info("Checking for overdue orders")

    async def _flag():
        async with order_service() as service:
            return await flag_overdue(service)

    overdue = run_async(_flag())
    logger.info("Overdue check complete", overdue_count=len(overdue))
    return overdue
