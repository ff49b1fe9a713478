"""Inbound provider webhook processing"""

from datetime import datetime, timezone
from typing import Optional

import structlog

from fulfillment.cache import CacheStore
from fulfillment.config import settings
from fulfillment.errors import InvalidSignature, ValidationError
from fulfillment.providers.base import BaseProviderClient
from fulfillment.providers.registry import ProviderRegistry
from fulfillment.schemas.catalog import ProviderKind
from fulfillment.schemas.webhook import WebhookAck, WebhookEvent
from fulfillment.services.orders import OrderService

logger = structlog.get_logger()


class WebhookIngestor:
    """
    Verifies, de-duplicates and applies provider callbacks.

    Delivery is at-least-once: each ``(provider, event_id)`` is claimed in
    the cache before processing, so a replay is acknowledged without
    touching the order. The claim is released when processing fails so the
    provider's retry gets a fresh attempt.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        orders: OrderService,
        cache: CacheStore,
        dedup_ttl_seconds: Optional[int] = None,
    ):
        self.registry = registry
        self.orders = orders
        self.cache = cache
        self.dedup_ttl_seconds = dedup_ttl_seconds or settings.webhook_dedup_ttl

    async def receive(
        self,
        provider: ProviderKind,
        raw_body: bytes,
        signature: Optional[str] = None,
    ) -> WebhookAck:
        client = self.registry.get(provider)

        if client.SIGNED_WEBHOOKS:
            if not signature:
                logger.warning("Webhook signature missing", provider=client.name)
                raise InvalidSignature(client.name, "Missing webhook signature")
            if not client.verify_signature(raw_body, signature):
                logger.warning("Webhook signature mismatch", provider=client.name)
                raise InvalidSignature(client.name)

        event = client.parse_webhook(raw_body)

        logger.info(
            "Webhook received",
            provider=client.name,
            event_id=event.event_id,
            event_type=event.event_type,
            reference=event.provider_order_reference,
        )

        dedup_key = f"webhook:{client.name}:{event.event_id}"
        if not await self.cache.claim(dedup_key, self.dedup_ttl_seconds):
            logger.info("Duplicate webhook ignored", provider=client.name, event_id=event.event_id)
            return WebhookAck(
                event_id=event.event_id,
                processed_at=datetime.now(timezone.utc),
                duplicate=True,
            )

        try:
            applied = await self._process(client, event)
        except Exception:
            await self.cache.delete(dedup_key)
            logger.exception(
                "Webhook processing failed",
                provider=client.name,
                event_id=event.event_id,
                event_type=event.event_type,
            )
            raise

        return WebhookAck(
            event_id=event.event_id,
            processed_at=datetime.now(timezone.utc),
            applied=applied,
        )

    async def _process(self, client: BaseProviderClient, event: WebhookEvent) -> bool:
        if event.event_type not in client.EVENT_STATUS_MAP:
            logger.warning("Unknown webhook event type", provider=client.name, event_type=event.event_type)
            return False

        reference = event.provider_order_reference
        raw_status = event.provider_status
        tracking_url = None

        if client.requires_status_lookup(event):
            if not reference:
                raise ValidationError(
                    "Webhook has no order reference",
                    provider=client.name,
                    operation="parse_webhook",
                )
            _, dispatch = await self.orders.get_dispatch(client.kind, reference)
            current = await client.get_status(reference, user_id=dispatch.auth_subject)
            status = current.status
            raw_status = current.raw_status
            tracking_url = current.tracking_url
        else:
            status = client.status_for_event(event)

        if status is None:
            logger.info(
                "Informational webhook event",
                provider=client.name,
                event_id=event.event_id,
                event_type=event.event_type,
            )
            if reference:
                await self._record_details(client, event, reference)
            return False

        if not reference:
            raise ValidationError(
                "Webhook has no order reference",
                provider=client.name,
                operation="parse_webhook",
            )

        return await self.orders.apply_provider_status(
            client.kind,
            reference,
            status,
            occurred_at=event.occurred_at,
            raw_status=raw_status,
            tracking_url=tracking_url,
        )

    async def _record_details(self, client: BaseProviderClient, event: WebhookEvent, reference: str) -> None:
        """Keep receipts, replacements and similar extras on the dispatch"""
        _, dispatch = await self.orders.get_dispatch(client.kind, reference)
        details = await client.event_details(event, user_id=dispatch.auth_subject)
        if details:
            await self.orders.record_dispatch_details(client.kind, reference, details)
