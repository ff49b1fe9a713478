"""Fulfillment services"""

from fulfillment.services.catalog import CatalogService
from fulfillment.services.orders import OrderService
from fulfillment.services.webhooks import WebhookIngestor

__all__ = [
    "CatalogService",
    "OrderService",
    "WebhookIngestor",
]
