"""Lookup of provider clients by kind"""

from typing import Dict, Optional

import httpx

from fulfillment.cache import CacheStore
from fulfillment.providers.base import BaseProviderClient
from fulfillment.providers.food import FoodDeliveryProvider
from fulfillment.providers.grocery import GroceryDeliveryProvider
from fulfillment.providers.ride import RideProvider, TokenStore
from fulfillment.retry import RetryExecutor
from fulfillment.schemas.catalog import ProviderKind


class UnknownProvider(ValueError):
    pass


class ProviderRegistry:
    """Routes fulfillment work to the client for a provider kind"""

    def __init__(self, clients: Dict[ProviderKind, BaseProviderClient]):
        self._clients = dict(clients)

    @classmethod
    def from_settings(
        cls,
        cache: CacheStore,
        http_client: Optional[httpx.AsyncClient] = None,
        executor: Optional[RetryExecutor] = None,
    ) -> "ProviderRegistry":
        """Build every client from application settings"""
        executor = executor or RetryExecutor()
        return cls({
            ProviderKind.RIDE: RideProvider(
                TokenStore(cache),
                http_client=http_client,
                executor=executor,
            ),
            ProviderKind.FOOD: FoodDeliveryProvider(
                http_client=http_client,
                executor=executor,
            ),
            ProviderKind.GROCERY: GroceryDeliveryProvider(
                http_client=http_client,
                executor=executor,
            ),
        })

    def get(self, kind) -> BaseProviderClient:
        try:
            return self._clients[ProviderKind(kind)]
        except (KeyError, ValueError):
            raise UnknownProvider(f"Unknown provider: {kind}")
