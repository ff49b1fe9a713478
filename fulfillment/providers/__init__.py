"""Fulfillment provider clients"""

from fulfillment.providers.base import BaseProviderClient
from fulfillment.providers.ride import RideProvider, TokenStore
from fulfillment.providers.food import FoodDeliveryProvider
from fulfillment.providers.grocery import GroceryDeliveryProvider
from fulfillment.providers.registry import ProviderRegistry, UnknownProvider

__all__ = [
    "BaseProviderClient",
    "RideProvider",
    "TokenStore",
    "FoodDeliveryProvider",
    "GroceryDeliveryProvider",
    "ProviderRegistry",
    "UnknownProvider",
]
