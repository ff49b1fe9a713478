"""Upsell catalog, cached per property"""

from typing import List, Optional

import structlog

from fulfillment.cache import CacheStore
from fulfillment.config import settings
from fulfillment.schemas.catalog import CatalogItem, ProviderKind, UpsellCategory

logger = structlog.get_logger()


def build_static_catalog(currency: str = "USD") -> List[CatalogItem]:
    """Offerings available at every property. Provider items are priced at dispatch."""
    return [
        CatalogItem(
            id="ride",
            category=UpsellCategory.TRANSPORTATION,
            name="Uber Ride",
            description="Request an Uber ride to anywhere in the city",
            price=0,
            currency=currency,
            provider=ProviderKind.RIDE,
            provider_metadata={"dynamic_pricing": True},
        ),
        CatalogItem(
            id="food-delivery",
            category=UpsellCategory.FOOD_DELIVERY,
            name="DoorDash Food Delivery",
            description="Order food from local restaurants",
            price=0,
            currency=currency,
            provider=ProviderKind.FOOD,
            provider_metadata={"dynamic_pricing": True},
        ),
        CatalogItem(
            id="grocery-delivery",
            category=UpsellCategory.GROCERY_DELIVERY,
            name="Instacart Grocery Delivery",
            description="Fresh groceries delivered to your door",
            price=0,
            currency=currency,
            provider=ProviderKind.GROCERY,
            provider_metadata={"dynamic_pricing": True},
        ),
        CatalogItem(
            id="early-checkin",
            category=UpsellCategory.EARLY_CHECKIN,
            name="Early Check-in (11 AM)",
            description="Check in 3 hours early, subject to availability",
            price=5000,
            currency=currency,
        ),
        CatalogItem(
            id="late-checkout",
            category=UpsellCategory.LATE_CHECKOUT,
            name="Late Checkout (2 PM)",
            description="Check out 3 hours late, subject to availability",
            price=5000,
            currency=currency,
        ),
        CatalogItem(
            id="mid-stay-cleaning",
            category=UpsellCategory.EXTRA_CLEANING,
            name="Mid-Stay Cleaning",
            description="Full cleaning service during your stay",
            price=7500,
            currency=currency,
        ),
        CatalogItem(
            id="city-tour",
            category=UpsellCategory.LOCAL_ACTIVITIES,
            name="City Tour Package",
            description="3-hour guided city tour with local expert",
            price=12000,
            currency=currency,
        ),
        CatalogItem(
            id="wine-tasting",
            category=UpsellCategory.LOCAL_ACTIVITIES,
            name="Wine Tasting Tour",
            description="Visit 3 local wineries with transportation included",
            price=15000,
            currency=currency,
        ),
        CatalogItem(
            id="restaurant-reservation",
            category=UpsellCategory.RESTAURANT_RESERVATION,
            name="Premium Restaurant Reservation",
            description="Reserved table at top-rated local restaurant",
            price=2500,
            currency=currency,
        ),
    ]


class CatalogService:
    """Read-through cache over the property catalog"""

    def __init__(self, cache: CacheStore, ttl_seconds: Optional[int] = None):
        self.cache = cache
        self.ttl_seconds = ttl_seconds or settings.catalog_cache_ttl

    @staticmethod
    def _key(property_id: str) -> str:
        return f"catalog:{property_id}"

    async def get_catalog(self, property_id: str) -> List[CatalogItem]:
        cached = await self.cache.get_json(self._key(property_id))
        if cached is not None:
            return [CatalogItem.model_validate(item) for item in cached]

        items = build_static_catalog(settings.default_currency)
        await self.cache.set_json(
            self._key(property_id),
            [item.model_dump(mode="json") for item in items],
            self.ttl_seconds,
        )

        logger.info("Catalog cached", property_id=property_id, item_count=len(items))

        return items
