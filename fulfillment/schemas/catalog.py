"""Upsell catalog schemas"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict


class ProviderKind(str, Enum):
    """External fulfillment providers"""
    RIDE = "ride"
    FOOD = "food"
    GROCERY = "grocery"


class UpsellCategory(str, Enum):
    """Upsell offering categories"""
    FOOD_DELIVERY = "food_delivery"
    GROCERY_DELIVERY = "grocery_delivery"
    TRANSPORTATION = "transportation"
    EARLY_CHECKIN = "early_checkin"
    LATE_CHECKOUT = "late_checkout"
    EXTRA_CLEANING = "extra_cleaning"
    LOCAL_ACTIVITIES = "local_activities"
    RESTAURANT_RESERVATION = "restaurant_reservation"


class CatalogItem(BaseModel):
    """Purchasable upsell offering, optionally bound to a provider"""
    model_config = ConfigDict(frozen=True)

    id: str
    category: UpsellCategory
    name: str
    description: str = ""
    price: int  # minor currency units
    currency: str = "USD"
    available: bool = True
    image_url: Optional[str] = None
    provider: Optional[ProviderKind] = None
    provider_metadata: Dict[str, Any] = {}


class CatalogResponse(BaseModel):
    """Catalog for a property"""
    property_id: str
    items: List[CatalogItem]
