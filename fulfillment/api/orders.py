"""Upsell catalog and order API endpoints"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
import structlog

from fulfillment.dependencies import (
    get_catalog_service,
    get_order_service,
    get_provider_registry,
)
from fulfillment.errors import (
    AuthExpired,
    CurrencyMismatch,
    InvalidAddress,
    InvalidStatusTransition,
    ItemNotFound,
    ItemUnavailable,
    NotFound,
    OrderNotFound,
    ProviderError,
    RateLimited,
    RatingNotAllowed,
    ReplacementNotAllowed,
    ValidationError,
)
from fulfillment.providers.registry import ProviderRegistry
from fulfillment.schemas.catalog import CatalogResponse, ProviderKind
from fulfillment.schemas.order import (
    Order,
    OrderCreate,
    OrderCreateResult,
    OrderRating,
    OrderStatusUpdate,
)
from fulfillment.schemas.provider import Estimate, ReplacementDecision, RideAuthorizationCallback
from fulfillment.services.catalog import CatalogService
from fulfillment.services.orders import OrderService

router = APIRouter()
logger = structlog.get_logger()


def provider_http_error(error: ProviderError) -> HTTPException:
    """Translate a provider failure into an API error response"""
    if isinstance(error, (ValidationError, InvalidAddress)):
        status_code = 422
    elif isinstance(error, AuthExpired):
        status_code = 401
    elif isinstance(error, NotFound):
        status_code = 404
    elif isinstance(error, RateLimited):
        status_code = 429
    else:
        status_code = 502
    return HTTPException(status_code=status_code, detail=error.to_dict())


@router.get("/catalog/{property_id}", response_model=CatalogResponse)
async def get_catalog(
    property_id: str,
    catalog: CatalogService = Depends(get_catalog_service),
):
    """Upsell offerings for a property"""
    items = await catalog.get_catalog(property_id)
    return CatalogResponse(property_id=property_id, items=items)


@router.post("/properties/{property_id}/orders", response_model=OrderCreateResult, status_code=201)
async def create_order(
    property_id: str,
    order_data: OrderCreate,
    guest_id: str = Header(..., alias="X-Guest-ID"),
    orders: OrderService = Depends(get_order_service),
):
    """
    Create an upsell order and dispatch its provider-bound lines.
    The order is created even when a dispatch fails; per-line outcomes
    are returned alongside it.
    """
    try:
        return await orders.create_order(order_data, guest_id, property_id)
    except ItemNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CurrencyMismatch as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ItemUnavailable as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/orders/reservation/{reservation_id}", response_model=List[Order])
async def get_orders_by_reservation(
    reservation_id: str,
    orders: OrderService = Depends(get_order_service),
):
    return await orders.get_orders_by_reservation(reservation_id)


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    orders: OrderService = Depends(get_order_service),
):
    order = await orders.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.put("/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    orders: OrderService = Depends(get_order_service),
):
    """Manual status change (staff fulfilment of non-provider items)"""
    try:
        return await orders.update_status(
            order_id,
            update.status,
            external_ref=update.external_order_id,
            provider=update.external_provider,
        )
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/orders/{order_id}/rating", response_model=Order)
async def rate_order(
    order_id: str,
    rating: OrderRating,
    orders: OrderService = Depends(get_order_service),
):
    try:
        return await orders.rate_order(order_id, rating.rating, rating.feedback)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except RatingNotAllowed as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/orders/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: str,
    orders: OrderService = Depends(get_order_service),
):
    """Cancel an order and every live provider dispatch"""
    try:
        return await orders.cancel_order(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ProviderError as e:
        raise provider_http_error(e)


@router.post("/orders/{order_id}/lines/{line_id}/replacements", response_model=Order)
async def review_replacement(
    order_id: str,
    line_id: str,
    decision: ReplacementDecision,
    orders: OrderService = Depends(get_order_service),
):
    """Approve or reject a grocery item substitution"""
    try:
        return await orders.review_replacement(
            order_id,
            line_id,
            decision.original_product_id,
            approve=decision.approve,
            replacement_product_id=decision.replacement_product_id,
        )
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except ReplacementNotAllowed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ProviderError as e:
        raise provider_http_error(e)


@router.get("/estimates/ride", response_model=List[Estimate])
async def get_ride_estimates(
    start_lat: float = Query(..., ge=-90, le=90),
    start_lng: float = Query(..., ge=-180, le=180),
    end_lat: float = Query(..., ge=-90, le=90),
    end_lng: float = Query(..., ge=-180, le=180),
    orders: OrderService = Depends(get_order_service),
):
    """Ride price estimates, amounts in minor units"""
    try:
        return await orders.get_ride_estimates(start_lat, start_lng, end_lat, end_lng)
    except ProviderError as e:
        raise provider_http_error(e)


@router.get("/estimates/ride/time")
async def get_ride_time_estimates(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    product_id: Optional[str] = None,
    orders: OrderService = Depends(get_order_service),
):
    """Pickup ETA per ride product, in seconds"""
    try:
        times = await orders.get_ride_time_estimates(latitude, longitude, product_id=product_id)
    except ProviderError as e:
        raise provider_http_error(e)
    return {"times": times}


@router.get("/oauth/ride/authorize")
async def authorize_ride(
    redirect_uri: str,
    state: Optional[str] = None,
    guest_id: str = Header(..., alias="X-Guest-ID"),
    providers: ProviderRegistry = Depends(get_provider_registry),
):
    """URL the guest visits to allow ride requests on their behalf"""
    ride = providers.get(ProviderKind.RIDE)
    return {"authorization_url": ride.authorization_url(redirect_uri, state or guest_id)}


@router.post("/oauth/ride/callback")
async def ride_oauth_callback(
    callback: RideAuthorizationCallback,
    guest_id: str = Header(..., alias="X-Guest-ID"),
    providers: ProviderRegistry = Depends(get_provider_registry),
):
    """Exchange the authorization code and store the guest's token"""
    ride = providers.get(ProviderKind.RIDE)
    try:
        token = await ride.exchange_code(guest_id, callback.code, callback.redirect_uri)
    except ProviderError as e:
        raise provider_http_error(e)

    return {"authorized": True, "expires_at": token.expires_at}
