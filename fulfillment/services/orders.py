"""Upsell order orchestration"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from fulfillment.cache import CacheStore
from fulfillment.config import settings
from fulfillment.errors import (
    AlreadyTerminal,
    CurrencyMismatch,
    DispatchNotFound,
    InvalidStatusTransition,
    ItemNotFound,
    ItemUnavailable,
    NotFound,
    OrderNotFound,
    ProviderError,
    RatingNotAllowed,
    ReplacementNotAllowed,
)
from fulfillment.providers.registry import ProviderRegistry
from fulfillment.schemas.catalog import CatalogItem, ProviderKind
from fulfillment.schemas.order import (
    Dispatch,
    DispatchOutcome,
    Order,
    OrderCreate,
    OrderCreateResult,
    OrderLine,
    OrderStatus,
)
from fulfillment.schemas.provider import Estimate, FulfillmentRequest
from fulfillment.services.catalog import CatalogService
from fulfillment.services.sla import compute_sla_deadline, is_overdue

logger = structlog.get_logger()

OPEN_ORDERS_KEY = "orders:open"
INTERNAL_ERROR = "INTERNAL_ERROR"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """Terminal states are final; otherwise stay put, move forward or exit"""
    if current.is_terminal:
        return False
    return requested.rank >= current.rank


def derive_order_status(order: Order) -> Optional[OrderStatus]:
    """
    Order status implied by its placed dispatches, or None when nothing
    has been placed yet. Failed dispatches do not count.
    """
    placed = [d for d in order.dispatches if d.external_reference]
    if not placed:
        return None

    live = [d for d in placed if not d.status.is_terminal]
    if live:
        if any(d.status == OrderStatus.IN_PROGRESS for d in live):
            return OrderStatus.IN_PROGRESS
        return OrderStatus.CONFIRMED

    statuses = {d.status for d in placed}
    if OrderStatus.COMPLETED in statuses:
        return OrderStatus.COMPLETED
    if statuses == {OrderStatus.REFUNDED}:
        return OrderStatus.REFUNDED
    return OrderStatus.CANCELLED


class OrderService:
    """
    Creates orders, dispatches provider-bound lines and keeps order state in
    step with provider callbacks.

    Orders live in the shared cache as whole JSON documents. Secondary keys:

    - ``reservation:{id}`` set of order ids for a reservation
    - ``orders:open`` set of non-terminal order ids
    - ``ref:{provider}:{reference}`` maps a provider reference to its order line
    - ``lock:order:{id}`` write lock for the order document
    """

    def __init__(
        self,
        cache: CacheStore,
        catalog: CatalogService,
        registry: ProviderRegistry,
        ttl_seconds: Optional[int] = None,
    ):
        self.cache = cache
        self.catalog = catalog
        self.registry = registry
        self.ttl_seconds = ttl_seconds or settings.order_cache_ttl

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _order_key(order_id: str) -> str:
        return f"order:{order_id}"

    @staticmethod
    def _reservation_key(reservation_id: str) -> str:
        return f"reservation:{reservation_id}"

    @staticmethod
    def _reference_key(provider: str, reference: str) -> str:
        return f"ref:{provider}:{reference}"

    async def _save(self, order: Order) -> None:
        await self.cache.set_json(
            self._order_key(order.id),
            order.model_dump(mode="json"),
            self.ttl_seconds,
        )
        await self.cache.add_to_set(
            self._reservation_key(order.reservation_id),
            order.id,
            self.ttl_seconds,
        )
        if order.status.is_terminal:
            await self.cache.remove_from_set(OPEN_ORDERS_KEY, order.id)
        else:
            await self.cache.add_to_set(OPEN_ORDERS_KEY, order.id)

    async def _index_reference(self, order: Order, dispatch: Dispatch) -> None:
        await self.cache.set_json(
            self._reference_key(dispatch.provider.value, dispatch.external_reference),
            {"order_id": order.id, "line_id": dispatch.line_id},
            self.ttl_seconds,
        )

    def _lock(self, order_id: str):
        """Per-order mutex held around every read-modify-write of the document"""
        return self.cache.lock(
            f"lock:order:{order_id}",
            timeout=settings.order_lock_timeout_seconds,
            blocking_timeout=settings.order_lock_wait_seconds,
        )

    async def _require(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _set_status(self, order: Order, status: OrderStatus, now: datetime) -> None:
        order.status = status
        order.updated_at = now
        if status == OrderStatus.COMPLETED:
            order.completed_at = now
        elif status == OrderStatus.CANCELLED:
            order.cancelled_at = now
        elif status == OrderStatus.REFUNDED:
            order.refunded_at = now

    def _roll_up(self, order: Order, now: datetime) -> None:
        derived = derive_order_status(order)
        if derived is None or derived == order.status:
            return
        if can_transition(order.status, derived):
            self._set_status(order, derived, now)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_order(
        self,
        request: OrderCreate,
        guest_id: str,
        property_id: str,
    ) -> OrderCreateResult:
        """
        Validate and price every line against the catalog, persist the order
        as PENDING, then dispatch provider-bound lines concurrently.

        Dispatch failures never fail the call; each line's outcome is
        returned and recorded on the order.
        """
        catalog: Dict[str, CatalogItem] = {
            item.id: item for item in await self.catalog.get_catalog(property_id)
        }

        lines: List[OrderLine] = []
        bound: Dict[str, CatalogItem] = {}
        currencies = set()
        for index, requested in enumerate(request.items, start=1):
            item = catalog.get(requested.upsell_id)
            if item is None:
                raise ItemNotFound(requested.upsell_id)
            if not item.available:
                raise ItemUnavailable(item.id, item.name)

            line = OrderLine(
                line_id=str(index),
                catalog_item_id=item.id,
                quantity=requested.quantity,
                unit_price=item.price,
                metadata=requested.metadata,
            )
            lines.append(line)
            currencies.add(item.currency)
            if item.provider is not None:
                bound[line.line_id] = item

        # One order total, one currency
        if len(currencies) > 1:
            raise CurrencyMismatch(currencies)

        now = utcnow()
        order = Order(
            id=str(uuid4()),
            reservation_id=request.reservation_id,
            property_id=property_id,
            guest_id=guest_id,
            items=lines,
            total_amount=sum(line.line_total for line in lines),
            currency=currencies.pop(),
            status=OrderStatus.PENDING,
            priority=request.priority,
            sla_deadline=compute_sla_deadline(now, request.priority),
            dispatches=[
                Dispatch(
                    line_id=line_id,
                    provider=item.provider,
                    auth_subject=guest_id if item.provider == ProviderKind.RIDE else None,
                    updated_at=now,
                )
                for line_id, item in bound.items()
            ],
            scheduled_for=request.scheduled_for,
            created_at=now,
            updated_at=now,
        )
        await self._save(order)

        logger.info(
            "Order created",
            order_id=order.id,
            reservation_id=order.reservation_id,
            property_id=property_id,
            total_amount=order.total_amount,
            line_count=len(lines),
            dispatch_count=len(order.dispatches),
        )

        if not order.dispatches:
            return OrderCreateResult(order=order)

        line_by_id = {line.line_id: line for line in lines}
        outcomes = await asyncio.gather(*[
            self._dispatch_line(order, line_by_id[dispatch.line_id], bound[dispatch.line_id])
            for dispatch in order.dispatches
        ])

        async with self._lock(order.id):
            stored = await self.get_order(order.id) or order
            stored.dispatches = order.dispatches
            for dispatch in stored.dispatches:
                if dispatch.external_reference:
                    await self._index_reference(stored, dispatch)
                    if stored.external_order_id is None:
                        stored.external_order_id = dispatch.external_reference
                        stored.external_provider = dispatch.provider

            self._roll_up(stored, utcnow())
            await self._save(stored)
        order = stored

        failed = [o for o in outcomes if not o.dispatched]
        if failed:
            logger.warning(
                "Order partially dispatched",
                order_id=order.id,
                failed_lines=[o.line_id for o in failed],
                dispatched_count=len(outcomes) - len(failed),
            )

        return OrderCreateResult(order=order, dispatches=list(outcomes))

    async def _dispatch_line(
        self,
        order: Order,
        line: OrderLine,
        item: CatalogItem,
    ) -> DispatchOutcome:
        dispatch = order.dispatch_for(line.line_id)
        client = self.registry.get(item.provider)
        request = FulfillmentRequest(
            order_id=order.id,
            line_id=line.line_id,
            user_id=order.guest_id,
            quantity=line.quantity,
            scheduled_for=order.scheduled_for,
            metadata=line.metadata,
        )

        try:
            reference = await client.place(request)
        except ProviderError as e:
            return self._dispatch_failed(order, dispatch, item, e.code, e.message)
        except Exception as e:
            logger.exception(
                "Unexpected error dispatching line",
                order_id=order.id,
                line_id=line.line_id,
                provider=item.provider.value,
            )
            return self._dispatch_failed(order, dispatch, item, INTERNAL_ERROR, str(e) or type(e).__name__)

        now = utcnow()
        dispatch.external_reference = reference.reference
        dispatch.status = reference.status
        dispatch.raw_status = reference.raw_status
        dispatch.tracking_url = reference.tracking_url
        dispatch.error_code = None
        dispatch.error_message = None
        dispatch.dispatched_at = now
        dispatch.updated_at = now

        logger.info(
            "Line dispatched",
            order_id=order.id,
            line_id=line.line_id,
            provider=item.provider.value,
            reference=reference.reference,
        )

        return DispatchOutcome(
            line_id=line.line_id,
            catalog_item_id=item.id,
            provider=item.provider,
            dispatched=True,
            external_reference=reference.reference,
        )

    def _dispatch_failed(
        self,
        order: Order,
        dispatch: Dispatch,
        item: CatalogItem,
        code: str,
        message: str,
    ) -> DispatchOutcome:
        dispatch.error_code = code
        dispatch.error_message = message
        dispatch.updated_at = utcnow()

        logger.warning(
            "Line dispatch failed",
            order_id=order.id,
            line_id=dispatch.line_id,
            provider=item.provider.value,
            error_code=code,
            error=message,
        )

        return DispatchOutcome(
            line_id=dispatch.line_id,
            catalog_item_id=item.id,
            provider=item.provider,
            dispatched=False,
            error_code=code,
            error_message=message,
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Optional[Order]:
        data = await self.cache.get_json(self._order_key(order_id))
        if data is None:
            return None
        return Order.model_validate(data)

    async def get_orders_by_reservation(self, reservation_id: str) -> List[Order]:
        orders = []
        for order_id in await self.cache.set_members(self._reservation_key(reservation_id)):
            order = await self.get_order(order_id)
            if order is not None:
                orders.append(order)
        return sorted(orders, key=lambda o: o.created_at)

    async def _resolve(self, provider: ProviderKind, reference: str) -> Dict[str, str]:
        pointer = await self.cache.get_json(self._reference_key(provider.value, reference))
        if pointer is None:
            raise DispatchNotFound(provider.value, reference)
        return pointer

    async def _load_dispatch(
        self,
        provider: ProviderKind,
        reference: str,
        pointer: Dict[str, str],
    ) -> Tuple[Order, Dispatch]:
        order = await self._require(pointer["order_id"])
        dispatch = order.dispatch_for(pointer["line_id"])
        if dispatch is None:
            raise DispatchNotFound(provider.value, reference)
        return order, dispatch

    async def get_dispatch(self, provider: ProviderKind, reference: str) -> Tuple[Order, Dispatch]:
        """Order and dispatch a provider reference belongs to"""
        pointer = await self._resolve(provider, reference)
        return await self._load_dispatch(provider, reference, pointer)

    async def get_ride_estimates(
        self,
        start_lat: float,
        start_lng: float,
        end_lat: float,
        end_lng: float,
    ) -> List[Estimate]:
        ride = self.registry.get(ProviderKind.RIDE)
        return await ride.get_price_estimates(start_lat, start_lng, end_lat, end_lng)

    async def get_ride_time_estimates(
        self,
        latitude: float,
        longitude: float,
        product_id: Optional[str] = None,
    ) -> List[dict]:
        ride = self.registry.get(ProviderKind.RIDE)
        return await ride.get_time_estimates(latitude, longitude, product_id=product_id)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        external_ref: Optional[str] = None,
        provider: Optional[ProviderKind] = None,
    ) -> Order:
        async with self._lock(order_id):
            order = await self._require(order_id)

            if not can_transition(order.status, new_status):
                raise InvalidStatusTransition(order.status.value, new_status.value)

            self._set_status(order, new_status, utcnow())
            if external_ref:
                order.external_order_id = external_ref
            if provider:
                order.external_provider = provider

            await self._save(order)

        logger.info("Order status updated", order_id=order.id, status=new_status.value)

        return order

    async def rate_order(self, order_id: str, rating: int, feedback: Optional[str] = None) -> Order:
        async with self._lock(order_id):
            order = await self._require(order_id)

            if order.status != OrderStatus.COMPLETED:
                raise RatingNotAllowed("Can only rate completed orders")
            if not 1 <= rating <= 5:
                raise RatingNotAllowed("Rating must be between 1 and 5")

            order.guest_rating = rating
            order.guest_feedback = feedback
            order.updated_at = utcnow()
            await self._save(order)

        logger.info("Order rated", order_id=order.id, rating=rating)

        return order

    async def cancel_order(self, order_id: str) -> Order:
        """
        Cancel every live dispatch at its provider, then the order.

        Provider calls run outside the order lock; the result is written back
        onto the latest stored order.
        """
        order = await self._require(order_id)

        if order.status.is_terminal:
            raise InvalidStatusTransition(order.status.value, OrderStatus.CANCELLED.value)

        cancelled: List[str] = []
        for dispatch in order.dispatches:
            if not dispatch.is_live:
                continue

            client = self.registry.get(dispatch.provider)
            try:
                await client.cancel(dispatch.external_reference, user_id=dispatch.auth_subject)
            except (NotFound, AlreadyTerminal) as e:
                logger.info(
                    "Dispatch already gone at provider",
                    order_id=order.id,
                    line_id=dispatch.line_id,
                    provider=dispatch.provider.value,
                    error_code=e.code,
                )
            except ProviderError:
                # Keep what was cancelled so far
                if cancelled:
                    await self._record_cancellations(order_id, cancelled, close_order=False)
                raise

            cancelled.append(dispatch.line_id)

        order = await self._record_cancellations(order_id, cancelled, close_order=True)

        logger.info("Order cancelled", order_id=order.id)

        return order

    async def _record_cancellations(self, order_id: str, line_ids: List[str], close_order: bool) -> Order:
        async with self._lock(order_id):
            order = await self._require(order_id)
            now = utcnow()
            for line_id in line_ids:
                dispatch = order.dispatch_for(line_id)
                if dispatch is not None and not dispatch.status.is_terminal:
                    dispatch.status = OrderStatus.CANCELLED
                    dispatch.updated_at = now

            if close_order and not order.status.is_terminal:
                self._set_status(order, OrderStatus.CANCELLED, now)
            else:
                order.updated_at = now
            await self._save(order)
        return order

    async def apply_provider_status(
        self,
        provider: ProviderKind,
        reference: str,
        status: OrderStatus,
        occurred_at: Optional[datetime] = None,
        raw_status: Optional[str] = None,
        tracking_url: Optional[str] = None,
    ) -> bool:
        """
        Move one dispatch to a provider-reported status. Returns False when
        the update is stale, a regression, or changes nothing.

        Runs under the order lock so concurrent events on sibling lines of
        the same order never overwrite each other.
        """
        pointer = await self._resolve(provider, reference)

        async with self._lock(pointer["order_id"]):
            order, dispatch = await self._load_dispatch(provider, reference, pointer)

            log = logger.bind(
                order_id=order.id,
                line_id=dispatch.line_id,
                provider=provider.value,
                reference=reference,
                status=status.value,
            )

            # Same-second events are ordered by status rank below
            if occurred_at and dispatch.last_event_at and occurred_at < dispatch.last_event_at:
                log.info("Ignoring stale provider update", last_event_at=dispatch.last_event_at.isoformat())
                return False

            if status == dispatch.status or not can_transition(dispatch.status, status):
                log.info("Ignoring provider update", current=dispatch.status.value)
                return False

            now = utcnow()
            dispatch.status = status
            dispatch.raw_status = raw_status or dispatch.raw_status
            dispatch.tracking_url = tracking_url or dispatch.tracking_url
            dispatch.last_event_at = occurred_at or dispatch.last_event_at
            dispatch.updated_at = now

            order.updated_at = now
            self._roll_up(order, now)
            await self._save(order)

        log.info("Applied provider status", order_status=order.status.value)

        return True

    async def record_dispatch_details(
        self,
        provider: ProviderKind,
        reference: str,
        details: Dict[str, Any],
    ) -> Order:
        """Merge provider extras (receipts, replacements) into a dispatch"""
        pointer = await self._resolve(provider, reference)

        async with self._lock(pointer["order_id"]):
            order, dispatch = await self._load_dispatch(provider, reference, pointer)
            for key, value in details.items():
                existing = dispatch.details.get(key)
                if isinstance(existing, list) and isinstance(value, list):
                    dispatch.details[key] = existing + value
                else:
                    dispatch.details[key] = value

            now = utcnow()
            dispatch.updated_at = now
            order.updated_at = now
            await self._save(order)

        logger.info(
            "Recorded dispatch details",
            order_id=order.id,
            line_id=dispatch.line_id,
            provider=provider.value,
            keys=sorted(details),
        )

        return order

    async def review_replacement(
        self,
        order_id: str,
        line_id: str,
        original_product_id: str,
        approve: bool = True,
        replacement_product_id: Optional[str] = None,
    ) -> Order:
        """
        Pass the guest's answer on a grocery substitution to the provider and
        keep it on the dispatch. Approving without a replacement id picks the
        substitute the provider proposed for that product.
        """
        order = await self._require(order_id)
        dispatch = order.dispatch_for(line_id)
        if dispatch is None or dispatch.provider != ProviderKind.GROCERY or not dispatch.is_live:
            raise ReplacementNotAllowed(f"Line {line_id} is not an active grocery delivery")

        if approve and not replacement_product_id:
            for proposed in dispatch.details.get("replacements", []):
                if proposed.get("original_product_id") == original_product_id:
                    replacement_product_id = proposed.get("replacement_product_id")
            if not replacement_product_id:
                raise ReplacementNotAllowed(f"No replacement proposed for product {original_product_id}")

        client = self.registry.get(ProviderKind.GROCERY)
        if approve:
            await client.approve_replacement(dispatch.external_reference, original_product_id, replacement_product_id)
        else:
            await client.reject_replacement(dispatch.external_reference, original_product_id)

        decision = {
            "original_product_id": original_product_id,
            "replacement_product_id": replacement_product_id if approve else None,
            "approved": approve,
            "decided_at": utcnow().isoformat(),
        }
        async with self._lock(order_id):
            order = await self._require(order_id)
            dispatch = order.dispatch_for(line_id)
            dispatch.details["replacement_decisions"] = dispatch.details.get("replacement_decisions", []) + [decision]
            dispatch.updated_at = utcnow()
            order.updated_at = dispatch.updated_at
            await self._save(order)

        logger.info(
            "Replacement reviewed",
            order_id=order_id,
            line_id=line_id,
            original_product_id=original_product_id,
            approved=approve,
        )

        return order

    # ------------------------------------------------------------------
    # Background sweeps
    # ------------------------------------------------------------------

    async def _open_orders(self) -> List[Order]:
        orders = []
        for order_id in await self.cache.set_members(OPEN_ORDERS_KEY):
            order = await self.get_order(order_id)
            if order is None:
                # Expired from the cache
                await self.cache.remove_from_set(OPEN_ORDERS_KEY, order_id)
                continue
            orders.append(order)
        return orders

    async def reconcile_open_orders(self) -> int:
        """Poll live dispatches of open orders; returns how many changed"""
        applied = 0
        for order in await self._open_orders():
            for dispatch in order.dispatches:
                if not dispatch.is_live:
                    continue

                client = self.registry.get(dispatch.provider)
                try:
                    status = await client.get_status(
                        dispatch.external_reference,
                        user_id=dispatch.auth_subject,
                    )
                except ProviderError as e:
                    logger.warning(
                        "Status poll failed",
                        order_id=order.id,
                        line_id=dispatch.line_id,
                        provider=dispatch.provider.value,
                        error_code=e.code,
                    )
                    continue

                if status.status is None:
                    continue

                changed = await self.apply_provider_status(
                    dispatch.provider,
                    dispatch.external_reference,
                    status.status,
                    raw_status=status.raw_status,
                    tracking_url=status.tracking_url,
                )
                if changed:
                    applied += 1

        logger.info("Reconciled open orders", applied=applied)

        return applied

    async def find_overdue_orders(self, now: Optional[datetime] = None) -> List[Order]:
        now = now or utcnow()
        return [order for order in await self._open_orders() if is_overdue(order, now)]
