"""Upsell order schemas"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from fulfillment.schemas.catalog import ProviderKind


class OrderStatus(str, Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})

# Position in the lifecycle; terminal states share the top rank
STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.IN_PROGRESS: 2,
    OrderStatus.COMPLETED: 3,
    OrderStatus.CANCELLED: 3,
    OrderStatus.REFUNDED: 3,
}


class Priority(str, Enum):
    """Dispatch urgency, drives the SLA deadline"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class OrderItemCreate(BaseModel):
    """Requested order line"""
    upsell_id: str
    quantity: int = Field(1, ge=1)
    metadata: Dict[str, Any] = {}
    price: Optional[int] = None  # ignored, the catalog price is authoritative


class OrderCreate(BaseModel):
    """Create order request"""
    reservation_id: str
    items: List[OrderItemCreate] = Field(..., min_length=1)
    scheduled_for: Optional[datetime] = None
    priority: Priority = Priority.NORMAL


class OrderLine(BaseModel):
    """Priced order line; unit_price is a catalog snapshot"""
    line_id: str
    catalog_item_id: str
    quantity: int = Field(..., ge=1)
    unit_price: int
    metadata: Dict[str, Any] = {}

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class Dispatch(BaseModel):
    """Fulfillment of one provider-bound line"""
    line_id: str
    provider: ProviderKind
    status: OrderStatus = OrderStatus.PENDING
    external_reference: Optional[str] = None
    auth_subject: Optional[str] = None  # end-user identity for user-scoped providers
    raw_status: Optional[str] = None
    tracking_url: Optional[str] = None
    last_event_at: Optional[datetime] = None
    details: Dict[str, Any] = {}  # receipts, replacements and other provider extras
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        """Placed at the provider and not yet finished"""
        return self.external_reference is not None and not self.status.is_terminal


class Order(BaseModel):
    """Upsell order aggregate"""
    id: str
    reservation_id: str
    property_id: str
    guest_id: str
    items: List[OrderLine]
    total_amount: int
    currency: str = "USD"
    status: OrderStatus = OrderStatus.PENDING
    priority: Priority = Priority.NORMAL
    sla_deadline: Optional[datetime] = None
    external_order_id: Optional[str] = None
    external_provider: Optional[ProviderKind] = None
    dispatches: List[Dispatch] = []
    scheduled_for: Optional[datetime] = None
    guest_rating: Optional[int] = None
    guest_feedback: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    def dispatch_for(self, line_id: str) -> Optional[Dispatch]:
        for dispatch in self.dispatches:
            if dispatch.line_id == line_id:
                return dispatch
        return None


class DispatchOutcome(BaseModel):
    """Result of dispatching one line during order creation"""
    line_id: str
    catalog_item_id: str
    provider: ProviderKind
    dispatched: bool
    external_reference: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class OrderCreateResult(BaseModel):
    """Created order plus per-line dispatch outcomes"""
    order: Order
    dispatches: List[DispatchOutcome] = []


class OrderStatusUpdate(BaseModel):
    """Status update request"""
    status: OrderStatus
    external_order_id: Optional[str] = None
    external_provider: Optional[ProviderKind] = None


class OrderRating(BaseModel):
    """Post-completion guest feedback"""
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = None
