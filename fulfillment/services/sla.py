"""Service-level deadlines for upsell orders"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fulfillment.config import settings
from fulfillment.schemas.order import Order, OrderStatus, Priority


def sla_minutes(priority: Priority) -> int:
    return {
        Priority.LOW: settings.sla_low_minutes,
        Priority.NORMAL: settings.sla_normal_minutes,
        Priority.HIGH: settings.sla_high_minutes,
        Priority.URGENT: settings.sla_urgent_minutes,
    }[priority]


def compute_sla_deadline(created_at: datetime, priority: Priority) -> datetime:
    return created_at + timedelta(minutes=sla_minutes(priority))


def is_overdue(order: Order, now: Optional[datetime] = None) -> bool:
    """Past its deadline and not yet completed or cancelled"""
    if order.sla_deadline is None:
        return False
    if order.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
        return False
    now = now or datetime.now(timezone.utc)
    return now > order.sla_deadline
