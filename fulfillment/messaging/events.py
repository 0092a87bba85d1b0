"""
Integration events exchanged between the saga participants, plus the
exchange, routing-key and queue names they travel on.
"""

import uuid
from datetime import datetime, timezone
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

# Exchanges
ORDER_EXCHANGE = "order.events"
PAYMENT_EXCHANGE = "payment.events"
USER_EXCHANGE = "user.events"
DEAD_LETTER_EXCHANGE = "dead-letter"

# Routing keys
ORDER_CONFIRMED = "order.confirmed"
ORDER_CANCELLED = "order.cancelled"
ORDER_REFUND_REQUESTED = "order.refund_requested"
PAYMENT_SUCCESS = "payment.success"
PAYMENT_FAILED = "payment.failed"
USER_PROFILE_UPDATED = "user.profile.updated"

# Queues
INVENTORY_ORDER_CONFIRMED_QUEUE = "inventory.order.confirmed"
INVENTORY_ORDER_CANCELLED_QUEUE = "inventory.order.cancelled"
INVENTORY_PAYMENT_FAILED_QUEUE = "inventory.payment.failed"
DISCOUNT_ORDER_CONFIRMED_QUEUE = "discount.order.confirmed"
DISCOUNT_ORDER_CANCELLED_QUEUE = "discount.order.cancelled"
ORDER_PAYMENT_SUCCESS_QUEUE = "order.payment.success"
ORDER_PAYMENT_FAILED_QUEUE = "order.payment.failed"
ORDER_USER_SYNC_QUEUE = "order.user.sync"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IntegrationEvent(BaseModel):
    event_type: ClassVar[str] = "IntegrationEvent"

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    timestamp: datetime = Field(default_factory=_now)

    def envelope(self) -> dict:
        data = self.model_dump(mode="json")
        data["event_type"] = self.event_type
        return data


class OrderLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    unit_price: float = 0.0
    reservation_id: Optional[str] = None
    warehouse_id: Optional[str] = None


class CancelledLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    reservation_id: Optional[str] = None
    warehouse_id: Optional[str] = None
    stock_committed: bool = False


class OrderConfirmed(IntegrationEvent):
    event_type: ClassVar[str] = "OrderConfirmed"

    order_id: str
    order_number: str
    user_id: str
    discount_id: Optional[str] = None
    discount_code: Optional[str] = None
    discount_amount: float = 0.0
    subtotal: float = 0.0
    total_amount: float
    items: List[OrderLine] = []


class OrderCancelled(IntegrationEvent):
    event_type: ClassVar[str] = "OrderCancelled"

    order_id: str
    order_number: str
    user_id: Optional[str] = None
    discount_id: Optional[str] = None
    items: List[CancelledLine] = []
    reason: str = ""
    cancelled_by: str = "Customer"
    requires_refund: bool = False
    refund_amount: float = 0.0


class PaymentSuccess(IntegrationEvent):
    event_type: ClassVar[str] = "PaymentSuccess"

    order_id: str
    transaction_id: str
    amount: Optional[float] = None


class PaymentFailed(IntegrationEvent):
    event_type: ClassVar[str] = "PaymentFailed"

    order_id: str
    transaction_id: Optional[str] = None
    error_message: str = ""
    failure_reason: str = ""


class UserProfileUpdated(IntegrationEvent):
    event_type: ClassVar[str] = "UserProfileUpdated"

    user_id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None


class RefundRequested(IntegrationEvent):
    """Compensating signal for the payment side: money was taken for an order that cannot ship."""

    event_type: ClassVar[str] = "RefundRequested"

    order_id: str
    order_number: str
    transaction_id: Optional[str] = None
    amount: float
    reason: str
