"""
Order lifecycle.

    CREATED          -> PENDING_PAYMENT | CANCELLED (system only, when the reservation fails)
    PENDING_PAYMENT  -> CONFIRMED | PAYMENT_FAILED | CANCELLED
    PAYMENT_FAILED   -> CANCELLED
    CONFIRMED        -> SHIPPED | CANCELLED
    SHIPPED          -> DELIVERED | CANCELLED (only if cancel-after-shipment is allowed)
    DELIVERED, CANCELLED are terminal
"""

from fulfillment.errors import InvalidStateTransition
from fulfillment.orders.models import OrderStatus

TRANSITIONS = {
    OrderStatus.CREATED: frozenset({OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED}),
    OrderStatus.PENDING_PAYMENT: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Statuses in which the order's stock has been deducted from on-hand quantity.
STOCK_COMMITTED = frozenset({OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


def can_transition(
    current: OrderStatus, target: OrderStatus, allow_cancel_after_shipment: bool = False, system: bool = False
) -> bool:
    if target not in TRANSITIONS[current]:
        return False
    if current == OrderStatus.CREATED and target == OrderStatus.CANCELLED:
        return system
    if current == OrderStatus.SHIPPED and target == OrderStatus.CANCELLED:
        return allow_cancel_after_shipment
    return True


def ensure_transition(
    order_id: str,
    current: OrderStatus,
    target: OrderStatus,
    allow_cancel_after_shipment: bool = False,
    system: bool = False,
) -> None:
    if not can_transition(current, target, allow_cancel_after_shipment, system):
        raise InvalidStateTransition(order_id, current, target)
