from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment.config import Settings
from fulfillment.discount.consumer import DiscountEventHandlers, build_consumers
from fulfillment.discount.schemas import UsageResult
from fulfillment.messaging import events
from fulfillment.messaging.events import OrderCancelled, OrderConfirmed


@pytest.fixture
def tracker():
    tracker = MagicMock()
    tracker.record_usage = AsyncMock(return_value=UsageResult(success=True))
    tracker.rollback_usage = AsyncMock(return_value=UsageResult(success=True))
    return tracker


def confirmed(**kwargs):
    fields = dict(order_id="order-1", order_number="ORD-1", user_id="user-1", subtotal=60.0, total_amount=54.0)
    fields.update(kwargs)
    return OrderConfirmed(**fields)


@pytest.mark.asyncio
async def test_confirmed_order_with_discount_records_usage(tracker):
    handlers = DiscountEventHandlers(tracker)

    await handlers.on_order_confirmed(confirmed(discount_id="disc-1", discount_amount=6.0))

    tracker.record_usage.assert_awaited_once_with(
        "disc-1",
        "user-1",
        "order-1",
        order_amount=60.0,
        discount_amount=6.0,
        order_number="ORD-1",
    )


@pytest.mark.asyncio
async def test_confirmed_order_without_discount_is_ignored(tracker):
    handlers = DiscountEventHandlers(tracker)

    await handlers.on_order_confirmed(confirmed())
    await handlers.on_order_confirmed(confirmed(discount_id="disc-1", discount_amount=0.0))

    tracker.record_usage.assert_not_called()


@pytest.mark.asyncio
async def test_cancelled_order_rolls_back_usage(tracker):
    handlers = DiscountEventHandlers(tracker)

    await handlers.on_order_cancelled(OrderCancelled(order_id="order-1", order_number="ORD-1", discount_id="disc-1"))
    await handlers.on_order_cancelled(OrderCancelled(order_id="order-2", order_number="ORD-2"))

    tracker.rollback_usage.assert_awaited_once_with("order-1")


def test_build_consumers_listens_on_order_events():
    consumers = build_consumers(MagicMock(), MagicMock(), Settings())

    assert [c.queue_name for c in consumers] == [
        events.DISCOUNT_ORDER_CONFIRMED_QUEUE,
        events.DISCOUNT_ORDER_CANCELLED_QUEUE,
    ]
    assert consumers[0].registry.bindings() == [(events.ORDER_EXCHANGE, events.ORDER_CONFIRMED)]
