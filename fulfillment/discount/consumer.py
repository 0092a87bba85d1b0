import logging
from typing import List

from fulfillment.config import Settings
from fulfillment.discount.service import DiscountUsageTracker
from fulfillment.messaging import events
from fulfillment.messaging.connection import BrokerConnection
from fulfillment.messaging.consumer import EventConsumer, HandlerRegistry
from fulfillment.messaging.events import OrderCancelled, OrderConfirmed

logger = logging.getLogger(__name__)


class DiscountEventHandlers:
    def __init__(self, tracker: DiscountUsageTracker):
        self.tracker = tracker

    async def on_order_confirmed(self, event: OrderConfirmed) -> None:
        if not event.discount_id or event.discount_amount <= 0:
            return
        logger.info("Discount received OrderConfirmed for order %s", event.order_id)
        result = await self.tracker.record_usage(
            event.discount_id,
            event.user_id,
            event.order_id,
            order_amount=event.subtotal,
            discount_amount=event.discount_amount,
            order_number=event.order_number,
        )
        if not result.success:
            logger.info("Usage for order %s not recorded: %s", event.order_id, result.message)

    async def on_order_cancelled(self, event: OrderCancelled) -> None:
        if not event.discount_id:
            return
        logger.info("Discount received OrderCancelled for order %s", event.order_id)
        await self.tracker.rollback_usage(event.order_id)


def build_consumers(connection: BrokerConnection, tracker: DiscountUsageTracker, settings: Settings) -> List[EventConsumer]:
    handlers = DiscountEventHandlers(tracker)

    confirmed = HandlerRegistry()
    confirmed.register(OrderConfirmed, handlers.on_order_confirmed, events.ORDER_EXCHANGE, events.ORDER_CONFIRMED)

    cancelled = HandlerRegistry()
    cancelled.register(OrderCancelled, handlers.on_order_cancelled, events.ORDER_EXCHANGE, events.ORDER_CANCELLED)

    return [
        EventConsumer(
            connection,
            queue_name,
            registry,
            prefetch_count=settings.consumer_prefetch,
            max_attempts=settings.max_delivery_attempts,
        )
        for queue_name, registry in (
            (events.DISCOUNT_ORDER_CONFIRMED_QUEUE, confirmed),
            (events.DISCOUNT_ORDER_CANCELLED_QUEUE, cancelled),
        )
    ]
