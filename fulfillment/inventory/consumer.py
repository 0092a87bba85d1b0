import logging
from typing import List

from fulfillment.config import Settings
from fulfillment.inventory.service import InventoryReservationEngine
from fulfillment.messaging import events
from fulfillment.messaging.connection import BrokerConnection
from fulfillment.messaging.consumer import EventConsumer, HandlerRegistry
from fulfillment.messaging.events import OrderCancelled, OrderConfirmed, PaymentFailed

logger = logging.getLogger(__name__)


class InventoryEventHandlers:
    def __init__(self, engine: InventoryReservationEngine):
        self.engine = engine

    async def on_order_confirmed(self, event: OrderConfirmed) -> None:
        logger.info("Inventory received OrderConfirmed for order %s", event.order_id)
        result = await self.engine.commit(event.order_id)
        if result.not_found:
            logger.info("Order %s had nothing pending to commit (already committed or released)", event.order_id)

    async def on_order_cancelled(self, event: OrderCancelled) -> None:
        logger.info("Inventory received OrderCancelled for order %s", event.order_id)
        committed = [item for item in event.items if item.stock_committed]
        if committed:
            await self.engine.return_stock(
                event.order_id,
                committed,
                reason=f"Order cancelled: {event.reason}",
                order_number=event.order_number,
            )
        await self.engine.release(event.order_id, reason=f"Order cancelled: {event.reason}")

    async def on_payment_failed(self, event: PaymentFailed) -> None:
        logger.info("Inventory received PaymentFailed for order %s", event.order_id)
        reason = event.error_message or event.failure_reason or "unknown"
        await self.engine.release(event.order_id, reason=f"Payment failed: {reason}")


def build_consumers(
    connection: BrokerConnection, engine: InventoryReservationEngine, settings: Settings
) -> List[EventConsumer]:
    handlers = InventoryEventHandlers(engine)

    confirmed = HandlerRegistry()
    confirmed.register(OrderConfirmed, handlers.on_order_confirmed, events.ORDER_EXCHANGE, events.ORDER_CONFIRMED)

    cancelled = HandlerRegistry()
    cancelled.register(OrderCancelled, handlers.on_order_cancelled, events.ORDER_EXCHANGE, events.ORDER_CANCELLED)

    payment_failed = HandlerRegistry()
    payment_failed.register(PaymentFailed, handlers.on_payment_failed, events.PAYMENT_EXCHANGE, events.PAYMENT_FAILED)

    return [
        EventConsumer(
            connection,
            queue_name,
            registry,
            prefetch_count=settings.consumer_prefetch,
            max_attempts=settings.max_delivery_attempts,
        )
        for queue_name, registry in (
            (events.INVENTORY_ORDER_CONFIRMED_QUEUE, confirmed),
            (events.INVENTORY_ORDER_CANCELLED_QUEUE, cancelled),
            (events.INVENTORY_PAYMENT_FAILED_QUEUE, payment_failed),
        )
    ]
