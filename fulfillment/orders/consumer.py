import logging
from typing import List

from fulfillment.config import Settings
from fulfillment.messaging import events
from fulfillment.messaging.connection import BrokerConnection
from fulfillment.messaging.consumer import EventConsumer, HandlerRegistry
from fulfillment.messaging.events import PaymentFailed, PaymentSuccess, UserProfileUpdated
from fulfillment.orders.service import OrderOrchestrator

logger = logging.getLogger(__name__)


class OrderEventHandlers:
    def __init__(self, orchestrator: OrderOrchestrator):
        self.orchestrator = orchestrator

    async def on_payment_success(self, event: PaymentSuccess) -> None:
        logger.info("Order Service received PaymentSuccess for order %s", event.order_id)
        await self.orchestrator.handle_payment_success(event)

    async def on_payment_failed(self, event: PaymentFailed) -> None:
        logger.info("Order Service received PaymentFailed for order %s", event.order_id)
        await self.orchestrator.handle_payment_failed(event)

    async def on_user_profile_updated(self, event: UserProfileUpdated) -> None:
        await self.orchestrator.sync_user_profile(event)


def build_consumers(connection: BrokerConnection, orchestrator: OrderOrchestrator, settings: Settings) -> List[EventConsumer]:
    handlers = OrderEventHandlers(orchestrator)

    payment_success = HandlerRegistry()
    payment_success.register(PaymentSuccess, handlers.on_payment_success, events.PAYMENT_EXCHANGE, events.PAYMENT_SUCCESS)

    payment_failed = HandlerRegistry()
    payment_failed.register(PaymentFailed, handlers.on_payment_failed, events.PAYMENT_EXCHANGE, events.PAYMENT_FAILED)

    user_sync = HandlerRegistry()
    user_sync.register(
        UserProfileUpdated, handlers.on_user_profile_updated, events.USER_EXCHANGE, events.USER_PROFILE_UPDATED
    )

    return [
        EventConsumer(
            connection,
            queue_name,
            registry,
            prefetch_count=settings.consumer_prefetch,
            max_attempts=settings.max_delivery_attempts,
        )
        for queue_name, registry in (
            (events.ORDER_PAYMENT_SUCCESS_QUEUE, payment_success),
            (events.ORDER_PAYMENT_FAILED_QUEUE, payment_failed),
            (events.ORDER_USER_SYNC_QUEUE, user_sync),
        )
    ]
