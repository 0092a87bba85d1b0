import json
import logging
from typing import Dict, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import AMQPError

from fulfillment.errors import TransientInfraError
from fulfillment.messaging.connection import BrokerConnection
from fulfillment.messaging.events import IntegrationEvent

logger = logging.getLogger(__name__)


def build_message(body: bytes, event_type: str, message_id: str, headers: Optional[dict] = None) -> aio_pika.Message:
    return aio_pika.Message(
        body,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        message_id=message_id,
        type=event_type,
        headers=headers or {},
    )


class EventPublisher:
    def __init__(self, connection: BrokerConnection):
        self.connection = connection
        self._channel: Optional[AbstractChannel] = None
        self._exchanges: Dict[str, AbstractExchange] = {}

    async def _get_exchange(self, exchange_name: str) -> AbstractExchange:
        if self._channel is None or self._channel.is_closed:
            self._channel = await self.connection.channel()
            self._exchanges.clear()
        exchange = self._exchanges.get(exchange_name)
        if exchange is None:
            exchange = await self._channel.declare_exchange(
                exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            self._exchanges[exchange_name] = exchange
        return exchange

    async def publish(self, exchange_name: str, routing_key: str, event: IntegrationEvent) -> None:
        body = json.dumps(event.envelope()).encode("utf-8")
        message = build_message(body, event.event_type, str(event.event_id))
        try:
            exchange = await self._get_exchange(exchange_name)
            await exchange.publish(message, routing_key=routing_key)
        except (AMQPError, ConnectionError) as e:
            logger.error("Failed to publish %s to %s/%s: %s", event.event_type, exchange_name, routing_key, e)
            raise TransientInfraError(f"Could not publish {event.event_type}") from e
        logger.info("Published %s to %s/%s", event.event_type, exchange_name, routing_key)
