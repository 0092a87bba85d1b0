"""
Generic queue consumer.

Each queue gets a HandlerRegistry mapping event types to (model, handler)
pairs. The consumer deserializes with the registered pydantic model, calls the
handler, and acknowledges only once the handler finished or the failure was
accounted for:

* business outcomes (ValidationError, NotFoundOk) are logged and acked
* undecodable payloads and FatalInconsistency go straight to ``<queue>.dlq``
* anything else is republished to the same queue with ``x-delivery-attempt``
  incremented, and dead-lettered once the attempt limit is reached
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Type

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from pydantic import ValidationError as PayloadError

from fulfillment.errors import FatalInconsistency, NotFoundOk, ValidationError
from fulfillment.messaging.connection import BrokerConnection
from fulfillment.messaging.events import DEAD_LETTER_EXCHANGE, IntegrationEvent
from fulfillment.messaging.publisher import build_message

logger = logging.getLogger(__name__)

ATTEMPT_HEADER = "x-delivery-attempt"
DEATH_REASON_HEADER = "x-death-reason"

Handler = Callable[[IntegrationEvent], Awaitable[None]]


@dataclass(frozen=True)
class Registration:
    event_model: Type[IntegrationEvent]
    handler: Handler
    exchange: str
    routing_key: str


class HandlerRegistry:
    def __init__(self):
        self._registrations: Dict[str, Registration] = {}

    def register(self, event_model: Type[IntegrationEvent], handler: Handler, exchange: str, routing_key: str) -> None:
        self._registrations[event_model.event_type] = Registration(event_model, handler, exchange, routing_key)

    def resolve(self, event_type: Optional[str]) -> Optional[Registration]:
        if not event_type:
            return None
        return self._registrations.get(event_type)

    def bindings(self) -> List[Tuple[str, str]]:
        seen = []
        for registration in self._registrations.values():
            binding = (registration.exchange, registration.routing_key)
            if binding not in seen:
                seen.append(binding)
        return seen

    def __len__(self):
        return len(self._registrations)


def dead_letter_queue_name(queue_name: str) -> str:
    return f"{queue_name}.dlq"


class EventConsumer:
    def __init__(
        self,
        connection: BrokerConnection,
        queue_name: str,
        registry: HandlerRegistry,
        prefetch_count: int = 10,
        max_attempts: int = 5,
    ):
        self.connection = connection
        self.queue_name = queue_name
        self.registry = registry
        self.prefetch_count = prefetch_count
        self.max_attempts = max_attempts
        self._semaphore = asyncio.Semaphore(prefetch_count)
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None

    async def start(self) -> None:
        self._channel = await self.connection.channel(prefetch_count=self.prefetch_count)

        dlx = await self._channel.declare_exchange(DEAD_LETTER_EXCHANGE, aio_pika.ExchangeType.DIRECT, durable=True)
        dlq_name = dead_letter_queue_name(self.queue_name)
        dlq = await self._channel.declare_queue(dlq_name, durable=True)
        await dlq.bind(dlx, dlq_name)

        self._queue = await self._channel.declare_queue(self.queue_name, durable=True)
        for exchange_name, routing_key in self.registry.bindings():
            exchange = await self._channel.declare_exchange(exchange_name, aio_pika.ExchangeType.TOPIC, durable=True)
            await self._queue.bind(exchange, routing_key)

        self._consumer_tag = await self._queue.consume(self.process_message, no_ack=False)
        logger.info("Consumer on %s is listening for events", self.queue_name)

    async def stop(self) -> None:
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
        logger.info("Consumer on %s stopped", self.queue_name)

    async def process_message(self, message: AbstractIncomingMessage) -> None:
        async with self._semaphore:
            # requeue if the retry/dead-letter publish itself fails
            async with message.process(requeue=True):
                await self._dispatch(message)

    async def _dispatch(self, message: AbstractIncomingMessage) -> None:
        attempt = _attempt_of(message)
        event_type = message.type
        if not event_type:
            try:
                event_type = json.loads(message.body.decode("utf-8")).get("event_type")
            except (ValueError, AttributeError) as e:
                await self._dead_letter(message, attempt, f"Undecodable payload: {e}")
                return

        registration = self.registry.resolve(event_type)
        if registration is None:
            logger.info("Ignored event %s on %s", event_type, self.queue_name)
            return

        try:
            event = registration.event_model.model_validate_json(message.body)
        except PayloadError as e:
            await self._dead_letter(message, attempt, f"Undecodable {event_type} payload: {e}")
            return

        try:
            await registration.handler(event)
        except (ValidationError, NotFoundOk) as e:
            logger.warning("%s on %s resolved without retry: %s", event_type, self.queue_name, e)
        except FatalInconsistency as e:
            await self._dead_letter(message, attempt, f"{type(e).__name__}: {e}")
        except Exception as e:
            if attempt >= self.max_attempts:
                await self._dead_letter(message, attempt, f"{type(e).__name__}: {e}")
            else:
                logger.warning(
                    "%s on %s failed (attempt %d/%d): %s", event_type, self.queue_name, attempt, self.max_attempts, e
                )
                await self._retry(message, attempt + 1)
        else:
            logger.info("Processed %s %s on %s", event_type, event.event_id, self.queue_name)

    async def _retry(self, message: AbstractIncomingMessage, next_attempt: int) -> None:
        headers = dict(message.headers or {})
        headers[ATTEMPT_HEADER] = next_attempt
        copy = build_message(message.body, message.type, message.message_id, headers)
        await self._channel.default_exchange.publish(copy, routing_key=self.queue_name)

    async def _dead_letter(self, message: AbstractIncomingMessage, attempt: int, reason: str) -> None:
        headers = dict(message.headers or {})
        headers[ATTEMPT_HEADER] = attempt
        headers[DEATH_REASON_HEADER] = reason[:1000]
        headers["x-original-exchange"] = message.exchange or ""
        headers["x-original-routing-key"] = message.routing_key or ""
        copy = build_message(message.body, message.type, message.message_id, headers)

        dlq_name = dead_letter_queue_name(self.queue_name)
        dlx = await self._channel.get_exchange(DEAD_LETTER_EXCHANGE)
        await dlx.publish(copy, routing_key=dlq_name)
        logger.error(
            "Dead-lettered message %s from %s to %s after %d attempt(s): %s",
            message.message_id,
            self.queue_name,
            dlq_name,
            attempt,
            reason,
        )


def _attempt_of(message: AbstractIncomingMessage) -> int:
    headers = message.headers or {}
    try:
        return max(1, int(headers.get(ATTEMPT_HEADER, 1)))
    except (TypeError, ValueError):
        return 1
