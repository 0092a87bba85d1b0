import asyncio
import logging
from typing import Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.exceptions import AMQPConnectionError
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fulfillment.errors import TransientInfraError

logger = logging.getLogger(__name__)


class BrokerConnection:
    """
    Owns the RabbitMQ connection for one process.

    Publishers and consumers receive the instance explicitly. The connection
    is opened lazily on first use; aio-pika's robust connection handles
    reconnects after that, and the initial connect is retried with backoff.
    """

    def __init__(self, url: str, connect_attempts: int = 5, max_backoff: float = 10.0):
        self.url = url
        self.connect_attempts = connect_attempts
        self.max_backoff = max_backoff
        self._connection: Optional[AbstractRobustConnection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> AbstractRobustConnection:
        if self.is_connected:
            return self._connection

        async with self._lock:
            if self.is_connected:
                return self._connection
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.connect_attempts),
                    wait=wait_exponential(multiplier=0.5, max=self.max_backoff),
                    retry=retry_if_exception_type((AMQPConnectionError, ConnectionError, OSError)),
                    before_sleep=before_sleep_log(logger, logging.WARNING),
                ):
                    with attempt:
                        self._connection = await aio_pika.connect_robust(self.url)
            except RetryError as e:
                raise TransientInfraError(
                    f"Could not connect to RabbitMQ after {self.connect_attempts} attempts"
                ) from e.last_attempt.exception()

            logger.info("RabbitMQ connection established")
            return self._connection

    async def channel(self, prefetch_count: Optional[int] = None) -> AbstractChannel:
        connection = await self.connect()
        channel = await connection.channel()
        if prefetch_count:
            await channel.set_qos(prefetch_count=prefetch_count)
        return channel

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("RabbitMQ connection closed")

    async def __aenter__(self) -> "BrokerConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
