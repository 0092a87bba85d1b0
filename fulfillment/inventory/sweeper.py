import asyncio
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from fulfillment.inventory.service import InventoryReservationEngine

logger = logging.getLogger(__name__)


class ReservationSweeper:
    """Periodically expires PENDING reservations whose TTL has passed."""

    def __init__(self, engine: InventoryReservationEngine, interval_seconds: float = 30.0, batch_size: int = 100):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> int:
        total = 0
        while True:
            expired = await self.engine.expire_reservations(limit=self.batch_size)
            total += expired
            if expired < self.batch_size:
                return total

    async def run(self) -> None:
        logger.info("Reservation sweeper running every %.0fs", self.interval_seconds)
        while True:
            try:
                await self.sweep()
            except SQLAlchemyError as e:
                logger.error("Reservation sweep failed, retrying next interval: %s", e)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="reservation-sweeper")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Reservation sweeper stopped")
