import pytest_asyncio

from fulfillment.database import Database
from fulfillment.inventory.models import Base
from fulfillment.inventory.service import InventoryReservationEngine


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await db.create_all(Base.metadata)
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def engine(database):
    return InventoryReservationEngine(database.session_factory, reserve_max_attempts=3)


@pytest_asyncio.fixture
async def stocked(engine):
    """product-A: 10 on hand in warehouse main."""
    await engine.add_stock("product-A", "main", 10)
    return engine
