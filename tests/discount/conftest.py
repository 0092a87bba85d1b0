import pytest_asyncio

from fulfillment.database import Database
from fulfillment.discount.models import Base, DiscountType
from fulfillment.discount.schemas import CreateDiscountRequest
from fulfillment.discount.service import DiscountUsageTracker


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'discount.db'}")
    await db.create_all(Base.metadata)
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def tracker(database):
    return DiscountUsageTracker(database.session_factory)


@pytest_asyncio.fixture
async def discount(tracker):
    """SAVE10: 10% off, capped at 20, once per user, 100 uses overall."""
    return await tracker.add_discount(
        CreateDiscountRequest(
            code="SAVE10",
            name="Ten percent off",
            type=DiscountType.PERCENTAGE,
            value=10,
            max_discount_amount=20,
            min_order_amount=50,
            usage_limit=100,
            usage_limit_per_user=1,
        )
    )
