import asyncio
import logging

from sqlalchemy import select

from fulfillment.config import Settings
from fulfillment.database import Database
from fulfillment.discount.models import Base, Discount, DiscountType
from fulfillment.discount.schemas import CreateDiscountRequest
from fulfillment.discount.service import DiscountUsageTracker
from fulfillment.log import configure_logging

logger = logging.getLogger(__name__)

DEMO_DISCOUNTS = [
    CreateDiscountRequest(code="WELCOME10", name="Welcome 10%", type=DiscountType.PERCENTAGE, value=10, max_discount_amount=50),
    CreateDiscountRequest(code="FLAT5", name="Five off", type=DiscountType.FIXED_AMOUNT, value=5, min_order_amount=20),
    CreateDiscountRequest(code="SHIPFREE", name="Free shipping", type=DiscountType.FREE_SHIPPING, value=3, usage_limit=100),
]


async def seed_discounts(database: Database) -> int:
    await database.create_all(Base.metadata)
    async with database.session() as session:
        if (await session.execute(select(Discount.id).limit(1))).first() is not None:
            logger.info("Discounts already seeded.")
            return 0

    tracker = DiscountUsageTracker(database.session_factory)
    for request in DEMO_DISCOUNTS:
        await tracker.add_discount(request)
    logger.info("Discounts seeded successfully.")
    return len(DEMO_DISCOUNTS)


async def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    database = Database(settings.discount_database_url)
    try:
        await seed_discounts(database)
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
