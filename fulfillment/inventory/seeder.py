import asyncio
import logging

from fulfillment.config import Settings
from fulfillment.database import Database
from fulfillment.errors import NotFoundOk
from fulfillment.inventory.models import Base
from fulfillment.inventory.service import InventoryReservationEngine
from fulfillment.log import configure_logging

logger = logging.getLogger(__name__)

# (product_id, variant_id, warehouse_id, quantity)
DEMO_STOCK = [
    ("product-A", None, "main", 10),
    ("product-B", None, "main", 5),
    ("product-B", None, "east", 3),
    ("product-C", "size-M", "main", 2),
]


async def seed_inventory(database: Database) -> int:
    await database.create_all(Base.metadata)
    engine = InventoryReservationEngine(database.session_factory)
    try:
        await engine.get_product_stock("product-A")
    except NotFoundOk:
        pass
    else:
        logger.info("Inventory already seeded.")
        return 0

    for product_id, variant_id, warehouse_id, quantity in DEMO_STOCK:
        await engine.add_stock(product_id, warehouse_id, quantity, variant_id=variant_id, reason="Initial seed")
    logger.info("Inventory seeded successfully.")
    return len(DEMO_STOCK)


async def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    database = Database(settings.inventory_database_url)
    try:
        await seed_inventory(database)
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
