from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from fulfillment.database import Database, utcnow
from fulfillment.discount.schemas import UsageResult
from fulfillment.inventory.models import ReservationStatus
from fulfillment.inventory.schemas import OperationResult, ReservationRead, ReserveResult, ReturnResult
from fulfillment.orders.models import Base
from fulfillment.orders.schemas import Item, OrderCreate, PaymentSession
from fulfillment.orders.service import OrderOrchestrator


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await db.create_all(Base.metadata)
    yield db
    await db.dispose()


async def fake_reserve(order_id, items, ttl_minutes=None, order_number=None):
    expires_at = utcnow() + timedelta(minutes=ttl_minutes or 15)
    return ReserveResult(
        success=True,
        expires_at=expires_at,
        reservations=[
            ReservationRead(
                id=f"res-{order_id[:8]}-{position}",
                order_id=order_id,
                stock_item_id=f"stock-{item.product_id}",
                product_id=item.product_id,
                variant_id=item.variant_id,
                warehouse_id=item.warehouse_id or "main",
                quantity=item.quantity,
                status=ReservationStatus.PENDING,
                expires_at=expires_at,
            )
            for position, item in enumerate(items)
        ],
    )


@pytest.fixture
def inventory():
    client = MagicMock()
    client.reserve = AsyncMock(side_effect=fake_reserve)
    client.commit = AsyncMock(return_value=OperationResult(success=True, affected=1))
    client.release = AsyncMock(return_value=OperationResult(success=True, affected=1))
    client.return_stock = AsyncMock(return_value=ReturnResult(success=True))
    return client


@pytest.fixture
def discounts():
    client = MagicMock()
    client.validate = AsyncMock()
    client.record_usage = AsyncMock(return_value=UsageResult(success=True))
    client.rollback_usage = AsyncMock(return_value=UsageResult(success=True))
    return client


@pytest.fixture
def payments():
    client = MagicMock()
    client.create_payment = AsyncMock(
        return_value=PaymentSession(transaction_id="txn-1", payment_url="https://pay.example.com/txn-1")
    )
    return client


@pytest.fixture
def publisher():
    publisher = MagicMock()
    publisher.publish = AsyncMock()
    return publisher


@pytest.fixture
def orchestrator(database, inventory, discounts, payments, publisher):
    return OrderOrchestrator(database.session_factory, inventory, discounts, payments, publisher)


@pytest.fixture
def order_request():
    return OrderCreate(
        user_id="user-1",
        user_full_name="Ada Buyer",
        items=[
            Item(product_id="product-A", quantity=2, unit_price=20.0),
            Item(product_id="product-B", quantity=1, unit_price=20.0),
        ],
    )
