import httpx
import pytest
import pytest_asyncio

from fulfillment.errors import InsufficientStock
from fulfillment.inventory.schemas import Shortfall
from fulfillment.messaging.events import PaymentSuccess
from fulfillment.orders.main import app, get_orchestrator


@pytest_asyncio.fixture
async def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


ORDER = {"user_id": "user-1", "items": [{"product_id": "product-A", "quantity": 2, "unit_price": 12.5}]}


@pytest.mark.asyncio
async def test_create_and_fetch_order(client):
    response = await client.post("/api/orders", json=ORDER)

    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "PENDING_PAYMENT"
    assert created["total_amount"] == 25.0

    fetched = await client.get(f"/api/orders/{created['id']}")
    assert fetched.json()["order_number"] == created["order_number"]


@pytest.mark.asyncio
async def test_unknown_order_is_404(client):
    response = await client.get("/api/orders/missing")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_create_with_no_stock_returns_cancelled_order(client, inventory):
    inventory.reserve.side_effect = InsufficientStock([Shortfall(product_id="product-A", requested=2, available=0)])

    response = await client.post("/api/orders", json=ORDER)

    assert response.status_code == 201
    assert response.json()["status"] == "CANCELLED"


@pytest.mark.asyncio
async def test_cancel_ship_and_deliver_endpoints(client, orchestrator):
    order_id = (await client.post("/api/orders", json=ORDER)).json()["id"]

    response = await client.post(f"/api/orders/{order_id}/ship")
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateTransition"

    await orchestrator.handle_payment_success(PaymentSuccess(order_id=order_id, transaction_id="txn-1"))
    assert (await client.post(f"/api/orders/{order_id}/ship")).json()["status"] == "SHIPPED"
    assert (await client.post(f"/api/orders/{order_id}/deliver")).json()["status"] == "DELIVERED"

    response = await client.post(f"/api/orders/{order_id}/cancel", json={"reason": "too late"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_cancel_pending_order(client):
    order_id = (await client.post("/api/orders", json=ORDER)).json()["id"]

    response = await client.post(f"/api/orders/{order_id}/cancel", json={"reason": "changed mind"})

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    assert response.json()["cancel_reason"] == "changed mind"


@pytest.mark.asyncio
async def test_empty_order_is_rejected(client):
    response = await client.post("/api/orders", json={"user_id": "user-1", "items": []})

    assert response.status_code == 422
