import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import uvicorn
from fastapi import Depends, FastAPI, Request

from fulfillment.config import Settings
from fulfillment.database import Database
from fulfillment.errors import TransientInfraError
from fulfillment.http import install_error_handlers
from fulfillment.log import configure_logging
from fulfillment.messaging.connection import BrokerConnection
from fulfillment.messaging.publisher import EventPublisher
from fulfillment.orders.clients import DiscountClient, InventoryClient, PaymentClient
from fulfillment.orders.consumer import build_consumers
from fulfillment.orders.models import Base
from fulfillment.orders.schemas import CancelOrderRequest, OrderCreate, OrderRead
from fulfillment.orders.service import OrderOrchestrator

logger = logging.getLogger(__name__)

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    database = Database(settings.order_database_url)
    await database.create_all(Base.metadata)

    client_options = {"timeout": settings.http_timeout_seconds, "max_attempts": settings.http_max_attempts}
    clients = [
        InventoryClient(settings.inventory_service_url, **client_options),
        DiscountClient(settings.discount_service_url, **client_options),
        PaymentClient(settings.payment_service_url, **client_options),
    ]
    broker = BrokerConnection(settings.rabbitmq_url, connect_attempts=settings.broker_connect_attempts)
    orchestrator = OrderOrchestrator(
        database.session_factory,
        *clients,
        publisher=EventPublisher(broker),
        reservation_ttl=timedelta(minutes=settings.reservation_ttl_minutes),
        allow_cancel_after_shipment=settings.allow_cancel_after_shipment,
    )
    app.state.orchestrator = orchestrator

    consumers = build_consumers(broker, orchestrator, settings)
    try:
        for consumer in consumers:
            await consumer.start()
    except TransientInfraError as e:
        logger.error("Order consumers not started: %s", e)
        consumers = []

    yield

    for consumer in consumers:
        await consumer.stop()
    for client in clients:
        await client.aclose()
    await broker.close()
    await database.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


def get_orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.orchestrator


@app.post("/api/orders", response_model=OrderRead, status_code=201)
async def create_order(order_data: OrderCreate, orchestrator: OrderOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.create_order(order_data)


@app.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: str, orchestrator: OrderOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_order(order_id)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(
    order_id: str, body: CancelOrderRequest, orchestrator: OrderOrchestrator = Depends(get_orchestrator)
):
    return await orchestrator.cancel_order(order_id, body.reason, body.cancelled_by, body.user_id)


@app.post("/api/orders/{order_id}/ship", response_model=OrderRead)
async def ship_order(order_id: str, orchestrator: OrderOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.ship_order(order_id)


@app.post("/api/orders/{order_id}/deliver", response_model=OrderRead)
async def deliver_order(order_id: str, orchestrator: OrderOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.deliver_order(order_id)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
