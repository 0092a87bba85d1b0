import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request

from fulfillment.config import Settings
from fulfillment.database import Database
from fulfillment.errors import TransientInfraError
from fulfillment.http import install_error_handlers
from fulfillment.inventory.consumer import build_consumers
from fulfillment.inventory.models import Base
from fulfillment.inventory.schemas import (
    AddStockRequest,
    CheckStockRequest,
    CommitRequest,
    ExpireResult,
    OperationResult,
    ProductStock,
    ReleaseRequest,
    ReserveRequest,
    ReserveResult,
    ReturnRequest,
    ReturnResult,
    StockCheckResult,
    StockItemRead,
)
from fulfillment.inventory.service import InventoryReservationEngine
from fulfillment.inventory.sweeper import ReservationSweeper
from fulfillment.log import configure_logging
from fulfillment.messaging.connection import BrokerConnection

logger = logging.getLogger(__name__)

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    database = Database(settings.inventory_database_url)
    await database.create_all(Base.metadata)
    engine = InventoryReservationEngine(
        database.session_factory,
        default_ttl=timedelta(minutes=settings.reservation_ttl_minutes),
        reserve_max_attempts=settings.reserve_max_attempts,
    )
    app.state.engine = engine

    broker = BrokerConnection(settings.rabbitmq_url, connect_attempts=settings.broker_connect_attempts)
    consumers = build_consumers(broker, engine, settings)
    try:
        for consumer in consumers:
            await consumer.start()
    except TransientInfraError as e:
        logger.error("Inventory consumers not started: %s", e)
        consumers = []

    sweeper = ReservationSweeper(engine, settings.sweep_interval_seconds, settings.sweep_batch_size)
    sweeper.start()
    app.state.sweeper = sweeper

    yield

    await sweeper.stop()
    for consumer in consumers:
        await consumer.stop()
    await broker.close()
    await database.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


def get_engine(request: Request) -> InventoryReservationEngine:
    return request.app.state.engine


@app.post("/api/inventory/check", response_model=StockCheckResult)
async def check_stock(body: CheckStockRequest, engine: InventoryReservationEngine = Depends(get_engine)):
    return await engine.check_stock(body.items)


@app.post("/api/inventory/reservations", response_model=ReserveResult, status_code=201)
async def reserve(body: ReserveRequest, engine: InventoryReservationEngine = Depends(get_engine)):
    ttl = timedelta(minutes=body.ttl_minutes) if body.ttl_minutes else None
    return await engine.reserve(body.order_id, body.items, ttl=ttl, order_number=body.order_number)


@app.post("/api/inventory/reservations/commit", response_model=OperationResult)
async def commit(body: CommitRequest, engine: InventoryReservationEngine = Depends(get_engine)):
    return await engine.commit(body.order_id)


@app.post("/api/inventory/reservations/release", response_model=OperationResult)
async def release(body: ReleaseRequest, engine: InventoryReservationEngine = Depends(get_engine)):
    return await engine.release(body.order_id, reason=body.reason, reservation_ids=body.reservation_ids)


@app.post("/api/inventory/returns", response_model=ReturnResult)
async def return_stock(body: ReturnRequest, engine: InventoryReservationEngine = Depends(get_engine)):
    return await engine.return_stock(body.order_id, body.items, reason=body.reason, order_number=body.order_number)


@app.post("/api/inventory/internal/release-expired", response_model=ExpireResult)
async def release_expired(engine: InventoryReservationEngine = Depends(get_engine)):
    return ExpireResult(expired=await engine.expire_reservations(limit=settings.sweep_batch_size))


@app.post("/api/inventory/items", response_model=StockItemRead, status_code=201)
async def add_stock(body: AddStockRequest, engine: InventoryReservationEngine = Depends(get_engine)):
    return await engine.add_stock(
        body.product_id,
        body.warehouse_id,
        body.quantity,
        variant_id=body.variant_id,
        reason=body.reason,
    )


@app.get("/api/inventory/products/{product_id}", response_model=ProductStock)
async def get_product_stock(
    product_id: str,
    variant_id: Optional[str] = None,
    engine: InventoryReservationEngine = Depends(get_engine),
):
    return await engine.get_product_stock(product_id, variant_id)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
