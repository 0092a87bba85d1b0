import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request

from fulfillment.config import Settings
from fulfillment.database import Database
from fulfillment.discount.consumer import build_consumers
from fulfillment.discount.models import Base
from fulfillment.discount.schemas import (
    CreateDiscountRequest,
    DiscountRead,
    RecordUsageRequest,
    UsageResult,
    ValidateDiscountRequest,
    ValidateDiscountResult,
)
from fulfillment.discount.service import DiscountUsageTracker
from fulfillment.errors import TransientInfraError
from fulfillment.http import install_error_handlers
from fulfillment.log import configure_logging
from fulfillment.messaging.connection import BrokerConnection

logger = logging.getLogger(__name__)

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    database = Database(settings.discount_database_url)
    await database.create_all(Base.metadata)
    tracker = DiscountUsageTracker(database.session_factory)
    app.state.tracker = tracker

    broker = BrokerConnection(settings.rabbitmq_url, connect_attempts=settings.broker_connect_attempts)
    consumers = build_consumers(broker, tracker, settings)
    try:
        for consumer in consumers:
            await consumer.start()
    except TransientInfraError as e:
        logger.error("Discount consumers not started: %s", e)
        consumers = []

    yield

    for consumer in consumers:
        await consumer.stop()
    await broker.close()
    await database.dispose()


app = FastAPI(title="Discount Service", lifespan=lifespan)
install_error_handlers(app)


def get_tracker(request: Request) -> DiscountUsageTracker:
    return request.app.state.tracker


@app.post("/api/discounts/validate", response_model=ValidateDiscountResult)
async def validate_discount(body: ValidateDiscountRequest, tracker: DiscountUsageTracker = Depends(get_tracker)):
    return await tracker.validate_discount(body.code, body.order_amount, body.items, body.user_id)


@app.post("/api/discounts/usages", response_model=UsageResult)
async def record_usage(body: RecordUsageRequest, tracker: DiscountUsageTracker = Depends(get_tracker)):
    return await tracker.record_usage(
        body.discount_id,
        body.user_id,
        body.order_id,
        order_amount=body.order_amount,
        discount_amount=body.discount_amount,
        order_number=body.order_number,
    )


@app.post("/api/discounts/usages/{order_id}/rollback", response_model=UsageResult)
async def rollback_usage(order_id: str, tracker: DiscountUsageTracker = Depends(get_tracker)):
    return await tracker.rollback_usage(order_id)


@app.post("/api/discounts", response_model=DiscountRead, status_code=201)
async def create_discount(body: CreateDiscountRequest, tracker: DiscountUsageTracker = Depends(get_tracker)):
    return await tracker.add_discount(body)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
