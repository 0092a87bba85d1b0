import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fulfillment.errors import (
    ConcurrencyConflict,
    FatalInconsistency,
    InsufficientStock,
    NotFoundOk,
    TransientInfraError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _body(exc: Exception) -> dict:
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientStock):
        body["shortfalls"] = [
            {
                "product_id": s.product_id,
                "variant_id": s.variant_id,
                "requested": s.requested,
                "available": s.available,
            }
            for s in exc.shortfalls
        ]
    return body


def install_error_handlers(app: FastAPI) -> None:
    """Map the saga error taxonomy onto HTTP status codes."""

    @app.exception_handler(ValidationError)
    async def business_conflict(request: Request, exc: ValidationError):
        return JSONResponse(status_code=409, content=_body(exc))

    @app.exception_handler(ConcurrencyConflict)
    async def concurrency_conflict(request: Request, exc: ConcurrencyConflict):
        return JSONResponse(status_code=409, content=_body(exc))

    @app.exception_handler(NotFoundOk)
    async def not_found(request: Request, exc: NotFoundOk):
        return JSONResponse(status_code=404, content=_body(exc))

    @app.exception_handler(TransientInfraError)
    async def unavailable(request: Request, exc: TransientInfraError):
        logger.warning("%s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content=_body(exc))

    @app.exception_handler(FatalInconsistency)
    async def inconsistent(request: Request, exc: FatalInconsistency):
        logger.error("%s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content=_body(exc))
