"""
Outbound HTTP clients used by the order orchestrator.

Transport failures and 5xx answers are retried with exponential backoff and
end in TransientInfraError. 404, 409 and 422 answers are turned back into the
domain errors the peer raised.
"""

import logging
from typing import Iterable, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from fulfillment.discount.schemas import UsageResult, ValidateDiscountResult
from fulfillment.errors import (
    DiscountRejected,
    InsufficientStock,
    NotFoundOk,
    StockContention,
    TransientInfraError,
    UsageLimitExceeded,
    ValidationError,
)
from fulfillment.inventory.schemas import (
    OperationResult,
    ReserveResult,
    ReturnResult,
    Shortfall,
    StockCheckResult,
    StockLine,
)
from fulfillment.orders.schemas import PaymentSession

logger = logging.getLogger(__name__)

_CONFLICTS = {
    "StockContention": StockContention,
    "UsageLimitExceeded": UsageLimitExceeded,
    "DiscountRejected": DiscountRejected,
}


class ServerError(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"{response.request.method} {response.request.url} answered {response.status_code}")


def _error_from(response: httpx.Response) -> Exception:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = body.get("detail") or response.text
    if response.status_code == 404:
        return NotFoundOk(detail)
    name = body.get("error")
    if name == "InsufficientStock":
        return InsufficientStock([Shortfall.model_validate(s) for s in body.get("shortfalls", [])])
    return _CONFLICTS.get(name, ValidationError)(detail)


class ServiceClient:
    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
    ):
        self.base_url = base_url
        self.max_attempts = max_attempts
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.2, max=2),
                retry=retry_if_exception_type((httpx.TransportError, ServerError)),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.request(method, path, json=json)
                    if response.status_code >= 500:
                        raise ServerError(response)
        except (httpx.TransportError, ServerError) as e:
            logger.warning("%s %s%s failed after %d attempt(s): %s", method, self.base_url, path, self.max_attempts, e)
            raise TransientInfraError(f"{method} {path} failed: {e}") from e

        if response.status_code in (404, 409, 422):
            raise _error_from(response)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


def _lines(items: Iterable) -> List[dict]:
    return [
        StockLine(
            product_id=item.product_id,
            variant_id=item.variant_id,
            quantity=item.quantity,
            warehouse_id=getattr(item, "warehouse_id", None),
        ).model_dump()
        for item in items
    ]


class InventoryClient(ServiceClient):
    async def check_stock(self, items: Iterable) -> StockCheckResult:
        data = await self._request("POST", "/api/inventory/check", {"items": _lines(items)})
        return StockCheckResult.model_validate(data)

    async def reserve(
        self,
        order_id: str,
        items: Iterable,
        ttl_minutes: Optional[float] = None,
        order_number: Optional[str] = None,
    ) -> ReserveResult:
        payload = {
            "order_id": order_id,
            "order_number": order_number,
            "items": _lines(items),
            "ttl_minutes": ttl_minutes,
        }
        return ReserveResult.model_validate(await self._request("POST", "/api/inventory/reservations", payload))

    async def commit(self, order_id: str) -> OperationResult:
        data = await self._request("POST", "/api/inventory/reservations/commit", {"order_id": order_id})
        return OperationResult.model_validate(data)

    async def release(self, order_id: str, reason: str, reservation_ids: Optional[List[str]] = None) -> OperationResult:
        payload = {"order_id": order_id, "reason": reason, "reservation_ids": reservation_ids}
        return OperationResult.model_validate(await self._request("POST", "/api/inventory/reservations/release", payload))

    async def return_stock(
        self, order_id: str, items: Iterable, reason: str, order_number: Optional[str] = None
    ) -> ReturnResult:
        payload = {"order_id": order_id, "order_number": order_number, "items": _lines(items), "reason": reason}
        return ReturnResult.model_validate(await self._request("POST", "/api/inventory/returns", payload))


class DiscountClient(ServiceClient):
    async def validate(self, code: str, user_id: str, order_amount: float, items: Iterable) -> ValidateDiscountResult:
        payload = {
            "code": code,
            "user_id": user_id,
            "order_amount": order_amount,
            "items": [{"product_id": i.product_id, "quantity": i.quantity} for i in items],
        }
        return ValidateDiscountResult.model_validate(await self._request("POST", "/api/discounts/validate", payload))

    async def record_usage(
        self,
        discount_id: str,
        user_id: str,
        order_id: str,
        order_amount: float,
        discount_amount: float,
        order_number: Optional[str] = None,
    ) -> UsageResult:
        payload = {
            "discount_id": discount_id,
            "user_id": user_id,
            "order_id": order_id,
            "order_number": order_number,
            "order_amount": order_amount,
            "discount_amount": discount_amount,
        }
        return UsageResult.model_validate(await self._request("POST", "/api/discounts/usages", payload))

    async def rollback_usage(self, order_id: str) -> UsageResult:
        return UsageResult.model_validate(await self._request("POST", f"/api/discounts/usages/{order_id}/rollback"))


class PaymentClient(ServiceClient):
    async def create_payment(self, order_id: str, order_number: str, amount: float, user_id: str) -> PaymentSession:
        payload = {"order_id": order_id, "order_number": order_number, "amount": amount, "user_id": user_id}
        return PaymentSession.model_validate(await self._request("POST", "/api/payments", payload))
