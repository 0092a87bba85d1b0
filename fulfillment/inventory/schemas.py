from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.inventory.models import ReservationStatus


class StockLine(BaseModel):
    product_id: str = Field(..., examples=["product-A"])
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0, examples=[2])
    warehouse_id: Optional[str] = None


class CheckStockRequest(BaseModel):
    items: List[StockLine]


class StockCheckLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    requested: int
    available: int
    ok: bool


class StockCheckResult(BaseModel):
    available: bool
    items: List[StockCheckLine]


class Shortfall(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    requested: int
    available: int


class ReserveRequest(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    items: List[StockLine] = Field(..., min_length=1)
    ttl_minutes: Optional[float] = Field(default=None, gt=0)


class ReservationRead(BaseModel):
    id: str
    order_id: str
    stock_item_id: str
    product_id: str
    variant_id: Optional[str] = None
    warehouse_id: str
    quantity: int
    status: ReservationStatus
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReserveResult(BaseModel):
    success: bool
    reservations: List[ReservationRead] = []
    expires_at: Optional[datetime] = None


class CommitRequest(BaseModel):
    order_id: str


class ReleaseRequest(BaseModel):
    order_id: str
    reason: str = "Order released"
    reservation_ids: Optional[List[str]] = None


class OperationResult(BaseModel):
    success: bool
    not_found: bool = False
    already_committed: bool = False
    affected: int = 0
    message: str = ""


class ReturnRequest(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    items: List[StockLine]
    reason: str = "Order cancelled"


class ReturnedLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    warehouse_id: str
    quantity: int


class ReturnResult(BaseModel):
    success: bool
    not_found: bool = False
    returned: List[ReturnedLine] = []
    skipped: List[StockLine] = []


class ExpireResult(BaseModel):
    expired: int


class AddStockRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    warehouse_id: str = Field(..., examples=["main"])
    quantity: int = Field(..., gt=0)
    reason: str = "Stock import"


class StockItemRead(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    warehouse_id: str
    quantity: int
    reserved_quantity: int
    available_quantity: int
    version: int

    model_config = ConfigDict(from_attributes=True)


class ProductStock(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    total_quantity: int
    total_reserved: int
    total_available: int
    warehouses: List[StockItemRead]
