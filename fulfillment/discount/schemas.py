from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.discount.models import DiscountType, UsageStatus


class DiscountItem(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


class ValidateDiscountRequest(BaseModel):
    code: str
    user_id: str
    order_amount: float = Field(..., ge=0)
    items: List[DiscountItem] = []


class DiscountRead(BaseModel):
    id: str
    code: str
    name: str
    type: DiscountType
    value: float
    max_discount_amount: Optional[float] = None
    min_order_amount: float
    min_quantity: int
    usage_limit: Optional[int] = None
    usage_limit_per_user: int
    usage_count: int
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class ValidateDiscountResult(BaseModel):
    valid: bool
    discount: Optional[DiscountRead] = None
    discount_amount: float = 0.0
    message: str = ""


class RecordUsageRequest(BaseModel):
    discount_id: str
    user_id: str
    order_id: str
    order_number: Optional[str] = None
    order_amount: float = 0.0
    discount_amount: float = 0.0


class UsageRead(BaseModel):
    id: str
    discount_id: str
    user_id: str
    order_id: str
    order_number: Optional[str] = None
    order_amount: float
    discount_amount: float
    status: UsageStatus
    created_at: datetime
    rolled_back_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UsageResult(BaseModel):
    success: bool
    not_found: bool = False
    usage: Optional[UsageRead] = None
    message: str = ""


class CreateDiscountRequest(BaseModel):
    code: str = Field(..., examples=["WELCOME10"])
    name: str
    type: DiscountType
    value: float = Field(..., gt=0)
    max_discount_amount: Optional[float] = None
    min_order_amount: float = 0.0
    min_quantity: int = 0
    usage_limit: Optional[int] = Field(default=None, gt=0)
    usage_limit_per_user: int = Field(default=1, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
