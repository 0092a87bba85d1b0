from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.orders.models import OrderStatus, PaymentStatus


class Item(BaseModel):
    product_id: str = Field(..., examples=["product-A"])
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0, examples=[2])
    unit_price: float = Field(..., ge=0.0, examples=[19.99])
    warehouse_id: Optional[str] = None


class OrderCreate(BaseModel):
    user_id: str = Field(..., examples=["customer-123"])
    items: List[Item] = Field(..., min_length=1)
    discount_code: Optional[str] = None
    user_full_name: Optional[str] = None
    user_email: Optional[str] = None
    user_phone: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: str = "Cancelled by customer"
    cancelled_by: str = "Customer"
    user_id: Optional[str] = None


class OrderItemRead(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    unit_price: float
    reservation_id: Optional[str] = None
    warehouse_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class StatusHistoryRead(BaseModel):
    status: OrderStatus
    previous_status: Optional[OrderStatus] = None
    note: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderRead(BaseModel):
    id: str
    order_number: str
    user_id: str
    user_full_name: Optional[str] = None
    user_email: Optional[str] = None
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: float
    discount_amount: float
    total_amount: float
    discount_id: Optional[str] = None
    discount_code: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    cancel_reason: Optional[str] = None
    items: List[OrderItemRead]
    history: List[StatusHistoryRead] = []
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentSession(BaseModel):
    transaction_id: str
    payment_url: Optional[str] = None
