import enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Integer, String
from sqlalchemy.orm import declarative_base, relationship

from fulfillment.database import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


class OrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"


class PaymentStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUND_REQUESTED = "REFUND_REQUESTED"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True, default=_uuid)
    order_number = Column(String, unique=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    user_full_name = Column(String, nullable=True)
    user_email = Column(String, nullable=True)
    user_phone = Column(String, nullable=True)
    user_avatar_url = Column(String, nullable=True)

    status = Column(Enum(OrderStatus), default=OrderStatus.CREATED, nullable=False)
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False)

    subtotal = Column(Float, nullable=False)
    discount_amount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False)
    discount_id = Column(String, nullable=True)
    discount_code = Column(String, nullable=True)

    payment_transaction_id = Column(String, nullable=True)
    payment_url = Column(String, nullable=True)
    cancel_reason = Column(String, nullable=True)
    cancelled_by = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    items = relationship("OrderItem", lazy="selectin", order_by="OrderItem.position")
    history = relationship("OrderStatusHistory", lazy="selectin", order_by="OrderStatusHistory.created_at")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String, nullable=False)
    variant_id = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    reservation_id = Column(String, nullable=True)
    warehouse_id = Column(String, nullable=True)


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    status = Column(Enum(OrderStatus), nullable=False)
    previous_status = Column(Enum(OrderStatus), nullable=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
