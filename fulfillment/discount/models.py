import enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import declarative_base

from fulfillment.database import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


class DiscountType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"


class UsageStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ROLLED_BACK = "ROLLED_BACK"


class Discount(Base):
    __tablename__ = "discounts"

    id = Column(String, primary_key=True, default=_uuid)
    code = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    type = Column(Enum(DiscountType), nullable=False)
    value = Column(Float, nullable=False)
    max_discount_amount = Column(Float, nullable=True)
    min_order_amount = Column(Float, nullable=False, default=0.0)
    min_quantity = Column(Integer, nullable=False, default=0)
    usage_limit = Column(Integer, nullable=True)
    usage_limit_per_user = Column(Integer, nullable=False, default=1)
    usage_count = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def calculate(self, order_amount: float) -> float:
        if self.type == DiscountType.PERCENTAGE:
            amount = order_amount * self.value / 100
        else:
            amount = self.value
        if self.max_discount_amount is not None:
            amount = min(amount, self.max_discount_amount)
        return round(max(0.0, min(amount, order_amount)), 2)


class DiscountUsage(Base):
    __tablename__ = "discount_usages"
    __table_args__ = (
        Index("ix_discount_usages_discount_user_status", "discount_id", "user_id", "status"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    discount_id = Column(String, ForeignKey("discounts.id"), nullable=False)
    user_id = Column(String, index=True, nullable=False)
    order_id = Column(String, unique=True, nullable=False)
    order_number = Column(String, nullable=True)
    order_amount = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    status = Column(Enum(UsageStatus), default=UsageStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    rolled_back_at = Column(DateTime, nullable=True)
