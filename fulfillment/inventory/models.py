import enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base

from fulfillment.database import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"


class TransactionType(str, enum.Enum):
    IMPORT = "IMPORT"
    RESERVE = "RESERVE"
    COMMIT = "COMMIT"
    RELEASE = "RELEASE"
    EXPIRE = "EXPIRE"
    RETURN = "RETURN"


class StockItem(Base):
    __tablename__ = "stock_items"
    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", "warehouse_id", name="uq_stock_items_location"),
        CheckConstraint("reserved_quantity >= 0", name="ck_stock_items_reserved_non_negative"),
        CheckConstraint("quantity - reserved_quantity >= 0", name="ck_stock_items_available_non_negative"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    product_id = Column(String, index=True, nullable=False)
    variant_id = Column(String, nullable=True)
    warehouse_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity


class StockReservation(Base):
    __tablename__ = "stock_reservations"
    __table_args__ = (
        Index("ix_stock_reservations_status_expires_at", "status", "expires_at"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, index=True, nullable=False)
    order_number = Column(String, nullable=True)
    stock_item_id = Column(String, ForeignKey("stock_items.id"), nullable=False)
    product_id = Column(String, nullable=False)
    variant_id = Column(String, nullable=True)
    warehouse_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(Enum(ReservationStatus), default=ReservationStatus.PENDING, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    committed_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    release_reason = Column(String, nullable=True)


class InventoryTransaction(Base):
    """Append-only audit row; one per change of quantity or reserved_quantity."""

    __tablename__ = "inventory_transactions"

    id = Column(String, primary_key=True, default=_uuid)
    stock_item_id = Column(String, ForeignKey("stock_items.id"), index=True, nullable=False)
    type = Column(Enum(TransactionType), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, index=True, nullable=True)
    reference_code = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class ImmutableAuditRecord(Exception):
    pass


@event.listens_for(InventoryTransaction, "before_update")
def _reject_update(mapper, connection, target):
    raise ImmutableAuditRecord(f"Inventory transaction {target.id} cannot be modified")


@event.listens_for(InventoryTransaction, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ImmutableAuditRecord(f"Inventory transaction {target.id} cannot be deleted")
