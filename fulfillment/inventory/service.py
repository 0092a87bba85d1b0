"""
Inventory reservation engine.

Stock moves through two counters on each StockItem: ``reserved_quantity``
(held for unpaid orders) and ``quantity`` (on hand). Every change is a
conditional UPDATE so concurrent callers can never drive either counter, or
their difference, below zero, and every change appends an
InventoryTransaction row.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from fulfillment.database import utcnow
from fulfillment.errors import (
    ConcurrencyConflict,
    InsufficientStock,
    NotFoundOk,
    StockContention,
    ValidationError,
)
from fulfillment.inventory.models import (
    InventoryTransaction,
    ReservationStatus,
    StockItem,
    StockReservation,
    TransactionType,
)
from fulfillment.inventory.schemas import (
    OperationResult,
    ProductStock,
    ReservationRead,
    ReserveResult,
    ReturnedLine,
    ReturnResult,
    Shortfall,
    StockCheckLine,
    StockCheckResult,
    StockItemRead,
    StockLine,
)

logger = logging.getLogger(__name__)

ORDER_REFERENCE = "ORDER"


def _as_line(item) -> StockLine:
    if isinstance(item, StockLine):
        return item
    if isinstance(item, dict):
        return StockLine(
            product_id=item["product_id"],
            variant_id=item.get("variant_id"),
            quantity=item["quantity"],
            warehouse_id=item.get("warehouse_id"),
        )
    return StockLine(
        product_id=item.product_id,
        variant_id=getattr(item, "variant_id", None),
        quantity=item.quantity,
        warehouse_id=getattr(item, "warehouse_id", None),
    )


def merge_lines(items: Iterable) -> List[StockLine]:
    """Collapse lines that target the same product, variant and warehouse."""
    merged: Dict[tuple, StockLine] = {}
    for item in items:
        line = _as_line(item)
        key = (line.product_id, line.variant_id, line.warehouse_id)
        if key in merged:
            merged[key] = merged[key].model_copy(update={"quantity": merged[key].quantity + line.quantity})
        else:
            merged[key] = line
    return list(merged.values())


def _variant_matches(column, variant_id: Optional[str]):
    return column.is_(None) if variant_id is None else column == variant_id


def _locations(product_id: str, variant_id: Optional[str], warehouse_id: Optional[str] = None):
    query = select(StockItem).where(
        StockItem.product_id == product_id,
        _variant_matches(StockItem.variant_id, variant_id),
    )
    if warehouse_id is not None:
        query = query.where(StockItem.warehouse_id == warehouse_id)
    return query.order_by(StockItem.warehouse_id)


class InventoryReservationEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        default_ttl: timedelta = timedelta(minutes=15),
        reserve_max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.default_ttl = default_ttl
        self.reserve_max_attempts = reserve_max_attempts

    async def check_stock(self, items: Iterable) -> StockCheckResult:
        lines = merge_lines(items)
        results = []
        async with self.session_factory() as session:
            for line in lines:
                query = select(func.coalesce(func.sum(StockItem.quantity - StockItem.reserved_quantity), 0)).where(
                    StockItem.product_id == line.product_id,
                    _variant_matches(StockItem.variant_id, line.variant_id),
                )
                if line.warehouse_id is not None:
                    query = query.where(StockItem.warehouse_id == line.warehouse_id)
                available = int((await session.execute(query)).scalar_one())
                results.append(
                    StockCheckLine(
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        requested=line.quantity,
                        available=available,
                        ok=available >= line.quantity,
                    )
                )
        return StockCheckResult(available=all(r.ok for r in results), items=results)

    async def reserve(
        self,
        order_id: str,
        items: Iterable,
        ttl: Optional[timedelta] = None,
        order_number: Optional[str] = None,
    ) -> ReserveResult:
        lines = merge_lines(items)
        if not lines:
            raise ValidationError(f"Order {order_id}: nothing to reserve")
        if ttl is None:
            ttl = self.default_ttl

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.reserve_max_attempts),
                wait=wait_random(0, 0.05),
                retry=retry_if_exception_type(ConcurrencyConflict),
                reraise=True,
            ):
                with attempt:
                    result = await self._reserve_once(order_id, lines, ttl, order_number)
        except ConcurrencyConflict as e:
            logger.warning("Reservation for order %s gave up after %d attempts", order_id, self.reserve_max_attempts)
            raise StockContention(
                f"Order {order_id}: stock changed concurrently {self.reserve_max_attempts} times, try again"
            ) from e
        return result

    async def _reserve_once(
        self, order_id: str, lines: List[StockLine], ttl: timedelta, order_number: Optional[str]
    ) -> ReserveResult:
        async with self.session_factory() as session:
            async with session.begin():
                held = await self._held_reservations(session, order_id)
                if held:
                    logger.info("Order %s already holds %d reservation(s)", order_id, len(held))
                    return ReserveResult(
                        success=True,
                        reservations=[ReservationRead.model_validate(r) for r in held],
                        expires_at=min(r.expires_at for r in held),
                    )

                # Pick one location per line; lines may share a location.
                plan = []
                planned: Dict[str, int] = defaultdict(int)
                shortfalls = []
                for line in lines:
                    candidates = (
                        await session.execute(_locations(line.product_id, line.variant_id, line.warehouse_id))
                    ).scalars().all()
                    chosen = next(
                        (c for c in candidates if c.available_quantity - planned[c.id] >= line.quantity),
                        None,
                    )
                    if chosen is None:
                        shortfalls.append(
                            Shortfall(
                                product_id=line.product_id,
                                variant_id=line.variant_id,
                                requested=line.quantity,
                                available=max(0, sum(c.available_quantity - planned[c.id] for c in candidates)),
                            )
                        )
                        continue
                    planned[chosen.id] += line.quantity
                    plan.append((line, chosen))

                if shortfalls:
                    raise InsufficientStock(shortfalls)

                now = utcnow()
                expires_at = now + ttl
                reservations = []
                for line, item in plan:
                    # availability is re-checked in the UPDATE itself
                    row = (
                        await session.execute(
                            update(StockItem)
                            .where(
                                StockItem.id == item.id,
                                StockItem.quantity - StockItem.reserved_quantity >= line.quantity,
                            )
                            .values(
                                reserved_quantity=StockItem.reserved_quantity + line.quantity,
                                version=StockItem.version + 1,
                                updated_at=now,
                            )
                            .returning(StockItem.reserved_quantity)
                            .execution_options(synchronize_session=False)
                        )
                    ).one_or_none()
                    if row is None:
                        raise ConcurrencyConflict(f"Stock item {item.id} ran short while reserving order {order_id}")
                    reserved_before = row.reserved_quantity - line.quantity

                    reservation = StockReservation(
                        order_id=order_id,
                        order_number=order_number,
                        stock_item_id=item.id,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        warehouse_id=item.warehouse_id,
                        quantity=line.quantity,
                        status=ReservationStatus.PENDING,
                        expires_at=expires_at,
                        created_at=now,
                    )
                    session.add(reservation)
                    session.add(
                        InventoryTransaction(
                            stock_item_id=item.id,
                            type=TransactionType.RESERVE,
                            quantity_change=line.quantity,
                            quantity_before=reserved_before,
                            quantity_after=reserved_before + line.quantity,
                            reference_type=ORDER_REFERENCE,
                            reference_id=order_id,
                            reference_code=order_number,
                            reason="Order reservation",
                            created_at=now,
                        )
                    )
                    reservations.append(reservation)
                await session.flush()

        logger.info("Reserved %d line(s) for order %s until %s", len(reservations), order_id, expires_at)
        return ReserveResult(
            success=True,
            reservations=[ReservationRead.model_validate(r) for r in reservations],
            expires_at=expires_at,
        )

    async def commit(self, order_id: str) -> OperationResult:
        async with self.session_factory() as session:
            async with session.begin():
                pending = await self._reservations(session, order_id, ReservationStatus.PENDING)
                now = utcnow()
                committed = 0
                for reservation in pending:
                    if not await self._transition(session, reservation, ReservationStatus.COMMITTED, now):
                        continue
                    row = (
                        await session.execute(
                            update(StockItem)
                            .where(StockItem.id == reservation.stock_item_id)
                            .values(
                                quantity=StockItem.quantity - reservation.quantity,
                                reserved_quantity=StockItem.reserved_quantity - reservation.quantity,
                                version=StockItem.version + 1,
                                updated_at=now,
                            )
                            .returning(StockItem.quantity)
                            .execution_options(synchronize_session=False)
                        )
                    ).one()
                    session.add(
                        InventoryTransaction(
                            stock_item_id=reservation.stock_item_id,
                            type=TransactionType.COMMIT,
                            quantity_change=-reservation.quantity,
                            quantity_before=row.quantity + reservation.quantity,
                            quantity_after=row.quantity,
                            reference_type=ORDER_REFERENCE,
                            reference_id=order_id,
                            reference_code=reservation.order_number,
                            reason="Order confirmed",
                            created_at=now,
                        )
                    )
                    committed += 1

        if committed == 0:
            logger.info("Commit for order %s found no pending reservations", order_id)
            return OperationResult(
                success=False,
                not_found=True,
                already_committed=await self._has_committed(order_id),
                message=f"No pending reservations for order {order_id}",
            )
        logger.info("Committed %d reservation(s) for order %s", committed, order_id)
        return OperationResult(success=True, affected=committed)

    async def release(
        self, order_id: str, reason: str = "Order released", reservation_ids: Optional[List[str]] = None
    ) -> OperationResult:
        async with self.session_factory() as session:
            async with session.begin():
                pending = await self._reservations(session, order_id, ReservationStatus.PENDING)
                if reservation_ids is not None:
                    wanted = set(reservation_ids)
                    pending = [r for r in pending if r.id in wanted]
                now = utcnow()
                released = 0
                for reservation in pending:
                    if await self._give_back(session, reservation, ReservationStatus.RELEASED, reason, now):
                        released += 1

        if released == 0:
            logger.info("Release for order %s found no pending reservations", order_id)
            return OperationResult(success=False, not_found=True, message=f"No pending reservations for order {order_id}")
        logger.info("Released %d reservation(s) for order %s: %s", released, order_id, reason)
        return OperationResult(success=True, affected=released)

    async def expire_reservations(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                overdue = (
                    await session.execute(
                        select(StockReservation)
                        .where(
                            StockReservation.status == ReservationStatus.PENDING,
                            StockReservation.expires_at < now,
                        )
                        .order_by(StockReservation.expires_at)
                        .limit(limit)
                    )
                ).scalars().all()
                expired = 0
                for reservation in overdue:
                    if await self._give_back(session, reservation, ReservationStatus.EXPIRED, "Reservation expired", now):
                        expired += 1

        if expired:
            logger.info("Expired %d reservation(s)", expired)
        return expired

    async def return_stock(
        self,
        order_id: str,
        items: Iterable,
        reason: str = "Order cancelled",
        order_number: Optional[str] = None,
    ) -> ReturnResult:
        lines = merge_lines(items)
        async with self.session_factory() as session:
            async with session.begin():
                committed = (
                    await session.execute(
                        select(StockReservation)
                        .where(
                            StockReservation.order_id == order_id,
                            StockReservation.status == ReservationStatus.COMMITTED,
                        )
                        .order_by(StockReservation.created_at)
                        .with_for_update()
                    )
                ).scalars().all()
                if not committed:
                    logger.info("Return for order %s found no committed stock", order_id)
                    return ReturnResult(success=False, not_found=True, skipped=lines)

                # Committed quantity per stock item still eligible for a return.
                remaining_by_item: Dict[str, int] = defaultdict(int)
                for reservation in committed:
                    remaining_by_item[reservation.stock_item_id] += reservation.quantity

                now = utcnow()
                returned = []
                skipped = []
                for line in lines:
                    wanted = line.quantity
                    matches = [
                        r
                        for r in committed
                        if r.product_id == line.product_id
                        and r.variant_id == line.variant_id
                        and (line.warehouse_id is None or r.warehouse_id == line.warehouse_id)
                    ]
                    for reservation in matches:
                        if wanted <= 0:
                            break
                        stock_item_id = reservation.stock_item_id
                        if remaining_by_item[stock_item_id] <= 0:
                            continue
                        if await self._already_returned(session, order_id, stock_item_id):
                            remaining_by_item[stock_item_id] = 0
                            continue

                        quantity = min(wanted, remaining_by_item[stock_item_id])
                        row = (
                            await session.execute(
                                update(StockItem)
                                .where(StockItem.id == stock_item_id)
                                .values(
                                    quantity=StockItem.quantity + quantity,
                                    version=StockItem.version + 1,
                                    updated_at=now,
                                )
                                .returning(StockItem.quantity)
                                .execution_options(synchronize_session=False)
                            )
                        ).one()
                        session.add(
                            InventoryTransaction(
                                stock_item_id=stock_item_id,
                                type=TransactionType.RETURN,
                                quantity_change=quantity,
                                quantity_before=row.quantity - quantity,
                                quantity_after=row.quantity,
                                reference_type=ORDER_REFERENCE,
                                reference_id=order_id,
                                reference_code=order_number or reservation.order_number,
                                reason=reason,
                                created_at=now,
                            )
                        )
                        # one RETURN row per (order, stock item) is the idempotency key
                        await session.flush()
                        remaining_by_item[stock_item_id] = 0
                        wanted -= quantity
                        returned.append(
                            ReturnedLine(
                                product_id=reservation.product_id,
                                variant_id=reservation.variant_id,
                                warehouse_id=reservation.warehouse_id,
                                quantity=quantity,
                            )
                        )
                    if wanted == line.quantity:
                        skipped.append(line)

        logger.info("Returned %d line(s) to stock for order %s", len(returned), order_id)
        return ReturnResult(success=bool(returned), returned=returned, skipped=skipped)

    async def add_stock(
        self,
        product_id: str,
        warehouse_id: str,
        quantity: int,
        variant_id: Optional[str] = None,
        reason: str = "Stock import",
    ) -> StockItemRead:
        if quantity <= 0:
            raise ValidationError("Imported quantity must be positive")
        async with self.session_factory() as session:
            async with session.begin():
                item = (
                    await session.execute(_locations(product_id, variant_id, warehouse_id).with_for_update())
                ).scalar_one_or_none()
                now = utcnow()
                if item is None:
                    item = StockItem(
                        product_id=product_id,
                        variant_id=variant_id,
                        warehouse_id=warehouse_id,
                        quantity=quantity,
                        reserved_quantity=0,
                        version=1,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(item)
                    await session.flush()
                    before = 0
                else:
                    before = item.quantity
                    await session.execute(
                        update(StockItem)
                        .where(StockItem.id == item.id)
                        .values(
                            quantity=StockItem.quantity + quantity,
                            version=StockItem.version + 1,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await session.refresh(item)
                session.add(
                    InventoryTransaction(
                        stock_item_id=item.id,
                        type=TransactionType.IMPORT,
                        quantity_change=quantity,
                        quantity_before=before,
                        quantity_after=before + quantity,
                        reference_type="IMPORT",
                        reason=reason,
                        created_at=now,
                    )
                )
            read = StockItemRead.model_validate(item)

        logger.info("Imported %d of %s into %s", quantity, product_id, warehouse_id)
        return read

    async def get_product_stock(self, product_id: str, variant_id: Optional[str] = None) -> ProductStock:
        async with self.session_factory() as session:
            items = (await session.execute(_locations(product_id, variant_id))).scalars().all()
        if not items:
            raise NotFoundOk(f"No stock recorded for product {product_id}")
        warehouses = [StockItemRead.model_validate(i) for i in items]
        return ProductStock(
            product_id=product_id,
            variant_id=variant_id,
            total_quantity=sum(w.quantity for w in warehouses),
            total_reserved=sum(w.reserved_quantity for w in warehouses),
            total_available=sum(w.available_quantity for w in warehouses),
            warehouses=warehouses,
        )

    async def get_reservations(self, order_id: str) -> List[ReservationRead]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(StockReservation)
                    .where(StockReservation.order_id == order_id)
                    .order_by(StockReservation.created_at)
                )
            ).scalars().all()
        return [ReservationRead.model_validate(r) for r in rows]

    @staticmethod
    async def _reservations(session: AsyncSession, order_id: str, status: ReservationStatus) -> List[StockReservation]:
        result = await session.execute(
            select(StockReservation)
            .where(StockReservation.order_id == order_id, StockReservation.status == status)
            .order_by(StockReservation.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _held_reservations(session: AsyncSession, order_id: str) -> List[StockReservation]:
        result = await session.execute(
            select(StockReservation).where(
                StockReservation.order_id == order_id,
                StockReservation.status.in_([ReservationStatus.PENDING, ReservationStatus.COMMITTED]),
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def _transition(
        session: AsyncSession,
        reservation: StockReservation,
        target: ReservationStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        values = {"status": target}
        if target == ReservationStatus.COMMITTED:
            values["committed_at"] = now
        else:
            values["released_at"] = now
            values["release_reason"] = reason
        result = await session.execute(
            update(StockReservation)
            .where(StockReservation.id == reservation.id, StockReservation.status == ReservationStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _give_back(
        self,
        session: AsyncSession,
        reservation: StockReservation,
        target: ReservationStatus,
        reason: str,
        now: datetime,
    ) -> bool:
        """PENDING -> RELEASED/EXPIRED; returns the held quantity to availability."""
        if not await self._transition(session, reservation, target, now, reason):
            return False
        row = (
            await session.execute(
                update(StockItem)
                .where(StockItem.id == reservation.stock_item_id)
                .values(
                    reserved_quantity=StockItem.reserved_quantity - reservation.quantity,
                    version=StockItem.version + 1,
                    updated_at=now,
                )
                .returning(StockItem.reserved_quantity)
                .execution_options(synchronize_session=False)
            )
        ).one()
        session.add(
            InventoryTransaction(
                stock_item_id=reservation.stock_item_id,
                type=TransactionType.EXPIRE if target == ReservationStatus.EXPIRED else TransactionType.RELEASE,
                quantity_change=-reservation.quantity,
                quantity_before=row.reserved_quantity + reservation.quantity,
                quantity_after=row.reserved_quantity,
                reference_type=ORDER_REFERENCE,
                reference_id=reservation.order_id,
                reference_code=reservation.order_number,
                reason=reason,
                created_at=now,
            )
        )
        return True

    async def _has_committed(self, order_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    exists().where(
                        StockReservation.order_id == order_id,
                        StockReservation.status == ReservationStatus.COMMITTED,
                    )
                )
            )
            return bool(result.scalar())

    @staticmethod
    async def _already_returned(session: AsyncSession, order_id: str, stock_item_id: str) -> bool:
        result = await session.execute(
            select(
                exists().where(
                    InventoryTransaction.type == TransactionType.RETURN,
                    InventoryTransaction.reference_id == order_id,
                    InventoryTransaction.stock_item_id == stock_item_id,
                )
            )
        )
        return bool(result.scalar())
