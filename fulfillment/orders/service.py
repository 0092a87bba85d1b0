"""
Order orchestrator.

Drives an order through the saga: reserve stock, wait for the payment outcome,
then commit or compensate. Every status change is a conditional UPDATE on the
status that was just read; a lost race re-runs the whole handler against fresh
state. The inventory and discount calls it makes are idempotent, so re-running
a handler, or a consumer replaying the same event later, converges on the same
result.
"""

import logging
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from fulfillment.database import utcnow
from fulfillment.errors import (
    ConcurrencyConflict,
    DiscountRejected,
    FatalInconsistency,
    InvalidStateTransition,
    NotFoundOk,
    TransientInfraError,
    UsageLimitExceeded,
    ValidationError,
)
from fulfillment.messaging import events
from fulfillment.messaging.events import (
    CancelledLine,
    OrderCancelled,
    OrderConfirmed,
    OrderLine,
    PaymentFailed,
    PaymentSuccess,
    RefundRequested,
    UserProfileUpdated,
)
from fulfillment.messaging.publisher import EventPublisher
from fulfillment.orders.clients import DiscountClient, InventoryClient, PaymentClient
from fulfillment.orders.models import Order, OrderItem, OrderStatus, OrderStatusHistory, PaymentStatus
from fulfillment.orders.schemas import OrderCreate, OrderRead
from fulfillment.orders.state import STOCK_COMMITTED, ensure_transition

logger = logging.getLogger(__name__)

CONFIRMED_OR_LATER = frozenset({OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def refund_event_id(order_id: str, transaction_id: Optional[str]) -> uuid.UUID:
    """Same order and transaction always give the same id, so repeated signals can be deduplicated."""
    return uuid.uuid5(uuid.NAMESPACE_URL, f"refund:{order_id}:{transaction_id or '-'}")


class OrderOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        inventory: InventoryClient,
        discounts: DiscountClient,
        payments: PaymentClient,
        publisher: EventPublisher,
        reservation_ttl: timedelta = timedelta(minutes=15),
        allow_cancel_after_shipment: bool = False,
        max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.inventory = inventory
        self.discounts = discounts
        self.payments = payments
        self.publisher = publisher
        self.reservation_ttl = reservation_ttl
        self.allow_cancel_after_shipment = allow_cancel_after_shipment
        self.max_attempts = max_attempts

    # Queries

    async def get_order(self, order_id: str) -> OrderRead:
        return OrderRead.model_validate(await self._load(order_id))

    async def _load(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            order = (await session.execute(select(Order).where(Order.id == order_id))).scalar_one_or_none()
        if order is None:
            raise NotFoundOk(f"Order {order_id} not found")
        return order

    # Commands

    async def create_order(self, request: OrderCreate) -> OrderRead:
        subtotal = round(sum(item.quantity * item.unit_price for item in request.items), 2)
        discount_id = None
        discount_amount = 0.0
        if request.discount_code:
            validation = await self.discounts.validate(request.discount_code, request.user_id, subtotal, request.items)
            if not validation.valid:
                raise DiscountRejected(validation.message or f"Discount code {request.discount_code} is not valid")
            discount_id = validation.discount.id
            discount_amount = validation.discount_amount

        now = utcnow()
        order = Order(
            id=str(uuid.uuid4()),
            order_number=generate_order_number(),
            user_id=request.user_id,
            user_full_name=request.user_full_name,
            user_email=request.user_email,
            user_phone=request.user_phone,
            status=OrderStatus.CREATED,
            payment_status=PaymentStatus.UNPAID,
            subtotal=subtotal,
            discount_amount=discount_amount,
            total_amount=round(max(0.0, subtotal - discount_amount), 2),
            discount_id=discount_id,
            discount_code=request.discount_code if discount_id else None,
            created_at=now,
            updated_at=now,
            items=[
                OrderItem(
                    position=position,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    warehouse_id=item.warehouse_id,
                )
                for position, item in enumerate(request.items)
            ],
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(order)
                session.add(
                    OrderStatusHistory(order_id=order.id, status=OrderStatus.CREATED, note="Order created", created_at=now)
                )
        logger.info("Order %s (%s) created for user %s", order.id, order.order_number, order.user_id)

        try:
            reserved = await self.inventory.reserve(
                order.id,
                order.items,
                ttl_minutes=self.reservation_ttl.total_seconds() / 60,
                order_number=order.order_number,
            )
        except ValidationError as e:
            logger.info("Order %s rejected: %s", order.id, e)
            await self._cancel_unreserved(order, str(e))
            return await self.get_order(order.id)
        except TransientInfraError as e:
            logger.warning("Reservation for order %s failed: %s", order.id, e)
            await self._cancel_unreserved(order, "Inventory unavailable")
            # a reservation may have landed before the failure; the consumer releases it
            await self._publish_cancelled(order, "Inventory unavailable", "System", stock_committed=False)
            return await self.get_order(order.id)

        async def store_reservations(session: AsyncSession) -> None:
            for item in order.items:
                match = next(
                    (
                        r
                        for r in reserved.reservations
                        if r.product_id == item.product_id
                        and r.variant_id == item.variant_id
                        and (item.warehouse_id is None or r.warehouse_id == item.warehouse_id)
                    ),
                    None,
                )
                if match is not None:
                    await session.execute(
                        update(OrderItem)
                        .where(OrderItem.id == item.id)
                        .values(reservation_id=match.id, warehouse_id=match.warehouse_id)
                        .execution_options(synchronize_session=False)
                    )

        try:
            await self._transition(
                order.id,
                OrderStatus.CREATED,
                OrderStatus.PENDING_PAYMENT,
                note=f"Stock reserved until {reserved.expires_at:%Y-%m-%d %H:%M:%S}",
                on_applied=store_reservations,
            )
        except ConcurrencyConflict:
            current = await self.get_order(order.id)
            logger.warning("Order %s became %s while reserving, releasing its stock", order.id, current.status.value)
            await self.inventory.release(order.id, f"Order {current.status.value.lower()} while reserving")
            return current

        try:
            payment = await self.payments.create_payment(order.id, order.order_number, order.total_amount, order.user_id)
        except (TransientInfraError, ValidationError, NotFoundOk) as e:
            logger.warning("Payment for order %s could not be initiated: %s", order.id, e)
        else:
            await self._update(
                order.id, payment_transaction_id=payment.transaction_id, payment_url=payment.payment_url
            )
        return await self.get_order(order.id)

    async def handle_payment_success(self, event: PaymentSuccess) -> None:
        await self._retrying(self._payment_success, event)

    async def _payment_success(self, event: PaymentSuccess) -> None:
        order = await self._load(event.order_id)
        amount = event.amount if event.amount is not None else order.total_amount

        if order.status in CONFIRMED_OR_LATER:
            logger.info("Order %s already %s, duplicate PaymentSuccess ignored", order.id, order.status.value)
            return
        if order.status != OrderStatus.PENDING_PAYMENT:
            await self._request_refund(
                order, event.transaction_id, amount, f"Payment received for {order.status.value} order"
            )
            raise InvalidStateTransition(order.id, order.status, OrderStatus.CONFIRMED)

        committed = await self.inventory.commit(order.id)
        if committed.not_found and not committed.already_committed:
            await self._payment_without_stock(order, event, amount)
            return

        if order.discount_id and order.discount_amount > 0:
            try:
                await self.discounts.record_usage(
                    order.discount_id,
                    order.user_id,
                    order.id,
                    order_amount=order.subtotal,
                    discount_amount=order.discount_amount,
                    order_number=order.order_number,
                )
            except UsageLimitExceeded as e:
                logger.warning("Order %s confirmed without recording discount usage: %s", order.id, e)

        now = utcnow()
        try:
            await self._transition(
                order.id,
                OrderStatus.PENDING_PAYMENT,
                OrderStatus.CONFIRMED,
                note="Payment received",
                payment_status=PaymentStatus.PAID,
                payment_transaction_id=event.transaction_id,
                paid_at=now,
                confirmed_at=now,
            )
        except ConcurrencyConflict:
            fresh = await self._load(order.id)
            if fresh.status != OrderStatus.CANCELLED:
                raise
            logger.warning("Order %s was cancelled while its payment was confirmed", order.id)
            await self.inventory.return_stock(
                order.id, order.items, reason="Order cancelled during payment", order_number=order.order_number
            )
            if order.discount_id:
                await self.discounts.rollback_usage(order.id)
            await self._request_refund(fresh, event.transaction_id, amount, "Order cancelled during payment")
            return

        await self.publisher.publish(
            events.ORDER_EXCHANGE,
            events.ORDER_CONFIRMED,
            OrderConfirmed(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                discount_id=order.discount_id,
                discount_code=order.discount_code,
                discount_amount=order.discount_amount,
                subtotal=order.subtotal,
                total_amount=order.total_amount,
                items=[
                    OrderLine(
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        reservation_id=item.reservation_id,
                        warehouse_id=item.warehouse_id,
                    )
                    for item in order.items
                ],
            ),
        )

    async def _payment_without_stock(self, order: Order, event: PaymentSuccess, amount: float) -> None:
        await self._transition(
            order.id,
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.PAYMENT_FAILED,
            note="Stock no longer reserved when payment arrived",
            payment_status=PaymentStatus.REFUND_REQUESTED,
            payment_transaction_id=event.transaction_id,
        )
        await self._request_refund(order, event.transaction_id, amount, "Reserved stock expired before payment")
        raise FatalInconsistency(
            f"Order {order.id} was paid ({event.transaction_id}) but its reservations are gone, refund requested"
        )

    async def handle_payment_failed(self, event: PaymentFailed) -> None:
        await self._retrying(self._payment_failed, event)

    async def _payment_failed(self, event: PaymentFailed) -> None:
        order = await self._load(event.order_id)
        if order.status in (OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED):
            logger.info("Order %s already %s, PaymentFailed ignored", order.id, order.status.value)
            return
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise InvalidStateTransition(order.id, order.status, OrderStatus.PAYMENT_FAILED)

        reason = event.error_message or event.failure_reason or "unknown"
        await self.inventory.release(order.id, f"Payment failed: {reason}")
        await self._transition(
            order.id,
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.PAYMENT_FAILED,
            note=f"Payment failed: {reason}",
            payment_status=PaymentStatus.FAILED,
            payment_transaction_id=event.transaction_id,
        )

    async def cancel_order(
        self, order_id: str, reason: str, cancelled_by: str = "Customer", user_id: Optional[str] = None
    ) -> OrderRead:
        return await self._retrying(self._cancel, order_id, reason, cancelled_by, user_id)

    async def _cancel(self, order_id: str, reason: str, cancelled_by: str, user_id: Optional[str]) -> OrderRead:
        order = await self._load(order_id)
        if user_id is not None and order.user_id != user_id:
            raise NotFoundOk(f"Order {order_id} not found")
        if order.status == OrderStatus.CANCELLED:
            return OrderRead.model_validate(order)
        ensure_transition(order.id, order.status, OrderStatus.CANCELLED, self.allow_cancel_after_shipment)

        stock_committed = order.status in STOCK_COMMITTED
        if stock_committed:
            await self.inventory.return_stock(
                order.id, order.items, reason=f"Order cancelled: {reason}", order_number=order.order_number
            )
        else:
            await self.inventory.release(order.id, f"Order cancelled: {reason}")
        if order.discount_id:
            rollback = await self.discounts.rollback_usage(order.id)
            if rollback.not_found:
                logger.info("Order %s had no discount usage to roll back", order.id)

        requires_refund = order.payment_status == PaymentStatus.PAID
        now = utcnow()
        await self._transition(
            order.id,
            order.status,
            OrderStatus.CANCELLED,
            note=reason,
            cancel_reason=reason,
            cancelled_by=cancelled_by,
            cancelled_at=now,
            payment_status=PaymentStatus.REFUND_REQUESTED if requires_refund else order.payment_status,
        )
        await self._publish_cancelled(order, reason, cancelled_by, stock_committed, requires_refund)
        if requires_refund:
            await self._publish_refund(order, order.payment_transaction_id, order.total_amount, f"Order cancelled: {reason}")
        return await self.get_order(order.id)

    async def ship_order(self, order_id: str) -> OrderRead:
        return await self._retrying(self._advance, order_id, OrderStatus.SHIPPED, "shipped_at")

    async def deliver_order(self, order_id: str) -> OrderRead:
        return await self._retrying(self._advance, order_id, OrderStatus.DELIVERED, "delivered_at")

    async def _advance(self, order_id: str, target: OrderStatus, timestamp_field: str) -> OrderRead:
        order = await self._load(order_id)
        if order.status == target:
            return OrderRead.model_validate(order)
        await self._transition(order.id, order.status, target, note=f"Order {target.value.lower()}", **{timestamp_field: utcnow()})
        return await self.get_order(order.id)

    async def sync_user_profile(self, event: UserProfileUpdated) -> int:
        values = {
            "user_full_name": event.full_name,
            "user_email": event.email,
            "user_phone": event.phone,
            "user_avatar_url": event.avatar_url,
        }
        values = {key: value for key, value in values.items() if value is not None}
        if not values:
            return 0
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Order)
                    .where(Order.user_id == event.user_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        logger.info("Synced profile of user %s onto %d order(s)", event.user_id, result.rowcount)
        return result.rowcount

    # Helpers

    async def _retrying(self, operation: Callable[..., Awaitable], *args):
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_random(0, 0.05),
                retry=retry_if_exception_type(ConcurrencyConflict),
                reraise=True,
            ):
                with attempt:
                    result = await operation(*args)
        except ConcurrencyConflict as e:
            raise ValidationError(f"{e}; gave up after {self.max_attempts} attempts") from e
        return result

    async def _transition(
        self,
        order_id: str,
        current: OrderStatus,
        target: OrderStatus,
        note: Optional[str] = None,
        on_applied: Optional[Callable[[AsyncSession], Awaitable[None]]] = None,
        system: bool = False,
        **values,
    ) -> None:
        ensure_transition(order_id, current, target, self.allow_cancel_after_shipment, system)
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == current)
                    .values(status=target, updated_at=now, **values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflict(f"Order {order_id} is no longer {current.value}")
                session.add(
                    OrderStatusHistory(
                        order_id=order_id, status=target, previous_status=current, note=note, created_at=now
                    )
                )
                if on_applied is not None:
                    await on_applied(session)
        logger.info("Order %s: %s -> %s", order_id, current.value, target.value)

    async def _update(self, order_id: str, **values) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(updated_at=utcnow(), **values)
                    .execution_options(synchronize_session=False)
                )

    async def _cancel_unreserved(self, order: Order, reason: str) -> None:
        await self._transition(
            order.id,
            OrderStatus.CREATED,
            OrderStatus.CANCELLED,
            note=reason,
            cancel_reason=reason,
            cancelled_by="System",
            cancelled_at=utcnow(),
            system=True,
        )

    async def _publish_cancelled(
        self,
        order: Order,
        reason: str,
        cancelled_by: str,
        stock_committed: bool,
        requires_refund: bool = False,
    ) -> None:
        await self.publisher.publish(
            events.ORDER_EXCHANGE,
            events.ORDER_CANCELLED,
            OrderCancelled(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                discount_id=order.discount_id,
                items=[
                    CancelledLine(
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        quantity=item.quantity,
                        reservation_id=item.reservation_id,
                        warehouse_id=item.warehouse_id,
                        stock_committed=stock_committed,
                    )
                    for item in order.items
                ],
                reason=reason,
                cancelled_by=cancelled_by,
                requires_refund=requires_refund,
                refund_amount=order.total_amount if requires_refund else 0.0,
            ),
        )

    async def _request_refund(self, order: Order, transaction_id: Optional[str], amount: float, reason: str) -> None:
        await self._update(order.id, payment_status=PaymentStatus.REFUND_REQUESTED)
        await self._publish_refund(order, transaction_id, amount, reason)

    async def _publish_refund(self, order: Order, transaction_id: Optional[str], amount: float, reason: str) -> None:
        await self.publisher.publish(
            events.ORDER_EXCHANGE,
            events.ORDER_REFUND_REQUESTED,
            RefundRequested(
                event_id=refund_event_id(order.id, transaction_id),
                order_id=order.id,
                order_number=order.order_number,
                transaction_id=transaction_id,
                amount=amount,
                reason=reason,
            ),
        )
        logger.warning("Refund of %.2f requested for order %s: %s", amount, order.id, reason)

