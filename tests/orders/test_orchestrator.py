import pytest
from sqlalchemy import update

from fulfillment.database import utcnow
from fulfillment.discount.models import DiscountType
from fulfillment.discount.schemas import DiscountRead, UsageResult, ValidateDiscountResult
from fulfillment.errors import (
    DiscountRejected,
    FatalInconsistency,
    InsufficientStock,
    InvalidStateTransition,
    NotFoundOk,
    TransientInfraError,
    UsageLimitExceeded,
)
from fulfillment.inventory.schemas import OperationResult, Shortfall
from fulfillment.messaging import events
from fulfillment.messaging.events import (
    OrderCancelled,
    OrderConfirmed,
    PaymentFailed,
    PaymentSuccess,
    RefundRequested,
    UserProfileUpdated,
)
from fulfillment.orders.models import Order, OrderStatus, PaymentStatus
from fulfillment.orders.service import OrderOrchestrator, refund_event_id


def published(publisher):
    return [call.args[2] for call in publisher.publish.call_args_list]


def discount_validation(amount=4.0):
    now = utcnow()
    return ValidateDiscountResult(
        valid=True,
        discount_amount=amount,
        discount=DiscountRead(
            id="disc-1",
            code="SAVE10",
            name="Ten percent off",
            type=DiscountType.PERCENTAGE,
            value=10,
            min_order_amount=0,
            min_quantity=0,
            usage_limit_per_user=1,
            usage_count=0,
            start_date=now,
            is_active=True,
        ),
    )


async def paid_order(orchestrator, order_request, transaction_id="txn-1"):
    order = await orchestrator.create_order(order_request)
    await orchestrator.handle_payment_success(PaymentSuccess(order_id=order.id, transaction_id=transaction_id))
    return await orchestrator.get_order(order.id)


@pytest.mark.asyncio
async def test_create_order_reserves_stock_and_awaits_payment(orchestrator, order_request, inventory, payments, publisher):
    order = await orchestrator.create_order(order_request)

    assert order.status == OrderStatus.PENDING_PAYMENT
    assert order.payment_status == PaymentStatus.UNPAID
    assert order.order_number.startswith("ORD-")
    assert (order.subtotal, order.discount_amount, order.total_amount) == (60.0, 0.0, 60.0)
    assert [h.status for h in order.history] == [OrderStatus.CREATED, OrderStatus.PENDING_PAYMENT]
    assert all(item.reservation_id and item.warehouse_id == "main" for item in order.items)
    assert order.payment_transaction_id == "txn-1"
    assert order.payment_url == "https://pay.example.com/txn-1"

    args, kwargs = inventory.reserve.call_args
    assert args[0] == order.id
    assert kwargs["ttl_minutes"] == 15
    assert kwargs["order_number"] == order.order_number
    payments.create_payment.assert_awaited_once_with(order.id, order.order_number, 60.0, "user-1")
    publisher.publish.assert_not_called()


@pytest.mark.asyncio
async def test_create_order_applies_validated_discount(orchestrator, order_request, discounts):
    order_request.discount_code = "SAVE10"
    discounts.validate.return_value = discount_validation(6.0)

    order = await orchestrator.create_order(order_request)

    assert (order.discount_id, order.discount_code) == ("disc-1", "SAVE10")
    assert order.total_amount == 54.0
    discounts.validate.assert_awaited_once()


@pytest.mark.asyncio
async def test_rejected_discount_code_fails_the_request(orchestrator, order_request, discounts, inventory):
    order_request.discount_code = "NOPE"
    discounts.validate.return_value = ValidateDiscountResult(valid=False, message="Discount code does not exist")

    with pytest.raises(DiscountRejected):
        await orchestrator.create_order(order_request)

    inventory.reserve.assert_not_called()


@pytest.mark.asyncio
async def test_insufficient_stock_cancels_order(orchestrator, order_request, inventory, payments, publisher):
    inventory.reserve.side_effect = InsufficientStock(
        [Shortfall(product_id="product-A", requested=2, available=1)]
    )

    order = await orchestrator.create_order(order_request)

    assert order.status == OrderStatus.CANCELLED
    assert "Insufficient stock" in order.cancel_reason
    assert [h.status for h in order.history] == [OrderStatus.CREATED, OrderStatus.CANCELLED]
    payments.create_payment.assert_not_called()
    publisher.publish.assert_not_called()


@pytest.mark.asyncio
async def test_unreachable_inventory_cancels_and_announces(orchestrator, order_request, inventory, publisher):
    inventory.reserve.side_effect = TransientInfraError("inventory down")

    order = await orchestrator.create_order(order_request)

    assert order.status == OrderStatus.CANCELLED
    (cancelled,) = published(publisher)
    assert isinstance(cancelled, OrderCancelled)
    assert cancelled.cancelled_by == "System"
    assert not any(line.stock_committed for line in cancelled.items)


@pytest.mark.asyncio
async def test_payment_session_failure_leaves_order_pending(orchestrator, order_request, payments):
    payments.create_payment.side_effect = TransientInfraError("payment down")

    order = await orchestrator.create_order(order_request)

    assert order.status == OrderStatus.PENDING_PAYMENT
    assert order.payment_transaction_id is None


@pytest.mark.asyncio
async def test_payment_success_confirms_and_publishes(orchestrator, order_request, inventory, publisher):
    order = await paid_order(orchestrator, order_request)

    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_status == PaymentStatus.PAID
    inventory.commit.assert_awaited_once_with(order.id)
    (event,) = published(publisher)
    assert isinstance(event, OrderConfirmed)
    assert publisher.publish.call_args.args[:2] == (events.ORDER_EXCHANGE, events.ORDER_CONFIRMED)
    assert event.total_amount == 60.0
    assert [(line.product_id, line.quantity) for line in event.items] == [("product-A", 2), ("product-B", 1)]


@pytest.mark.asyncio
async def test_duplicate_payment_success_is_a_no_op(orchestrator, order_request, inventory, publisher):
    order = await paid_order(orchestrator, order_request)

    await orchestrator.handle_payment_success(PaymentSuccess(order_id=order.id, transaction_id="txn-1"))

    assert inventory.commit.await_count == 1
    assert len(published(publisher)) == 1
    assert (await orchestrator.get_order(order.id)).status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_redelivered_payment_after_commit_still_confirms(orchestrator, order_request, inventory):
    inventory.commit.return_value = OperationResult(success=False, not_found=True, already_committed=True)

    order = await paid_order(orchestrator, order_request)

    assert order.status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_payment_after_reservation_expired_requests_refund(orchestrator, order_request, inventory, publisher):
    inventory.commit.return_value = OperationResult(success=False, not_found=True)
    order = await orchestrator.create_order(order_request)

    with pytest.raises(FatalInconsistency):
        await orchestrator.handle_payment_success(PaymentSuccess(order_id=order.id, transaction_id="txn-9"))

    order = await orchestrator.get_order(order.id)
    assert order.status == OrderStatus.PAYMENT_FAILED
    assert order.payment_status == PaymentStatus.REFUND_REQUESTED
    (refund,) = published(publisher)
    assert isinstance(refund, RefundRequested)
    assert refund.event_id == refund_event_id(order.id, "txn-9")
    assert (refund.transaction_id, refund.amount) == ("txn-9", 60.0)


@pytest.mark.asyncio
async def test_discount_usage_recorded_on_confirmation(orchestrator, order_request, discounts):
    order_request.discount_code = "SAVE10"
    discounts.validate.return_value = discount_validation(6.0)

    order = await paid_order(orchestrator, order_request)

    discounts.record_usage.assert_awaited_once_with(
        "disc-1", "user-1", order.id, order_amount=60.0, discount_amount=6.0, order_number=order.order_number
    )


@pytest.mark.asyncio
async def test_usage_limit_does_not_block_confirmation(orchestrator, order_request, discounts):
    order_request.discount_code = "SAVE10"
    discounts.validate.return_value = discount_validation(6.0)
    discounts.record_usage.side_effect = UsageLimitExceeded("limit reached")

    order = await paid_order(orchestrator, order_request)

    assert order.status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_cancel_racing_payment_returns_stock_and_refunds(
    orchestrator, order_request, inventory, discounts, publisher, database
):
    order_request.discount_code = "SAVE10"
    discounts.validate.return_value = discount_validation(6.0)
    order = await orchestrator.create_order(order_request)
    calls = []
    discounts.record_usage.side_effect = lambda *args, **kwargs: calls.append("record") or UsageResult(success=True)
    discounts.rollback_usage.side_effect = lambda order_id: calls.append("rollback") or UsageResult(success=True)

    async def commit_while_cancelled(order_id):
        async with database.session() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(status=OrderStatus.CANCELLED)
                    .execution_options(synchronize_session=False)
                )
        return OperationResult(success=True, affected=2)

    inventory.commit.side_effect = commit_while_cancelled

    await orchestrator.handle_payment_success(PaymentSuccess(order_id=order.id, transaction_id="txn-1"))

    inventory.return_stock.assert_awaited_once()
    assert calls == ["record", "rollback"]
    discounts.rollback_usage.assert_awaited_once_with(order.id)
    (refund,) = published(publisher)
    assert isinstance(refund, RefundRequested)
    final = await orchestrator.get_order(order.id)
    assert final.status == OrderStatus.CANCELLED
    assert final.payment_status == PaymentStatus.REFUND_REQUESTED


@pytest.mark.asyncio
async def test_payment_for_cancelled_order_is_refunded(orchestrator, order_request, publisher):
    order = await orchestrator.cancel_order((await orchestrator.create_order(order_request)).id, "changed mind")
    publisher.publish.reset_mock()

    with pytest.raises(InvalidStateTransition):
        await orchestrator.handle_payment_success(PaymentSuccess(order_id=order.id, transaction_id="txn-2"))

    (refund,) = published(publisher)
    assert refund.transaction_id == "txn-2"


@pytest.mark.asyncio
async def test_payment_failed_releases_stock(orchestrator, order_request, inventory):
    order = await orchestrator.create_order(order_request)

    await orchestrator.handle_payment_failed(PaymentFailed(order_id=order.id, error_message="card declined"))
    await orchestrator.handle_payment_failed(PaymentFailed(order_id=order.id, error_message="card declined"))

    inventory.release.assert_awaited_once_with(order.id, "Payment failed: card declined")
    failed = await orchestrator.get_order(order.id)
    assert (failed.status, failed.payment_status) == (OrderStatus.PAYMENT_FAILED, PaymentStatus.FAILED)


@pytest.mark.asyncio
async def test_payment_event_for_unknown_order_is_not_found(orchestrator):
    with pytest.raises(NotFoundOk):
        await orchestrator.handle_payment_success(PaymentSuccess(order_id="missing", transaction_id="txn-1"))


@pytest.mark.asyncio
async def test_cancel_before_payment_releases_and_rolls_back(
    orchestrator, order_request, inventory, discounts, publisher
):
    order_request.discount_code = "SAVE10"
    discounts.validate.return_value = discount_validation(6.0)
    discounts.rollback_usage.return_value = UsageResult(success=False, not_found=True)
    order = await orchestrator.create_order(order_request)

    cancelled = await orchestrator.cancel_order(order.id, "changed mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancel_reason == "changed mind"
    inventory.release.assert_awaited_once_with(order.id, "Order cancelled: changed mind")
    inventory.return_stock.assert_not_called()
    discounts.rollback_usage.assert_awaited_once_with(order.id)
    (event,) = published(publisher)
    assert isinstance(event, OrderCancelled)
    assert event.discount_id == "disc-1"
    assert not event.requires_refund


@pytest.mark.asyncio
async def test_cancel_after_payment_returns_stock_and_refunds(orchestrator, order_request, inventory, publisher):
    order = await paid_order(orchestrator, order_request)

    cancelled = await orchestrator.cancel_order(order.id, "changed mind")

    assert cancelled.payment_status == PaymentStatus.REFUND_REQUESTED
    inventory.return_stock.assert_awaited_once()
    inventory.release.assert_not_called()
    confirmed, cancel_event, refund = published(publisher)
    assert isinstance(confirmed, OrderConfirmed)
    assert cancel_event.requires_refund and cancel_event.refund_amount == 60.0
    assert all(line.stock_committed for line in cancel_event.items)
    assert isinstance(refund, RefundRequested)


@pytest.mark.asyncio
async def test_cancel_twice_returns_current_state(orchestrator, order_request, inventory):
    order = await orchestrator.create_order(order_request)

    await orchestrator.cancel_order(order.id, "changed mind")
    again = await orchestrator.cancel_order(order.id, "changed mind")

    assert again.status == OrderStatus.CANCELLED
    assert inventory.release.await_count == 1


@pytest.mark.asyncio
async def test_cancel_by_another_user_is_not_found(orchestrator, order_request):
    order = await orchestrator.create_order(order_request)

    with pytest.raises(NotFoundOk):
        await orchestrator.cancel_order(order.id, "not mine", user_id="user-2")


@pytest.mark.asyncio
async def test_customer_cannot_cancel_while_stock_is_being_reserved(orchestrator, order_request, inventory):
    reserve = inventory.reserve.side_effect
    rejected = []

    async def cancel_then_reserve(order_id, items, **kwargs):
        try:
            await orchestrator.cancel_order(order_id, "changed mind", user_id="user-1")
        except InvalidStateTransition as e:
            rejected.append(e)
        return await reserve(order_id, items, **kwargs)

    inventory.reserve.side_effect = cancel_then_reserve

    order = await orchestrator.create_order(order_request)

    assert [e.current for e in rejected] == [OrderStatus.CREATED]
    assert order.status == OrderStatus.PENDING_PAYMENT
    inventory.release.assert_not_called()


@pytest.mark.asyncio
async def test_order_that_left_created_during_reserve_releases_the_new_hold(
    orchestrator, order_request, inventory, payments, database
):
    reserve = inventory.reserve.side_effect

    async def reserve_after_status_change(order_id, items, **kwargs):
        async with database.session() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(status=OrderStatus.CANCELLED)
                    .execution_options(synchronize_session=False)
                )
        return await reserve(order_id, items, **kwargs)

    inventory.reserve.side_effect = reserve_after_status_change

    order = await orchestrator.create_order(order_request)

    assert order.status == OrderStatus.CANCELLED
    inventory.release.assert_awaited_once_with(order.id, "Order cancelled while reserving")
    payments.create_payment.assert_not_called()


@pytest.mark.asyncio
async def test_shipped_order_cannot_be_cancelled_by_default(orchestrator, order_request):
    order = await paid_order(orchestrator, order_request)
    shipped = await orchestrator.ship_order(order.id)
    assert shipped.status == OrderStatus.SHIPPED

    with pytest.raises(InvalidStateTransition):
        await orchestrator.cancel_order(order.id, "too late")


@pytest.mark.asyncio
async def test_shipped_order_cancel_when_policy_allows(
    database, inventory, discounts, payments, publisher, order_request
):
    orchestrator = OrderOrchestrator(
        database.session_factory, inventory, discounts, payments, publisher, allow_cancel_after_shipment=True
    )
    order = await paid_order(orchestrator, order_request)
    await orchestrator.ship_order(order.id)

    cancelled = await orchestrator.cancel_order(order.id, "lost in transit", cancelled_by="Support")

    assert cancelled.status == OrderStatus.CANCELLED
    inventory.return_stock.assert_awaited_once()


@pytest.mark.asyncio
async def test_ship_and_deliver(orchestrator, order_request):
    order = await paid_order(orchestrator, order_request)

    await orchestrator.ship_order(order.id)
    delivered = await orchestrator.deliver_order(order.id)

    assert delivered.status == OrderStatus.DELIVERED
    with pytest.raises(InvalidStateTransition):
        await orchestrator.cancel_order(order.id, "after delivery")


@pytest.mark.asyncio
async def test_unpaid_order_cannot_ship(orchestrator, order_request):
    order = await orchestrator.create_order(order_request)

    with pytest.raises(InvalidStateTransition):
        await orchestrator.ship_order(order.id)


@pytest.mark.asyncio
async def test_profile_update_is_copied_onto_orders(orchestrator, order_request):
    order = await orchestrator.create_order(order_request)

    updated = await orchestrator.sync_user_profile(
        UserProfileUpdated(user_id="user-1", full_name="Ada Lovelace", email="ada@example.com")
    )

    assert updated == 1
    refreshed = await orchestrator.get_order(order.id)
    assert (refreshed.user_full_name, refreshed.user_email) == ("Ada Lovelace", "ada@example.com")
    assert await orchestrator.sync_user_profile(UserProfileUpdated(user_id="user-1")) == 0


def test_refund_event_id_is_stable():
    assert refund_event_id("order-1", "txn-1") == refund_event_id("order-1", "txn-1")
    assert refund_event_id("order-1", "txn-1") != refund_event_id("order-1", "txn-2")

