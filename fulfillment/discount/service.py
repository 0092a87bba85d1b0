import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.database import utcnow
from fulfillment.discount.models import Discount, DiscountUsage, UsageStatus
from fulfillment.discount.schemas import (
    CreateDiscountRequest,
    DiscountRead,
    UsageRead,
    UsageResult,
    ValidateDiscountResult,
)
from fulfillment.errors import DiscountRejected, UsageLimitExceeded

logger = logging.getLogger(__name__)


def _rejected(message: str) -> ValidateDiscountResult:
    return ValidateDiscountResult(valid=False, message=message)


class DiscountUsageTracker:
    """
    Records at most one usage per order and keeps ``Discount.usage_count`` in
    step with the ACTIVE usages.

    Recording locks the discount row so the per-user and global limits are
    checked against a stable count; the unique ``order_id`` catches any
    duplicate that still slips through.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def validate_discount(
        self,
        code: str,
        order_amount: float,
        items: Iterable = (),
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ValidateDiscountResult:
        now = now or utcnow()
        async with self.session_factory() as session:
            discount = (await session.execute(select(Discount).where(Discount.code == code))).scalar_one_or_none()
            if discount is None:
                return _rejected("Discount code does not exist")
            if not discount.is_active:
                return _rejected("Discount code is no longer active")
            if discount.start_date and discount.start_date > now:
                return _rejected("Discount code is not valid yet")
            if discount.end_date and discount.end_date < now:
                return _rejected("Discount code has expired")
            if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
                return _rejected("Discount code has been fully redeemed")
            if user_id is not None:
                used = await self._active_usage_count(session, discount.id, user_id)
                if used >= discount.usage_limit_per_user:
                    return _rejected("You have already used this discount code")

        if order_amount < discount.min_order_amount:
            return _rejected(f"Minimum order amount is {discount.min_order_amount:.2f}")
        total_quantity = sum(item["quantity"] if isinstance(item, dict) else item.quantity for item in items)
        if total_quantity < discount.min_quantity:
            return _rejected(f"At least {discount.min_quantity} items are required")

        return ValidateDiscountResult(
            valid=True,
            discount=DiscountRead.model_validate(discount),
            discount_amount=discount.calculate(order_amount),
            message="Discount applied",
        )

    async def record_usage(
        self,
        discount_id: str,
        user_id: str,
        order_id: str,
        order_amount: float,
        discount_amount: float,
        order_number: Optional[str] = None,
    ) -> UsageResult:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    discount = (
                        await session.execute(select(Discount).where(Discount.id == discount_id).with_for_update())
                    ).scalar_one_or_none()
                    if discount is None:
                        logger.info("Usage for order %s refers to unknown discount %s", order_id, discount_id)
                        return UsageResult(success=False, not_found=True, message=f"Discount {discount_id} not found")

                    existing = await self._usage_for_order(session, order_id)
                    if existing is not None:
                        return self._existing_result(existing)

                    used = await self._active_usage_count(session, discount_id, user_id)
                    if used >= discount.usage_limit_per_user:
                        raise UsageLimitExceeded(
                            f"User {user_id} already used discount {discount.code} {used} time(s)"
                        )
                    if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
                        raise UsageLimitExceeded(f"Discount {discount.code} reached its usage limit")

                    usage = DiscountUsage(
                        discount_id=discount_id,
                        user_id=user_id,
                        order_id=order_id,
                        order_number=order_number,
                        order_amount=order_amount,
                        discount_amount=discount_amount,
                        status=UsageStatus.ACTIVE,
                        created_at=utcnow(),
                    )
                    session.add(usage)
                    await session.flush()
                    await session.execute(
                        update(Discount)
                        .where(Discount.id == discount_id)
                        .values(usage_count=Discount.usage_count + 1, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    read = UsageRead.model_validate(usage)
        except IntegrityError:
            async with self.session_factory() as session:
                existing = await self._usage_for_order(session, order_id)
            if existing is None:
                raise
            logger.info("Usage for order %s was recorded concurrently", order_id)
            return self._existing_result(existing)

        logger.info("Recorded usage of discount %s for order %s", discount_id, order_id)
        return UsageResult(success=True, usage=read)

    async def rollback_usage(self, order_id: str) -> UsageResult:
        async with self.session_factory() as session:
            async with session.begin():
                now = utcnow()
                rolled_back = (
                    await session.execute(
                        update(DiscountUsage)
                        .where(DiscountUsage.order_id == order_id, DiscountUsage.status == UsageStatus.ACTIVE)
                        .values(status=UsageStatus.ROLLED_BACK, rolled_back_at=now)
                        .returning(DiscountUsage.discount_id)
                        .execution_options(synchronize_session=False)
                    )
                ).first()
                if rolled_back is None:
                    logger.info("No active discount usage to roll back for order %s", order_id)
                    return UsageResult(success=False, not_found=True, message=f"No active usage for order {order_id}")

                await session.execute(
                    update(Discount)
                    .where(Discount.id == rolled_back.discount_id)
                    .values(
                        usage_count=case((Discount.usage_count > 0, Discount.usage_count - 1), else_=0),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                usage = await self._usage_for_order(session, order_id)
                read = UsageRead.model_validate(usage)

        logger.info("Rolled back discount usage for order %s", order_id)
        return UsageResult(success=True, usage=read)

    async def add_discount(self, request: CreateDiscountRequest) -> DiscountRead:
        now = utcnow()
        discount = Discount(
            code=request.code,
            name=request.name,
            type=request.type,
            value=request.value,
            max_discount_amount=request.max_discount_amount,
            min_order_amount=request.min_order_amount,
            min_quantity=request.min_quantity,
            usage_limit=request.usage_limit,
            usage_limit_per_user=request.usage_limit_per_user,
            usage_count=0,
            start_date=_naive(request.start_date) or now,
            end_date=_naive(request.end_date),
            is_active=request.is_active,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(discount)
        except IntegrityError as e:
            raise DiscountRejected(f"Discount code {request.code} already exists") from e
        logger.info("Created discount %s", request.code)
        return DiscountRead.model_validate(discount)

    async def get_usage(self, order_id: str) -> Optional[UsageRead]:
        async with self.session_factory() as session:
            usage = await self._usage_for_order(session, order_id)
        return UsageRead.model_validate(usage) if usage is not None else None

    async def get_discount(self, discount_id: str) -> Optional[DiscountRead]:
        async with self.session_factory() as session:
            discount = await session.get(Discount, discount_id)
        return DiscountRead.model_validate(discount) if discount is not None else None

    @staticmethod
    def _existing_result(usage: DiscountUsage) -> UsageResult:
        if usage.status == UsageStatus.ACTIVE:
            return UsageResult(success=True, usage=UsageRead.model_validate(usage), message="Usage already recorded")
        # a late confirmation must not revive a cancelled order's usage
        return UsageResult(
            success=False,
            usage=UsageRead.model_validate(usage),
            message=f"Usage for order {usage.order_id} was rolled back",
        )

    @staticmethod
    async def _usage_for_order(session: AsyncSession, order_id: str) -> Optional[DiscountUsage]:
        result = await session.execute(select(DiscountUsage).where(DiscountUsage.order_id == order_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _active_usage_count(session: AsyncSession, discount_id: str, user_id: str) -> int:
        result = await session.execute(
            select(func.count(DiscountUsage.id)).where(
                DiscountUsage.discount_id == discount_id,
                DiscountUsage.user_id == user_id,
                DiscountUsage.status == UsageStatus.ACTIVE,
            )
        )
        return int(result.scalar_one())


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.replace(tzinfo=None) - value.utcoffset()
