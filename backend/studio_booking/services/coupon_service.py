"""
Coupon evaluation and redemption.

validate() is a pure read and never changes counters: two requests may both
be told a single-use coupon is valid. Only redeem() spends it, with a
conditional increment on the coupon row:

    UPDATE coupons SET current_redemptions = current_redemptions + 1
    WHERE id = :id AND (max_redemptions IS NULL OR current_redemptions < max_redemptions)

so the loser of a race gets InvalidCoupon(redemption_limit_reached) and the
counter can never pass max_redemptions. The unique key on the redemption
target turns a replayed redeem into AlreadyRedeemedError.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import AlreadyRedeemedError, InvalidCoupon, NotFoundError
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import record_coupon_redemption
from studio_booking.domain.enums import CouponPurpose, CouponScope, CouponType, InvalidCouponReason
from studio_booking.domain.policy import ensure_aware
from studio_booking.models.coupon import Coupon, CouponRedemption
from studio_booking.models.credit import ClassPass, Subscription
from studio_booking.services.credit_ledger import CreditLedger

logger = get_logger(__name__)

_PRICED_BOOKINGS = (CouponPurpose.DROP_IN, CouponPurpose.PRIVATE_BOOKING)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def member_target(member_id: int) -> tuple[str, str]:
    """Redemption target of a member redeeming for themselves: one per coupon."""
    return ("member", str(member_id))


@dataclass(frozen=True)
class CouponContext:
    """What the coupon is being applied to."""

    purpose: CouponPurpose
    member_id: Optional[int] = None
    plan_id: Optional[int] = None
    as_of: Optional[datetime] = None


@dataclass(frozen=True)
class Discount:
    coupon_id: int
    code: str
    type: CouponType
    value: int


@dataclass(frozen=True)
class CouponCheck:
    valid: bool
    discount: Optional[Discount] = None
    reason: Optional[InvalidCouponReason] = None

    @classmethod
    def invalid(cls, reason: InvalidCouponReason) -> "CouponCheck":
        return cls(valid=False, reason=reason)


class CouponService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_code(self, studio_id: int, code: str) -> Optional[Coupon]:
        result = await self.db.execute(
            select(Coupon)
            .where(Coupon.studio_id == studio_id, Coupon.code == normalize_code(code))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def validate(self, studio_id: int, code: str, context: CouponContext) -> CouponCheck:
        as_of = ensure_aware(context.as_of or datetime.now(timezone.utc))
        coupon = await self.get_by_code(studio_id, code)

        if coupon is None:
            return CouponCheck.invalid(InvalidCouponReason.NOT_FOUND)
        if not coupon.active:
            return CouponCheck.invalid(InvalidCouponReason.INACTIVE)
        if coupon.valid_from is not None and ensure_aware(coupon.valid_from) > as_of:
            return CouponCheck.invalid(InvalidCouponReason.OUTSIDE_VALIDITY_WINDOW)
        if coupon.valid_until is not None and ensure_aware(coupon.valid_until) < as_of:
            return CouponCheck.invalid(InvalidCouponReason.OUTSIDE_VALIDITY_WINDOW)
        if coupon.max_redemptions is not None and coupon.current_redemptions >= coupon.max_redemptions:
            return CouponCheck.invalid(InvalidCouponReason.REDEMPTION_LIMIT_REACHED)
        if not await self._in_scope(coupon, context):
            return CouponCheck.invalid(InvalidCouponReason.SCOPE_MISMATCH)

        return CouponCheck(
            valid=True,
            discount=Discount(
                coupon_id=coupon.id,
                code=coupon.code,
                type=CouponType(coupon.type),
                value=coupon.value,
            ),
        )

    async def _in_scope(self, coupon: Coupon, context: CouponContext) -> bool:
        # Free classes are granted on redemption; they cannot price a single booking
        if coupon.type == CouponType.FREE_CLASSES.value and context.purpose in _PRICED_BOOKINGS:
            return False

        scope = CouponScope(coupon.applies_to)
        if scope is CouponScope.ANY:
            return True
        if scope is CouponScope.DROP_IN:
            return context.purpose is CouponPurpose.DROP_IN
        if scope is CouponScope.PLAN:
            if context.purpose in _PRICED_BOOKINGS:
                return False
            return not coupon.plan_ids or context.plan_id in coupon.plan_ids
        if scope is CouponScope.NEW_MEMBER:
            if context.member_id is None:
                return False
            return not await self._has_purchase_history(context.member_id, coupon.studio_id)
        return False

    async def _has_purchase_history(self, member_id: int, studio_id: int) -> bool:
        for model in (Subscription, ClassPass):
            result = await self.db.execute(
                select(model.id).where(model.member_id == member_id, model.studio_id == studio_id).limit(1)
            )
            if result.scalar_one_or_none() is not None:
                return True
        return False

    @staticmethod
    def compute_discount(base_price_cents: int, discount: Optional[Discount]) -> int:
        """Price after discount, clamped to [0, base_price_cents]."""
        if discount is None or discount.type is CouponType.FREE_CLASSES:
            return base_price_cents
        if discount.type is CouponType.PERCENT_OFF:
            price = base_price_cents - base_price_cents * discount.value // 100
        else:
            price = base_price_cents - discount.value
        return max(0, min(base_price_cents, price))

    async def redeem(
        self,
        coupon_id: int,
        member_id: int,
        studio_id: int,
        applied_to: tuple[str, str],
        discount_amount_cents: int = 0,
        as_of: Optional[datetime] = None,
    ) -> CouponRedemption:
        """
        Spend one redemption of the coupon against `applied_to`
        (a (type, id) pair such as ("booking", "42")).
        """
        applied_to_type, applied_to_id = applied_to[0], str(applied_to[1])

        existing = await self.db.execute(
            select(CouponRedemption.id).where(
                CouponRedemption.coupon_id == coupon_id,
                CouponRedemption.applied_to_type == applied_to_type,
                CouponRedemption.applied_to_id == applied_to_id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            record_coupon_redemption("duplicate")
            raise AlreadyRedeemedError(f"Coupon already applied to {applied_to_type} {applied_to_id}")

        result = await self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                Coupon.studio_id == studio_id,
                Coupon.active.is_(True),
                or_(
                    Coupon.max_redemptions.is_(None),
                    Coupon.current_redemptions < Coupon.max_redemptions,
                ),
            )
            .values(current_redemptions=Coupon.current_redemptions + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            record_coupon_redemption("limit_reached")
            logger.info("coupon_redemption_rejected", coupon_id=coupon_id, member_id=member_id)
            raise InvalidCoupon(InvalidCouponReason.REDEMPTION_LIMIT_REACHED.value)

        redemption = CouponRedemption(
            coupon_id=coupon_id,
            member_id=member_id,
            studio_id=studio_id,
            applied_to_type=applied_to_type,
            applied_to_id=applied_to_id,
            discount_amount_cents=discount_amount_cents,
            redeemed_at=ensure_aware(as_of or datetime.now(timezone.utc)),
        )
        self.db.add(redemption)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            # A concurrent request inserted the same target between our check and insert
            await self.db.rollback()
            record_coupon_redemption("duplicate")
            raise AlreadyRedeemedError(
                f"Coupon already applied to {applied_to_type} {applied_to_id}"
            ) from exc

        coupon = await self.get(studio_id, coupon_id)
        if coupon.type == CouponType.FREE_CLASSES.value:
            await CreditLedger(self.db).grant_comp(
                member_id,
                studio_id,
                coupon.value,
                reason=f"coupon:{coupon.code}",
            )

        record_coupon_redemption("redeemed")
        logger.info(
            "coupon_redeemed",
            coupon_id=coupon_id,
            code=coupon.code,
            member_id=member_id,
            applied_to_type=applied_to_type,
            applied_to_id=applied_to_id,
            redemptions=coupon.current_redemptions,
        )
        return redemption

    async def get(self, studio_id: int, coupon_id: int) -> Coupon:
        result = await self.db.execute(
            select(Coupon)
            .where(Coupon.id == coupon_id, Coupon.studio_id == studio_id)
            .execution_options(populate_existing=True)
        )
        coupon = result.scalar_one_or_none()
        if coupon is None:
            raise NotFoundError("Coupon", coupon_id)
        return coupon

    async def create_coupon(self, studio_id: int, **fields) -> Coupon:
        coupon = Coupon(studio_id=studio_id, current_redemptions=0, active=True, **fields)
        coupon.code = normalize_code(coupon.code)
        if await self.get_by_code(studio_id, coupon.code) is not None:
            raise InvalidCoupon(
                "duplicate_code", message=f"Coupon code {coupon.code} already exists"
            )
        self.db.add(coupon)
        await self.db.flush()
        await self.db.refresh(coupon)
        logger.info("coupon_created", coupon_id=coupon.id, studio_id=studio_id, code=coupon.code)
        return coupon

    async def list_coupons(self, studio_id: int, active_only: bool = False) -> list[Coupon]:
        query = select(Coupon).where(Coupon.studio_id == studio_id)
        if active_only:
            query = query.where(Coupon.active.is_(True))
        result = await self.db.execute(query.order_by(Coupon.created_at.desc(), Coupon.id.desc()))
        return list(result.scalars().all())

    async def deactivate_coupon(self, studio_id: int, coupon_id: int) -> Coupon:
        """Soft delete: redemptions keep pointing at the row."""
        coupon = await self.get(studio_id, coupon_id)
        coupon.active = False
        await self.db.flush()
        logger.info("coupon_deactivated", coupon_id=coupon_id, studio_id=studio_id)
        return coupon
