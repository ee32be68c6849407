"""
Booking orchestrator: turns a class, a member and their credit into a seat.

RESERVATION FLOW
================

  initiated -> priced -> credited -> seated -> confirmed
        \________\__________\_________\______> aborted

  1. Load the class; it must be scheduled and not yet started.
  2. Validate the coupon, if any, before touching credit or capacity.
  3. Full class: waitlist without spending credit (credit is taken at
     promotion time). Otherwise reserve one credit. With no credit and a
     drop-in price, a pending_payment booking is created and PaymentRequired
     is returned; the payment collaborator calls back later.
  4. Claim the seat. If the member ends up waitlisted the credit goes back.
  5. Link the credit reservation / coupon redemption and append an outbox
     event.

  Any failure after step 3 releases the credit before the error surfaces.

RETRIES
=======

Only ConcurrencyConflict (a lost conditional update, lock timeout,
serialization failure or deadlock) is retried, and only as a whole
operation: the session is rolled back and the operation starts over, up to
MAX_RESERVE_ATTEMPTS. Business-rule errors surface unchanged.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.config import get_settings
from studio_booking.core.exceptions import (
    AlreadyBookedError,
    BookingEngineError,
    CapacityError,
    ConcurrencyConflict,
    InvalidCoupon,
    NoCreditAvailable,
    NotBookable,
    NotFoundError,
    SpotTakenError,
    is_transient_db_error,
)
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import (
    record_cancellation,
    record_reservation,
    record_retry,
    reservation_latency,
)
from studio_booking.domain.enums import (
    INACTIVE_STATUSES,
    SEATED_STATUSES,
    BookingStatus,
    ClassStatus,
    CouponPurpose,
    CreditSource,
    PlanType,
)
from studio_booking.domain.policy import class_start_at, ensure_aware, evaluate_cancellation
from studio_booking.domain.state_machine import (
    BookingStateMachine,
    ClassStateMachine,
    ReservationStage,
    ReservationStateMachine,
)
from studio_booking.models.booking import Booking
from studio_booking.models.class_instance import ClassInstance
from studio_booking.models.studio import MembershipPlan
from studio_booking.services import outbox_service as events
from studio_booking.services.capacity_ledger import CapacityLedger
from studio_booking.services.coupon_service import CouponContext, CouponService, Discount
from studio_booking.services.credit_ledger import CreditLedger
from studio_booking.services.outbox_service import OutboxService

logger = get_logger(__name__)
settings = get_settings()

T = TypeVar("T")

_INACTIVE = [s.value for s in INACTIVE_STATUSES]


@dataclass(frozen=True)
class PaymentRequired:
    """Control-flow signal: the booking waits for an external payment."""

    booking_id: int
    reference: str
    base_price_cents: int
    amount_cents: int
    coupon_id: Optional[int] = None


ReserveResult = Union[Booking, PaymentRequired]


class BookingOrchestrator:
    def __init__(self, db: AsyncSession, max_attempts: Optional[int] = None):
        self.db = db
        self.max_attempts = max_attempts or settings.MAX_RESERVE_ATTEMPTS
        self.capacity = CapacityLedger(db)
        self.credits = CreditLedger(db)
        self.coupons = CouponService(db)
        self.outbox = OutboxService(db)

    async def _with_retry(self, operation: str, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        last_error: Optional[ConcurrencyConflict] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except ConcurrencyConflict as exc:
                last_error = exc
            except DBAPIError as exc:
                if not is_transient_db_error(exc):
                    raise
                last_error = ConcurrencyConflict(
                    "The database reported a transient conflict",
                    {"operation": operation},
                )

            # Expire everything so the next attempt reads fresh rows
            await self.db.rollback()
            logger.info(
                "operation_retry",
                operation=operation,
                attempt=attempt,
                reason=last_error.message,
            )
            if attempt < self.max_attempts:
                record_retry(operation)

        logger.warning("operation_conflict_exhausted", operation=operation, attempts=self.max_attempts)
        raise last_error

    def _advance(self, stage: ReservationStage, to: ReservationStage, **context) -> ReservationStage:
        ReservationStateMachine.validate_transition(stage, to)
        logger.debug("reservation_stage", stage=to.value, **context)
        return to

    # ------------------------------------------------------------------
    # Reserve
    # ------------------------------------------------------------------

    async def reserve(
        self,
        member_id: int,
        class_instance_id: int,
        coupon_code: Optional[str] = None,
        requested_spot: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> ReserveResult:
        with reservation_latency.time():
            try:
                result = await self._with_retry(
                    "reserve",
                    self._reserve_once,
                    member_id,
                    class_instance_id,
                    coupon_code,
                    requested_spot,
                    ensure_aware(as_of or datetime.now(timezone.utc)),
                )
            except BookingEngineError as exc:
                record_reservation("rejected")
                logger.info(
                    "reservation_rejected",
                    member_id=member_id,
                    class_instance_id=class_instance_id,
                    code=exc.code,
                )
                raise

        if isinstance(result, PaymentRequired):
            record_reservation("payment_required")
        else:
            record_reservation(result.status)
        return result

    async def _reserve_once(
        self,
        member_id: int,
        class_instance_id: int,
        coupon_code: Optional[str],
        requested_spot: Optional[str],
        as_of: datetime,
    ) -> ReserveResult:
        stage = ReservationStage.INITIATED
        class_instance = await self.capacity.get_class(class_instance_id)
        studio = class_instance.studio

        starts_at = class_start_at(class_instance.date, class_instance.start_time, studio.timezone)
        if class_instance.status != ClassStatus.SCHEDULED.value or starts_at <= as_of:
            raise NotBookable(
                "Class is not open for booking",
                {"class_instance_id": class_instance_id, "status": class_instance.status},
            )

        discount: Optional[Discount] = None
        if coupon_code:
            check = await self.coupons.validate(
                studio.id,
                coupon_code,
                CouponContext(purpose=CouponPurpose.DROP_IN, member_id=member_id, as_of=as_of),
            )
            if not check.valid:
                raise InvalidCoupon(check.reason.value)
            discount = check.discount

        existing = await self._active_booking(member_id, class_instance_id)
        if existing is not None:
            if existing.status == BookingStatus.PENDING_PAYMENT.value:
                # Retried reserve while the payment is still out
                return self._payment_required(existing)
            raise AlreadyBookedError(
                "Member already has an active booking for this class",
                {"booking_id": existing.id},
            )

        stage = self._advance(stage, ReservationStage.PRICED, member_id=member_id, class_instance_id=class_instance_id)

        if class_instance.booked_count >= class_instance.max_capacity:
            claim = await self.capacity.claim_seat(class_instance_id, member_id, requested_spot)
            if claim.granted:
                # A seat freed up after we read the class; start over on the paid path
                raise ConcurrencyConflict("Seat opened during waitlisting", {"class_instance_id": class_instance_id})
            await self._emit(events.BOOKING_WAITLISTED, claim.booking)
            return claim.booking

        reservation_id: Optional[int] = None
        try:
            try:
                reservation = await self.credits.reserve_credit(member_id, studio.id, as_of)
            except NoCreditAvailable:
                return await self._reserve_drop_in(class_instance, member_id, discount, requested_spot, as_of)

            reservation_id = reservation.id
            credit_source = reservation.source
            stage = self._advance(stage, ReservationStage.CREDITED, reservation_id=reservation_id)

            claim = await self.capacity.claim_seat(class_instance_id, member_id, requested_spot)
            booking = claim.booking

            if not claim.granted:
                await self.credits.release_credit(reservation_id)
                reservation_id = None
                await self._emit(events.BOOKING_WAITLISTED, booking)
                return booking

            stage = self._advance(stage, ReservationStage.SEATED, booking_id=booking.id)
            booking.credit_source = credit_source
            booking.credit_reservation_id = reservation_id
            await self.credits.link_booking(reservation_id, booking.id)
            await self.db.flush()
            await self._emit(events.BOOKING_CONFIRMED, booking)
            self._advance(stage, ReservationStage.CONFIRMED, booking_id=booking.id)
            return booking
        except BookingEngineError:
            if reservation_id is not None and self.db.is_active:
                await self.credits.release_credit(reservation_id)
            logger.info("reservation_aborted", member_id=member_id, class_instance_id=class_instance_id)
            raise

    async def _reserve_drop_in(
        self,
        class_instance: ClassInstance,
        member_id: int,
        discount: Optional[Discount],
        requested_spot: Optional[str],
        as_of: datetime,
    ) -> ReserveResult:
        base_price = await self.drop_in_price(class_instance.studio_id)
        if base_price is None:
            raise NoCreditAvailable()
        amount = CouponService.compute_discount(base_price, discount)
        coupon_id = discount.coupon_id if discount else None

        if amount == 0:
            # Fully discounted: the coupon is the payment
            claim = await self.capacity.claim_seat(class_instance.id, member_id, requested_spot)
            booking = claim.booking
            booking.credit_source = CreditSource.DROP_IN.value
            booking.base_price_cents = base_price
            booking.amount_cents = 0
            booking.coupon_id = coupon_id
            await self.db.flush()
            if discount:
                await self.coupons.redeem(
                    discount.coupon_id,
                    member_id,
                    class_instance.studio_id,
                    ("booking", booking.id),
                    discount_amount_cents=base_price,
                    as_of=as_of,
                )
            await self._emit(
                events.BOOKING_CONFIRMED if claim.granted else events.BOOKING_WAITLISTED,
                booking,
            )
            return booking

        if requested_spot and await self.capacity.spot_holder(class_instance.id, requested_spot, None):
            raise SpotTakenError(requested_spot)

        booking = await self.capacity.insert_booking(
            Booking(
                class_instance_id=class_instance.id,
                member_id=member_id,
                status=BookingStatus.PENDING_PAYMENT.value,
                spot=requested_spot,
                payment_reference=uuid.uuid4().hex,
                base_price_cents=base_price,
                amount_cents=amount,
                coupon_id=coupon_id,
            ),
            requested_spot,
        )

        if discount:
            await self.coupons.redeem(
                discount.coupon_id,
                member_id,
                class_instance.studio_id,
                ("booking", booking.id),
                discount_amount_cents=base_price - amount,
                as_of=as_of,
            )

        await self._emit(
            events.PAYMENT_REQUESTED,
            booking,
            amount_cents=amount,
            reference=booking.payment_reference,
        )
        logger.info(
            "payment_required",
            booking_id=booking.id,
            member_id=member_id,
            base_price_cents=base_price,
            amount_cents=amount,
        )
        return self._payment_required(booking)

    @staticmethod
    def _payment_required(booking: Booking) -> PaymentRequired:
        return PaymentRequired(
            booking_id=booking.id,
            reference=booking.payment_reference,
            base_price_cents=booking.base_price_cents,
            amount_cents=booking.amount_cents,
            coupon_id=booking.coupon_id,
        )

    async def drop_in_price(self, studio_id: int) -> Optional[int]:
        """Cheapest active drop-in plan; None when the studio sells no drop-ins."""
        result = await self.db.execute(
            select(func.min(MembershipPlan.price_cents)).where(
                MembershipPlan.studio_id == studio_id,
                MembershipPlan.type == PlanType.DROP_IN.value,
                MembershipPlan.active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _active_booking(self, member_id: int, class_instance_id: int) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.member_id == member_id,
                Booking.class_instance_id == class_instance_id,
                Booking.status.notin_(_INACTIVE),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _emit(self, event_type: str, booking: Booking, **payload: Any) -> None:
        await self.outbox.emit(
            event_type,
            booking.class_instance.studio_id,
            booking_id=booking.id,
            payload={
                "member_id": booking.member_id,
                "class_instance_id": booking.class_instance_id,
                "status": booking.status,
                **payload,
            },
        )

    # ------------------------------------------------------------------
    # Payment callback
    # ------------------------------------------------------------------

    async def on_payment_resolved(self, reference: str, succeeded: bool) -> Booking:
        return await self._with_retry("payment_resolved", self._payment_resolved_once, reference, succeeded)

    async def _payment_resolved_once(self, reference: str, succeeded: bool) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.payment_reference == reference)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Payment reference", reference)

        if booking.status != BookingStatus.PENDING_PAYMENT.value:
            logger.info("payment_already_resolved", booking_id=booking.id, status=booking.status)
            return booking

        if not succeeded:
            release = await self.capacity.release_seat(booking.id)
            await self._emit(events.PAYMENT_FAILED, release.booking)
            logger.info("payment_failed", booking_id=booking.id, member_id=booking.member_id)
            return release.booking

        booking.credit_source = CreditSource.DROP_IN.value
        await self.db.flush()

        try:
            claim = await self.capacity.claim_seat(
                booking.class_instance_id,
                booking.member_id,
                requested_spot=booking.spot,
                pending=booking,
            )
        except CapacityError:
            # Paid for a class that was cancelled in the meantime
            release = await self.capacity.release_seat(booking.id)
            await self._emit(events.DROP_IN_REFUND_REQUESTED, release.booking, amount_cents=booking.amount_cents)
            logger.info("payment_refund_class_unavailable", booking_id=booking.id)
            return release.booking

        await self._emit(
            events.BOOKING_CONFIRMED if claim.granted else events.BOOKING_WAITLISTED,
            claim.booking,
        )
        logger.info(
            "payment_succeeded",
            booking_id=booking.id,
            member_id=booking.member_id,
            status=claim.booking.status,
        )
        return claim.booking

    # ------------------------------------------------------------------
    # Cancel, check-in, no-show
    # ------------------------------------------------------------------

    async def _promote_credit(self, booking: Booking) -> bool:
        """Promotion hook: find a credit for the waitlisted member, or keep them waiting."""
        if booking.credit_source == CreditSource.DROP_IN.value:
            return True
        try:
            reservation = await self.credits.reserve_credit(
                booking.member_id, booking.class_instance.studio_id
            )
        except NoCreditAvailable:
            return False

        booking.credit_source = reservation.source
        booking.credit_reservation_id = reservation.id
        await self.credits.link_booking(reservation.id, booking.id)
        await self.db.flush()
        return True

    async def _announce_promotions(self, promoted: list[Booking]) -> None:
        for booking in promoted:
            await self._emit(events.WAITLIST_PROMOTED, booking)

    async def cancel(self, booking_id: int, as_of: Optional[datetime] = None) -> Booking:
        return await self._with_retry(
            "cancel",
            self._cancel_once,
            booking_id,
            ensure_aware(as_of or datetime.now(timezone.utc)),
        )

    async def _cancel_once(self, booking_id: int, as_of: datetime) -> Booking:
        booking = await self.capacity.get_booking(booking_id)
        prior = BookingStatus(booking.status)
        if prior is BookingStatus.CANCELLED:
            return booking
        BookingStateMachine.validate_transition(prior, BookingStatus.CANCELLED)

        if prior is BookingStatus.PENDING_PAYMENT:
            release = await self.capacity.release_seat(booking_id)
            await self._emit(events.BOOKING_CANCELLED, release.booking)
            logger.info("booking_cancelled", booking_id=booking_id, prior_status=prior.value)
            return release.booking

        class_instance = booking.class_instance
        studio = class_instance.studio
        outcome = evaluate_cancellation(
            class_start_at(class_instance.date, class_instance.start_time, studio.timezone),
            as_of,
            studio.cancellation_window_hours,
        )
        late = outcome.late and prior in SEATED_STATUSES
        forfeit = late and studio.late_cancel_forfeits_credit

        if late:
            booking.late_cancel = True
            booking.late_cancel_fee_cents = studio.late_cancel_fee_cents
        await self.db.flush()

        reservation_id = booking.credit_reservation_id
        credit_source = booking.credit_source
        paid_cents = booking.amount_cents or 0

        release = await self.capacity.release_seat(booking_id, promote_with=self._promote_credit)
        cancelled = release.booking
        await self._announce_promotions(release.promoted)

        if reservation_id is not None:
            if forfeit:
                await self.credits.forfeit_credit(reservation_id)
            else:
                await self.credits.release_credit(reservation_id)
        elif credit_source == CreditSource.DROP_IN.value and paid_cents > 0 and not forfeit:
            await self._emit(events.DROP_IN_REFUND_REQUESTED, cancelled, amount_cents=paid_cents)

        if late and studio.late_cancel_fee_cents > 0:
            await self._emit(events.LATE_CANCEL_FEE, cancelled, fee_cents=studio.late_cancel_fee_cents)

        await self._emit(events.BOOKING_CANCELLED, cancelled, late=late)
        record_cancellation(late)
        logger.info(
            "booking_cancelled",
            booking_id=booking_id,
            prior_status=prior.value,
            late=late,
            hours_until_start=round(outcome.hours_until_start, 2),
            credit_forfeited=forfeit and reservation_id is not None,
            promoted=[b.id for b in release.promoted],
        )
        return cancelled

    async def check_in(self, booking_id: int) -> Booking:
        booking = await self.capacity.get_booking(booking_id)
        if booking.status == BookingStatus.CONFIRMED.value:
            return booking
        BookingStateMachine.validate_transition(booking.status, BookingStatus.CONFIRMED)

        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == BookingStatus.BOOKED.value)
            .values(status=BookingStatus.CONFIRMED.value, confirmed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict("Booking changed during check-in", {"booking_id": booking_id})

        logger.info("booking_checked_in", booking_id=booking_id, member_id=booking.member_id)
        return await self.capacity.get_booking(booking_id)

    async def mark_no_show(self, booking_id: int) -> Booking:
        """Status write plus credit forfeit; the seat stays consumed."""
        booking = await self.capacity.get_booking(booking_id)
        prior = BookingStatus(booking.status)
        BookingStateMachine.validate_transition(prior, BookingStatus.NO_SHOW)

        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == prior.value)
            .values(status=BookingStatus.NO_SHOW.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict("Booking changed while marking no-show", {"booking_id": booking_id})

        if booking.credit_reservation_id is not None:
            await self.credits.forfeit_credit(booking.credit_reservation_id)

        booking = await self.capacity.get_booking(booking_id)
        await self._emit(events.NO_SHOW_RECORDED, booking)
        logger.info("booking_no_show", booking_id=booking_id, member_id=booking.member_id)
        return booking

    # ------------------------------------------------------------------
    # Class administration
    # ------------------------------------------------------------------

    async def change_capacity(self, class_instance_id: int, new_capacity: int) -> tuple[ClassInstance, list[Booking]]:
        return await self._with_retry("change_capacity", self._change_capacity_once, class_instance_id, new_capacity)

    async def _change_capacity_once(self, class_instance_id: int, new_capacity: int) -> tuple[ClassInstance, list[Booking]]:
        class_instance, promoted = await self.capacity.change_capacity(
            class_instance_id, new_capacity, promote_with=self._promote_credit
        )
        await self._announce_promotions(promoted)
        return class_instance, promoted

    async def cancel_class(self, class_instance_id: int) -> tuple[ClassInstance, int]:
        """Cancel the class and every active booking with a full refund; nobody is promoted."""
        class_instance = await self.capacity.get_class(class_instance_id)
        prior = ClassStatus(class_instance.status)
        ClassStateMachine.validate_transition(prior, ClassStatus.CANCELLED)

        result = await self.db.execute(
            update(ClassInstance)
            .where(ClassInstance.id == class_instance_id, ClassInstance.status == prior.value)
            .values(status=ClassStatus.CANCELLED.value, booked_count=0)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict("Class changed while it was being cancelled", {"class_instance_id": class_instance_id})

        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.class_instance_id == class_instance_id,
                Booking.status.notin_(_INACTIVE),
            )
            .order_by(Booking.id)
            .execution_options(populate_existing=True)
        )
        bookings = list(result.scalars().all())

        now = datetime.now(timezone.utc)
        cancelled = 0
        for booking in bookings:
            result = await self.db.execute(
                update(Booking)
                .where(Booking.id == booking.id, Booking.status == booking.status)
                .values(status=BookingStatus.CANCELLED.value, cancelled_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                continue
            cancelled += 1
            if booking.credit_reservation_id is not None:
                await self.credits.release_credit(booking.credit_reservation_id)
            elif booking.credit_source == CreditSource.DROP_IN.value and (booking.amount_cents or 0) > 0:
                await self._emit(
                    events.DROP_IN_REFUND_REQUESTED,
                    booking,
                    status=BookingStatus.CANCELLED.value,
                    amount_cents=booking.amount_cents,
                )
            await self._emit(
                events.BOOKING_CANCELLED,
                booking,
                status=BookingStatus.CANCELLED.value,
                reason="class_cancelled",
            )

        await self.outbox.emit(
            events.CLASS_CANCELLED,
            class_instance.studio_id,
            payload={"class_instance_id": class_instance_id, "bookings_cancelled": cancelled},
            dedupe_key=f"{events.CLASS_CANCELLED}:{class_instance_id}",
        )
        logger.info("class_cancelled", class_instance_id=class_instance_id, bookings_cancelled=cancelled)
        return await self.capacity.get_class(class_instance_id), cancelled

    async def list_member_bookings(self, member_id: int, studio_id: int) -> list[Booking]:
        result = await self.db.execute(
            select(Booking)
            .join(ClassInstance, Booking.class_instance_id == ClassInstance.id)
            .where(Booking.member_id == member_id, ClassInstance.studio_id == studio_id)
            .order_by(Booking.created_at.desc(), Booking.id.desc())
        )
        return list(result.scalars().unique().all())
