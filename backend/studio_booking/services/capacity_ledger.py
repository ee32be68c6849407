"""
Capacity ledger: seats and waitlist for one class instance.

CONCURRENCY STRATEGY: conditional update on the class row
=========================================================

Problem:
  Two members try to take the last seat of a class simultaneously.
  Both COUNT the booked rows, both see one seat free, both INSERT.
  Result: overbooking.

Solution:
  The class row carries the seat counter (`booked_count`). A seat is claimed
  with one statement:

    UPDATE class_instances SET booked_count = booked_count + 1
    WHERE id = :id AND status = 'scheduled' AND booked_count < max_capacity

  rows_affected == 1 means the seat is ours; 0 means the class is full (or no
  longer scheduled) and the member goes on the waitlist. The booking row is
  written in the same transaction, so a rollback undoes both. The CHECK
  constraint (booked_count <= max_capacity) is the final safety net.

  Waitlist positions come from `waitlist_seq`, bumped with the same kind of
  statement. Positions are never reused or renumbered.

Promotion:
  When a seat frees up, the vacated seat is re-claimed with the same
  conditional UPDATE before each candidate is tried, and the candidate is
  flipped with `WHERE status = 'waitlisted'`. Two racing cancellations can
  therefore never promote more members than there are free seats, and a
  member is never promoted twice. The loop is bounded by the waitlist length.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import (
    AlreadyBookedError,
    CapacityError,
    ConcurrencyConflict,
    NotFoundError,
    SpotTakenError,
)
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import waitlist_promotions, waitlist_skips
from studio_booking.domain.enums import INACTIVE_STATUSES, SEATED_STATUSES, BookingStatus, ClassStatus
from studio_booking.domain.state_machine import BookingStateMachine
from studio_booking.models.booking import Booking
from studio_booking.models.class_instance import ClassInstance

logger = get_logger(__name__)

# Returns True when the promoted booking is paid for; False leaves it waitlisted
PromoteCallback = Callable[[Booking], Awaitable[bool]]

_INACTIVE = [s.value for s in INACTIVE_STATUSES]
_SEATED = [s.value for s in SEATED_STATUSES]


@dataclass
class SeatClaim:
    booking: Booking
    granted: bool
    spot: Optional[str] = None
    waitlist_position: Optional[int] = None


@dataclass
class SeatRelease:
    booking: Booking
    promoted: list[Booking] = field(default_factory=list)


class CapacityLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_class(self, class_instance_id: int) -> ClassInstance:
        result = await self.db.execute(
            select(ClassInstance)
            .where(ClassInstance.id == class_instance_id)
            .execution_options(populate_existing=True)
        )
        class_instance = result.scalar_one_or_none()
        if class_instance is None:
            raise NotFoundError("Class", class_instance_id)
        return class_instance

    async def get_booking(self, booking_id: int) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    async def _take_seat(self, class_instance_id: int) -> bool:
        result = await self.db.execute(
            update(ClassInstance)
            .where(
                ClassInstance.id == class_instance_id,
                ClassInstance.status == ClassStatus.SCHEDULED.value,
                ClassInstance.booked_count < ClassInstance.max_capacity,
            )
            .values(booked_count=ClassInstance.booked_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _give_back_seat(self, class_instance_id: int) -> None:
        await self.db.execute(
            update(ClassInstance)
            .where(ClassInstance.id == class_instance_id, ClassInstance.booked_count > 0)
            .values(booked_count=ClassInstance.booked_count - 1)
            .execution_options(synchronize_session=False)
        )

    async def _next_waitlist_position(self, class_instance_id: int) -> int:
        await self.db.execute(
            update(ClassInstance)
            .where(ClassInstance.id == class_instance_id)
            .values(waitlist_seq=ClassInstance.waitlist_seq + 1)
            .execution_options(synchronize_session=False)
        )
        # Same transaction holds the row lock, so this read sees our increment
        result = await self.db.execute(
            select(ClassInstance.waitlist_seq).where(ClassInstance.id == class_instance_id)
        )
        return result.scalar_one()

    async def _flip_status(
        self,
        booking_id: int,
        from_status: BookingStatus,
        to_status: BookingStatus,
        **values,
    ) -> bool:
        """Conditional status write; False means another request changed the booking first."""
        BookingStateMachine.validate_transition(from_status, to_status)
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == from_status.value)
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def spot_holder(self, class_instance_id: int, spot: str, exclude_booking_id: Optional[int]) -> Optional[int]:
        query = select(Booking.id).where(
            Booking.class_instance_id == class_instance_id,
            Booking.spot == spot,
            Booking.status.notin_(_INACTIVE),
        )
        if exclude_booking_id is not None:
            query = query.where(Booking.id != exclude_booking_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def insert_booking(self, booking: Booking, requested_spot: Optional[str] = None) -> Booking:
        """
        Insert a new booking row. The partial unique indexes decide duplicate
        members and taken spots; on violation the whole transaction is rolled back.
        """
        class_instance_id = booking.class_instance_id
        self.db.add(booking)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            if requested_spot and "spot" in str(exc.orig).lower():
                raise SpotTakenError(requested_spot) from exc
            raise AlreadyBookedError(
                "Member already has an active booking for this class",
                {"class_instance_id": class_instance_id},
            ) from exc
        return await self.get_booking(booking.id)

    async def claim_seat(
        self,
        class_instance_id: int,
        member_id: int,
        requested_spot: Optional[str] = None,
        pending: Optional[Booking] = None,
    ) -> SeatClaim:
        """
        Seat the member, or waitlist them when the class is full.

        `pending` seats an existing pending-payment booking instead of
        inserting a new row.
        """
        class_instance = await self.get_class(class_instance_id)
        if class_instance.status != ClassStatus.SCHEDULED.value:
            raise CapacityError(
                "Class is not scheduled",
                {"class_instance_id": class_instance_id, "status": class_instance.status},
            )

        pending_id = pending.id if pending is not None else None
        if requested_spot and await self.spot_holder(class_instance_id, requested_spot, pending_id):
            raise SpotTakenError(requested_spot)

        now = datetime.now(timezone.utc)
        granted = await self._take_seat(class_instance_id)

        if not granted:
            class_instance = await self.get_class(class_instance_id)
            if class_instance.status != ClassStatus.SCHEDULED.value:
                raise CapacityError(
                    "Class is not scheduled",
                    {"class_instance_id": class_instance_id, "status": class_instance.status},
                )

        if granted:
            values = {"spot": requested_spot, "booked_at": now, "waitlist_position": None}
            target = BookingStatus.BOOKED
        else:
            position = await self._next_waitlist_position(class_instance_id)
            # A waitlisted booking does not hold a spot label
            values = {"spot": None, "booked_at": None, "waitlist_position": position}
            target = BookingStatus.WAITLISTED

        if pending is not None:
            if not await self._flip_status(pending_id, BookingStatus.PENDING_PAYMENT, target, **values):
                if granted:
                    await self._give_back_seat(class_instance_id)
                raise ConcurrencyConflict(
                    "Pending booking changed while it was being seated",
                    {"booking_id": pending_id},
                )
            booking = await self.get_booking(pending_id)
        else:
            booking = await self.insert_booking(
                Booking(
                    class_instance_id=class_instance_id,
                    member_id=member_id,
                    status=target.value,
                    **values,
                ),
                requested_spot,
            )

        if granted:
            logger.info(
                "seat_claimed",
                class_instance_id=class_instance_id,
                member_id=member_id,
                booking_id=booking.id,
                spot=requested_spot,
            )
        else:
            logger.info(
                "waitlist_joined",
                class_instance_id=class_instance_id,
                member_id=member_id,
                booking_id=booking.id,
                position=booking.waitlist_position,
            )
        return SeatClaim(
            booking=booking,
            granted=granted,
            spot=booking.spot,
            waitlist_position=booking.waitlist_position,
        )

    async def release_seat(
        self,
        booking_id: int,
        promote_with: Optional[PromoteCallback] = None,
    ) -> SeatRelease:
        """
        Cancel the booking and, if it held a seat, hand the seat to the
        waitlist. Cancelling a cancelled booking is a no-op.
        """
        booking = await self.get_booking(booking_id)
        prior = BookingStatus(booking.status)
        if prior is BookingStatus.CANCELLED:
            return SeatRelease(booking=booking)

        held_seat = prior in SEATED_STATUSES
        class_instance_id = booking.class_instance_id

        if not await self._flip_status(
            booking_id,
            prior,
            BookingStatus.CANCELLED,
            cancelled_at=datetime.now(timezone.utc),
        ):
            raise ConcurrencyConflict("Booking changed while it was being cancelled", {"booking_id": booking_id})

        promoted: list[Booking] = []
        if held_seat:
            await self._give_back_seat(class_instance_id)
            logger.info("seat_released", class_instance_id=class_instance_id, booking_id=booking_id)
            promoted = await self.promote_waitlist(class_instance_id, promote_with, limit=1)

        return SeatRelease(booking=await self.get_booking(booking_id), promoted=promoted)

    async def promote_waitlist(
        self,
        class_instance_id: int,
        promote_with: Optional[PromoteCallback] = None,
        limit: Optional[int] = None,
    ) -> list[Booking]:
        """Fill free seats from the waitlist in position order."""
        result = await self.db.execute(
            select(Booking.id)
            .where(
                Booking.class_instance_id == class_instance_id,
                Booking.status == BookingStatus.WAITLISTED.value,
            )
            .order_by(Booking.waitlist_position, Booking.id)
        )
        candidate_ids = list(result.scalars().all())

        promoted: list[Booking] = []
        for candidate_id in candidate_ids:
            if limit is not None and len(promoted) >= limit:
                break
            if not await self._take_seat(class_instance_id):
                break

            if not await self._flip_status(
                candidate_id,
                BookingStatus.WAITLISTED,
                BookingStatus.BOOKED,
                booked_at=datetime.now(timezone.utc),
            ):
                # Cancelled by its owner while we were looking
                await self._give_back_seat(class_instance_id)
                continue

            booking = await self.get_booking(candidate_id)
            if promote_with is not None and not await promote_with(booking):
                await self.db.execute(
                    update(Booking)
                    .where(Booking.id == candidate_id, Booking.status == BookingStatus.BOOKED.value)
                    .values(status=BookingStatus.WAITLISTED.value, booked_at=None)
                    .execution_options(synchronize_session=False)
                )
                await self._give_back_seat(class_instance_id)
                waitlist_skips.inc()
                logger.info(
                    "waitlist_promotion_skipped",
                    class_instance_id=class_instance_id,
                    booking_id=candidate_id,
                    member_id=booking.member_id,
                    position=booking.waitlist_position,
                )
                continue

            waitlist_promotions.inc()
            logger.info(
                "waitlist_promoted",
                class_instance_id=class_instance_id,
                booking_id=candidate_id,
                member_id=booking.member_id,
                position=booking.waitlist_position,
            )
            promoted.append(booking)

        return promoted

    async def change_capacity(
        self,
        class_instance_id: int,
        new_capacity: int,
        promote_with: Optional[PromoteCallback] = None,
    ) -> tuple[ClassInstance, list[Booking]]:
        """
        Lowering capacity below the seats already held is rejected, never
        resolved by cancelling bookings. Raising it promotes from the waitlist.
        """
        if new_capacity <= 0:
            raise CapacityError("Capacity must be positive", {"max_capacity": new_capacity})

        class_instance = await self.get_class(class_instance_id)
        if class_instance.status != ClassStatus.SCHEDULED.value:
            raise CapacityError(
                "Only scheduled classes can change capacity",
                {"class_instance_id": class_instance_id, "status": class_instance.status},
            )
        old_capacity = class_instance.max_capacity

        result = await self.db.execute(
            update(ClassInstance)
            .where(
                ClassInstance.id == class_instance_id,
                ClassInstance.status == ClassStatus.SCHEDULED.value,
                ClassInstance.booked_count <= new_capacity,
            )
            .values(max_capacity=new_capacity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            class_instance = await self.get_class(class_instance_id)
            raise CapacityError(
                "Capacity cannot be lowered below the seats already booked",
                {"booked": class_instance.booked_count, "requested": new_capacity},
            )

        logger.info(
            "capacity_changed",
            class_instance_id=class_instance_id,
            old_capacity=old_capacity,
            new_capacity=new_capacity,
        )

        promoted: list[Booking] = []
        if new_capacity > old_capacity:
            promoted = await self.promote_waitlist(
                class_instance_id, promote_with, limit=new_capacity - old_capacity
            )
        return await self.get_class(class_instance_id), promoted

    async def availability(self, class_instance_id: int) -> dict:
        """Read straight from the class row; never cached."""
        class_instance = await self.get_class(class_instance_id)
        result = await self.db.execute(
            select(func.count(Booking.id)).where(
                Booking.class_instance_id == class_instance_id,
                Booking.status == BookingStatus.WAITLISTED.value,
            )
        )
        return {
            "class_instance_id": class_instance_id,
            "capacity": class_instance.max_capacity,
            "booked": class_instance.booked_count,
            "waitlisted": result.scalar_one(),
        }

    async def seated_count(self, class_instance_id: int) -> int:
        """Count of bookings holding a seat; always <= max_capacity."""
        result = await self.db.execute(
            select(func.count(Booking.id)).where(
                Booking.class_instance_id == class_instance_id,
                Booking.status.in_(_SEATED),
            )
        )
        return result.scalar_one()
