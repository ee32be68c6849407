"""
Class schedule reads and staff-side class administration.
"""

from datetime import date
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import ConcurrencyConflict
from studio_booking.core.logging import get_logger
from studio_booking.domain.enums import BookingStatus, ClassStatus
from studio_booking.domain.state_machine import ClassStateMachine
from studio_booking.models.booking import Booking
from studio_booking.models.class_instance import ClassInstance
from studio_booking.services.booking_service import BookingOrchestrator
from studio_booking.services.capacity_ledger import CapacityLedger

logger = get_logger(__name__)


async def list_schedule(
    db: AsyncSession,
    studio_id: int,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> list[ClassInstance]:
    """Classes of one studio in date order, optionally bounded by date."""
    query = select(ClassInstance).where(ClassInstance.studio_id == studio_id)
    if date_from is not None:
        query = query.where(ClassInstance.date >= date_from)
    if date_to is not None:
        query = query.where(ClassInstance.date <= date_to)

    result = await db.execute(query.order_by(ClassInstance.date, ClassInstance.start_time, ClassInstance.id))
    return list(result.scalars().unique().all())


async def get_roster(db: AsyncSession, class_instance_id: int) -> dict:
    class_instance = await CapacityLedger(db).get_class(class_instance_id)
    result = await db.execute(
        select(Booking)
        .where(
            Booking.class_instance_id == class_instance_id,
            Booking.status.in_(
                [
                    BookingStatus.BOOKED.value,
                    BookingStatus.CONFIRMED.value,
                    BookingStatus.WAITLISTED.value,
                ]
            ),
        )
        .order_by(Booking.waitlist_position, Booking.booked_at, Booking.id)
    )
    bookings = list(result.scalars().unique().all())
    return {
        "class_instance_id": class_instance.id,
        "booked": [b for b in bookings if b.status != BookingStatus.WAITLISTED.value],
        "waitlisted": [b for b in bookings if b.status == BookingStatus.WAITLISTED.value],
    }


async def update_status(
    db: AsyncSession,
    class_instance_id: int,
    new_status: ClassStatus,
) -> tuple[ClassInstance, Optional[int]]:
    """
    Move a class along its lifecycle. Cancelling is delegated to the
    orchestrator because every active booking must be unwound with it.
    """
    if new_status is ClassStatus.CANCELLED:
        return await BookingOrchestrator(db).cancel_class(class_instance_id)

    ledger = CapacityLedger(db)
    class_instance = await ledger.get_class(class_instance_id)
    prior = ClassStatus(class_instance.status)
    ClassStateMachine.validate_transition(prior, new_status)

    result = await db.execute(
        update(ClassInstance)
        .where(ClassInstance.id == class_instance_id, ClassInstance.status == prior.value)
        .values(status=new_status.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConcurrencyConflict(
            "Class changed while its status was being updated",
            {"class_instance_id": class_instance_id},
        )

    logger.info(
        "class_status_changed",
        class_instance_id=class_instance_id,
        from_status=prior.value,
        to_status=new_status.value,
    )
    return await ledger.get_class(class_instance_id), None
