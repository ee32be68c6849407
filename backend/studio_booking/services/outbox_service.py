"""
Booking event outbox.

Events are appended in the same transaction as the state change they
describe, so a rolled-back reservation never leaks a notification. External
collaborators (notifications, billing) read pending rows and mark them
delivered; the engine never calls them directly.
"""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.logging import get_logger
from studio_booking.models.booking_event import BookingEvent

logger = get_logger(__name__)

BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_WAITLISTED = "booking_waitlisted"
BOOKING_CANCELLED = "booking_cancelled"
WAITLIST_PROMOTED = "waitlist_promoted"
PAYMENT_REQUESTED = "payment_requested"
PAYMENT_FAILED = "payment_failed"
LATE_CANCEL_FEE = "late_cancel_fee"
DROP_IN_REFUND_REQUESTED = "drop_in_refund_requested"
NO_SHOW_RECORDED = "no_show_recorded"
CLASS_CANCELLED = "class_cancelled"


class OutboxService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def emit(
        self,
        event_type: str,
        studio_id: int,
        booking_id: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
    ) -> BookingEvent:
        """Append an event once per dedupe key; a repeat returns the existing row."""
        key = dedupe_key or f"{event_type}:{booking_id}"

        existing = await self.db.execute(select(BookingEvent).where(BookingEvent.dedupe_key == key))
        event = existing.scalar_one_or_none()
        if event is not None:
            return event

        event = BookingEvent(
            event_type=event_type,
            studio_id=studio_id,
            booking_id=booking_id,
            payload=payload or {},
            dedupe_key=key,
            status="pending",
        )
        self.db.add(event)
        await self.db.flush()

        logger.info("outbox_event_emitted", event_type=event_type, booking_id=booking_id, dedupe_key=key)
        return event

    async def pending(self, studio_id: Optional[int] = None, limit: int = 100) -> list[BookingEvent]:
        query = select(BookingEvent).where(BookingEvent.status == "pending")
        if studio_id is not None:
            query = query.where(BookingEvent.studio_id == studio_id)
        result = await self.db.execute(query.order_by(BookingEvent.id).limit(limit))
        return list(result.scalars().all())
