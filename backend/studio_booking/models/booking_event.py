"""
Outbox of booking lifecycle events.

Notification delivery and billing live outside the engine. They consume these
rows; the engine only appends them in the same transaction as the state
change they describe.
"""

from sqlalchemy import JSON, Column, ForeignKey, Integer, String, UniqueConstraint

from studio_booking.db.base import Base, TimestampMixin


class BookingEvent(Base, TimestampMixin):
    __tablename__ = "booking_events"

    id = Column(Integer, primary_key=True, index=True)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False, index=True)
    booking_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    dedupe_key = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="pending")

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_booking_event_dedupe_key"),
    )

    def __repr__(self) -> str:
        return f"<BookingEvent(id={self.id}, type={self.event_type}, booking={self.booking_id})>"
