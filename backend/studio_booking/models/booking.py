"""
Booking model linking one member to one class instance.

Key design decisions:
- Bookings are never deleted; cancellation and no-show are statuses so that
  occupancy history and billing audit trails survive.
- Partial unique index on (class_instance_id, spot) over active bookings: a
  seat label can be reused once its holder cancels.
- Partial unique index on (member_id, class_instance_id) over active bookings:
  one live booking per member per class.
- `credit_reservation_id` points at the exact credit unit that paid for the
  seat so cancellation refunds the same unit.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship

from studio_booking.db.base import Base, TimestampMixin
from studio_booking.domain.enums import BookingStatus, CreditSource

_ACTIVE = "status NOT IN ('cancelled', 'no_show')"


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    class_instance_id = Column(Integer, ForeignKey("class_instances.id"), nullable=False, index=True)
    member_id = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=BookingStatus.BOOKED.value)
    spot = Column(String(32), nullable=True)
    waitlist_position = Column(Integer, nullable=True)

    credit_source = Column(String(20), nullable=True)
    credit_reservation_id = Column(Integer, ForeignKey("credit_reservations.id"), nullable=True)

    # Drop-in payment, fulfilled out of band by the payment collaborator
    payment_reference = Column(String(64), nullable=True, unique=True)
    base_price_cents = Column(Integer, nullable=True)
    amount_cents = Column(Integer, nullable=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)

    late_cancel = Column(Boolean, nullable=False, default=False)
    late_cancel_fee_cents = Column(Integer, nullable=False, default=0)

    booked_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    class_instance = relationship("ClassInstance", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "status IN (%s)" % ", ".join(f"'{s.value}'" for s in BookingStatus),
            name="check_booking_status",
        ),
        CheckConstraint(
            "credit_source IS NULL OR credit_source IN (%s)"
            % ", ".join(f"'{s.value}'" for s in CreditSource),
            name="check_booking_credit_source",
        ),
        Index(
            "uq_bookings_active_spot",
            "class_instance_id",
            "spot",
            unique=True,
            postgresql_where=text(f"spot IS NOT NULL AND {_ACTIVE}"),
            sqlite_where=text(f"spot IS NOT NULL AND {_ACTIVE}"),
        ),
        Index(
            "uq_bookings_active_member",
            "member_id",
            "class_instance_id",
            unique=True,
            postgresql_where=text(_ACTIVE),
            sqlite_where=text(_ACTIVE),
        ),
        # Waitlist promotion scans waitlisted rows in position order
        Index("ix_bookings_class_waitlist", "class_instance_id", "status", "waitlist_position"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, member={self.member_id}, "
            f"class={self.class_instance_id}, status={self.status})>"
        )
