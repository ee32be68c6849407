"""
ClassInstance: one dated occurrence of a class with a fixed capacity.

Key design decisions:
- `booked_count` is the authoritative seat counter. Seat claims are a single
  conditional UPDATE on this row (booked_count < max_capacity), never a
  COUNT followed by an INSERT.
- `waitlist_seq` hands out waitlist positions. It only ever grows, so a
  cancelled waitlist entry never frees a position for reuse.
- Rows are produced by template expansion outside the engine and are never
  deleted.
"""

from sqlalchemy import CheckConstraint, Column, Date, ForeignKey, Index, Integer, String, Time
from sqlalchemy.orm import relationship

from studio_booking.db.base import Base, TimestampMixin
from studio_booking.domain.enums import ClassStatus


class ClassInstance(Base, TimestampMixin):
    __tablename__ = "class_instances"

    id = Column(Integer, primary_key=True, index=True)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="Class")
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    max_capacity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=ClassStatus.SCHEDULED.value)

    booked_count = Column(Integer, nullable=False, default=0)
    waitlist_seq = Column(Integer, nullable=False, default=0)

    studio = relationship("Studio", lazy="joined")

    __table_args__ = (
        CheckConstraint("max_capacity > 0", name="check_max_capacity_positive"),
        CheckConstraint("booked_count >= 0", name="check_booked_count_non_negative"),
        # Final safety net against overselling
        CheckConstraint("booked_count <= max_capacity", name="check_booked_lte_capacity"),
        CheckConstraint(
            "status IN (%s)" % ", ".join(f"'{s.value}'" for s in ClassStatus),
            name="check_class_status",
        ),
        Index("ix_class_instances_studio_date", "studio_id", "date"),
    )

    def __repr__(self) -> str:
        return (
            f"<ClassInstance(id={self.id}, date={self.date}, "
            f"booked={self.booked_count}/{self.max_capacity}, status={self.status})>"
        )
