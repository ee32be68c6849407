"""
Studio (tenant) and the membership plans it sells.

Studios are created by onboarding, outside the engine. The engine reads the
cancellation policy fields and the drop-in price from here.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from studio_booking.db.base import Base, TimestampMixin
from studio_booking.domain.enums import PlanType


class Studio(Base, TimestampMixin):
    __tablename__ = "studios"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    cancellation_window_hours = Column(Integer, nullable=False, default=12)
    late_cancel_fee_cents = Column(Integer, nullable=False, default=0)
    late_cancel_forfeits_credit = Column(Boolean, nullable=False, default=True)

    plans = relationship("MembershipPlan", back_populates="studio", lazy="selectin")

    __table_args__ = (
        CheckConstraint("cancellation_window_hours >= 0", name="check_cancellation_window_non_negative"),
        CheckConstraint("late_cancel_fee_cents >= 0", name="check_late_cancel_fee_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Studio(id={self.id}, name={self.name}, tz={self.timezone})>"


class MembershipPlan(Base, TimestampMixin):
    __tablename__ = "membership_plans"

    id = Column(Integer, primary_key=True, index=True)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    class_limit = Column(Integer, nullable=True)  # per-period ceiling for limited plans
    active = Column(Boolean, nullable=False, default=True)

    studio = relationship("Studio", back_populates="plans")

    __table_args__ = (
        CheckConstraint(
            "type IN (%s)" % ", ".join(f"'{t.value}'" for t in PlanType),
            name="check_plan_type",
        ),
        CheckConstraint("price_cents >= 0", name="check_plan_price_non_negative"),
        Index("ix_membership_plans_studio_type", "studio_id", "type"),
    )

    def __repr__(self) -> str:
        return f"<MembershipPlan(id={self.id}, type={self.type}, price={self.price_cents})>"
