"""
Coupons and their append-only redemption log.

Key design decisions:
- current_redemptions is only ever changed by a conditional increment inside
  redeem; the CHECK keeps it within max_redemptions when bounded.
- The unique key on (coupon_id, applied_to_type, applied_to_id) makes a
  redemption row the single source of truth for "already applied here", so
  retries are idempotent without re-running business rules.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from studio_booking.db.base import Base, TimestampMixin
from studio_booking.domain.enums import CouponScope, CouponType


class Coupon(Base, TimestampMixin):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False)
    code = Column(String(64), nullable=False)
    type = Column(String(20), nullable=False)
    value = Column(Integer, nullable=False)
    applies_to = Column(String(20), nullable=False, default=CouponScope.ANY.value)
    plan_ids = Column(JSON, nullable=False, default=list)
    max_redemptions = Column(Integer, nullable=True)  # NULL = unlimited
    current_redemptions = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("studio_id", "code", name="uq_coupon_studio_code"),
        CheckConstraint("value > 0", name="check_coupon_value_positive"),
        CheckConstraint(
            "type IN (%s)" % ", ".join(f"'{t.value}'" for t in CouponType),
            name="check_coupon_type",
        ),
        CheckConstraint(
            "applies_to IN (%s)" % ", ".join(f"'{s.value}'" for s in CouponScope),
            name="check_coupon_applies_to",
        ),
        CheckConstraint("current_redemptions >= 0", name="check_redemptions_non_negative"),
        CheckConstraint(
            "max_redemptions IS NULL OR current_redemptions <= max_redemptions",
            name="check_redemptions_within_limit",
        ),
    )

    def __repr__(self) -> str:
        return f"<Coupon(id={self.id}, code={self.code}, used={self.current_redemptions}/{self.max_redemptions})>"


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False, index=True)
    member_id = Column(Integer, nullable=False)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False)
    applied_to_type = Column(String(32), nullable=False)
    applied_to_id = Column(String(64), nullable=False)
    discount_amount_cents = Column(Integer, nullable=False, default=0)
    redeemed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "coupon_id",
            "applied_to_type",
            "applied_to_id",
            name="uq_coupon_redemption_target",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CouponRedemption(id={self.id}, coupon={self.coupon_id}, "
            f"target={self.applied_to_type}:{self.applied_to_id})>"
        )
