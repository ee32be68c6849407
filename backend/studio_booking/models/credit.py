"""
Credit accounts and the reservations drawn against them.

Three concrete ledgers hold a member's right to attend classes:
- Subscription: a period allowance. Unlimited plans have no counter; limited
  plans count classes_used_this_period up to the plan's class_limit.
- ClassPass: a purchased pack of classes.
- CompClass: classes granted by staff (or by a free_classes coupon).

ClassPass and CompClass share the same punch-card shape. The CHECK constraints
are the last line of defence: a debit that would go negative fails instead of
clamping.

CreditReservation is the reservation reference handed back by the ledger. It
records exactly which unit was debited so it can be refunded once.
"""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import declared_attr, relationship

from studio_booking.db.base import Base, TimestampMixin
from studio_booking.domain.enums import CreditReservationStatus, CreditSource, SubscriptionStatus


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, nullable=False)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("membership_plans.id"), nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    classes_used_this_period = Column(Integer, nullable=False, default=0)

    plan = relationship("MembershipPlan", lazy="joined")

    __table_args__ = (
        CheckConstraint("classes_used_this_period >= 0", name="check_classes_used_non_negative"),
        CheckConstraint(
            "status IN (%s)" % ", ".join(f"'{s.value}'" for s in SubscriptionStatus),
            name="check_subscription_status",
        ),
        Index("ix_subscriptions_member_studio", "member_id", "studio_id"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, member={self.member_id}, status={self.status})>"


class PunchCardMixin:
    member_id = Column(Integer, nullable=False)

    @declared_attr
    def studio_id(cls):
        return Column(Integer, ForeignKey("studios.id"), nullable=False)

    total_classes = Column(Integer, nullable=False)
    remaining_classes = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(id={self.id}, member={self.member_id}, "
            f"remaining={self.remaining_classes}/{self.total_classes})>"
        )


class ClassPass(PunchCardMixin, Base, TimestampMixin):
    __tablename__ = "class_passes"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("membership_plans.id"), nullable=True)

    __table_args__ = (
        CheckConstraint("total_classes > 0", name="check_pass_total_positive"),
        CheckConstraint("remaining_classes >= 0", name="check_pass_remaining_non_negative"),
        CheckConstraint("remaining_classes <= total_classes", name="check_pass_remaining_lte_total"),
        Index("ix_class_passes_member_studio", "member_id", "studio_id"),
    )


class CompClass(PunchCardMixin, Base, TimestampMixin):
    __tablename__ = "comp_classes"

    id = Column(Integer, primary_key=True, index=True)
    granted_by = Column(Integer, nullable=True)
    reason = Column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("total_classes > 0", name="check_comp_total_positive"),
        CheckConstraint("remaining_classes >= 0", name="check_comp_remaining_non_negative"),
        CheckConstraint("remaining_classes <= total_classes", name="check_comp_remaining_lte_total"),
        Index("ix_comp_classes_member_studio", "member_id", "studio_id"),
    )


class CreditReservation(Base, TimestampMixin):
    __tablename__ = "credit_reservations"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, nullable=False)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False)
    source = Column(String(20), nullable=False)
    source_id = Column(Integer, nullable=False)
    units = Column(Integer, nullable=False, default=1)  # 0 for unlimited subscriptions
    booking_id = Column(Integer, nullable=True, index=True)
    status = Column(String(20), nullable=False, default=CreditReservationStatus.HELD.value)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("units IN (0, 1)", name="check_reservation_units"),
        CheckConstraint(
            "source IN (%s)" % ", ".join(
                f"'{s.value}'" for s in CreditSource if s is not CreditSource.DROP_IN
            ),
            name="check_reservation_source",
        ),
        CheckConstraint(
            "status IN (%s)" % ", ".join(f"'{s.value}'" for s in CreditReservationStatus),
            name="check_reservation_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<CreditReservation(id={self.id}, source={self.source}:{self.source_id}, status={self.status})>"
