"""Initial schema: studios, plans, classes, credits, coupons, bookings and the event outbox.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_BOOKING = "status NOT IN ('cancelled', 'no_show')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "studios",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default=sa.text("'UTC'")),
        sa.Column("cancellation_window_hours", sa.Integer(), nullable=False, server_default=sa.text("12")),
        sa.Column("late_cancel_fee_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_cancel_forfeits_credit", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("cancellation_window_hours >= 0", name="check_cancellation_window_non_negative"),
        sa.CheckConstraint("late_cancel_fee_cents >= 0", name="check_late_cancel_fee_non_negative"),
    )
    op.create_index("ix_studios_id", "studios", ["id"])

    op.create_table(
        "membership_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("class_limit", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint(
            "type IN ('unlimited', 'limited', 'class_pack', 'drop_in', 'intro')",
            name="check_plan_type",
        ),
        sa.CheckConstraint("price_cents >= 0", name="check_plan_price_non_negative"),
    )
    op.create_index("ix_membership_plans_id", "membership_plans", ["id"])
    # Drop-in pricing looks up the cheapest active drop_in plan of a studio
    op.create_index("ix_membership_plans_studio_type", "membership_plans", ["studio_id", "type"])

    op.create_table(
        "class_instances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=sa.text("'Class'")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("max_capacity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'scheduled'")),
        sa.Column("booked_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("waitlist_seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint("max_capacity > 0", name="check_max_capacity_positive"),
        sa.CheckConstraint("booked_count >= 0", name="check_booked_count_non_negative"),
        sa.CheckConstraint("booked_count <= max_capacity", name="check_booked_lte_capacity"),
        sa.CheckConstraint(
            "status IN ('scheduled', 'in_progress', 'completed', 'cancelled')",
            name="check_class_status",
        ),
    )
    op.create_index("ix_class_instances_id", "class_instances", ["id"])
    op.create_index("ix_class_instances_studio_id", "class_instances", ["studio_id"])
    # Schedule listings are always "one studio, a range of dates"
    op.create_index("ix_class_instances_studio_date", "class_instances", ["studio_id", "date"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("membership_plans.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("classes_used_this_period", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint("classes_used_this_period >= 0", name="check_classes_used_non_negative"),
        sa.CheckConstraint(
            "status IN ('active', 'past_due', 'cancelled', 'paused')",
            name="check_subscription_status",
        ),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index("ix_subscriptions_member_studio", "subscriptions", ["member_id", "studio_id"])

    for table, prefix in (("class_passes", "pass"), ("comp_classes", "comp")):
        extra = (
            [sa.Column("plan_id", sa.Integer(), sa.ForeignKey("membership_plans.id"), nullable=True)]
            if table == "class_passes"
            else [
                sa.Column("granted_by", sa.Integer(), nullable=True),
                sa.Column("reason", sa.String(255), nullable=True),
            ]
        )
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
            sa.Column("total_classes", sa.Integer(), nullable=False),
            sa.Column("remaining_classes", sa.Integer(), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            *extra,
            *_timestamps(),
            sa.CheckConstraint("total_classes > 0", name=f"check_{prefix}_total_positive"),
            # A debit against an empty card must fail, never go negative
            sa.CheckConstraint("remaining_classes >= 0", name=f"check_{prefix}_remaining_non_negative"),
            sa.CheckConstraint("remaining_classes <= total_classes", name=f"check_{prefix}_remaining_lte_total"),
        )
        op.create_index(f"ix_{table}_id", table, ["id"])
        op.create_index(f"ix_{table}_member_studio", table, ["member_id", "studio_id"])

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("booking_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'held'")),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("units IN (0, 1)", name="check_reservation_units"),
        sa.CheckConstraint(
            "source IN ('subscription', 'class_pass', 'comp')",
            name="check_reservation_source",
        ),
        sa.CheckConstraint(
            "status IN ('held', 'released', 'forfeited')",
            name="check_reservation_status",
        ),
    )
    op.create_index("ix_credit_reservations_id", "credit_reservations", ["id"])
    op.create_index("ix_credit_reservations_booking_id", "credit_reservations", ["booking_id"])

    op.create_table(
        "coupons",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("applies_to", sa.String(20), nullable=False, server_default=sa.text("'any'")),
        sa.Column("plan_ids", sa.JSON(), nullable=False),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("current_redemptions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("studio_id", "code", name="uq_coupon_studio_code"),
        sa.CheckConstraint("value > 0", name="check_coupon_value_positive"),
        sa.CheckConstraint("type IN ('percent_off', 'amount_off', 'free_classes')", name="check_coupon_type"),
        sa.CheckConstraint(
            "applies_to IN ('any', 'plan', 'drop_in', 'new_member')",
            name="check_coupon_applies_to",
        ),
        sa.CheckConstraint("current_redemptions >= 0", name="check_redemptions_non_negative"),
        # The conditional increment in redeem() keeps this true; the CHECK backs it up
        sa.CheckConstraint(
            "max_redemptions IS NULL OR current_redemptions <= max_redemptions",
            name="check_redemptions_within_limit",
        ),
    )
    op.create_index("ix_coupons_id", "coupons", ["id"])

    op.create_table(
        "coupon_redemptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("coupon_id", sa.Integer(), sa.ForeignKey("coupons.id"), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("applied_to_type", sa.String(32), nullable=False),
        sa.Column("applied_to_id", sa.String(64), nullable=False),
        sa.Column("discount_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "coupon_id", "applied_to_type", "applied_to_id", name="uq_coupon_redemption_target"
        ),
    )
    op.create_index("ix_coupon_redemptions_id", "coupon_redemptions", ["id"])
    op.create_index("ix_coupon_redemptions_coupon_id", "coupon_redemptions", ["coupon_id"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("class_instance_id", sa.Integer(), sa.ForeignKey("class_instances.id"), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'booked'")),
        sa.Column("spot", sa.String(32), nullable=True),
        sa.Column("waitlist_position", sa.Integer(), nullable=True),
        sa.Column("credit_source", sa.String(20), nullable=True),
        sa.Column(
            "credit_reservation_id", sa.Integer(), sa.ForeignKey("credit_reservations.id"), nullable=True
        ),
        sa.Column("payment_reference", sa.String(64), nullable=True),
        sa.Column("base_price_cents", sa.Integer(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("coupon_id", sa.Integer(), sa.ForeignKey("coupons.id"), nullable=True),
        sa.Column("late_cancel", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("late_cancel_fee_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("booked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("payment_reference", name="uq_bookings_payment_reference"),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'booked', 'confirmed', 'waitlisted', 'cancelled', 'no_show')",
            name="check_booking_status",
        ),
        sa.CheckConstraint(
            "credit_source IS NULL OR credit_source IN ('subscription', 'class_pass', 'comp', 'drop_in')",
            name="check_booking_credit_source",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_class_instance_id", "bookings", ["class_instance_id"])
    op.create_index("ix_bookings_member_id", "bookings", ["member_id"])
    # PARTIAL UNIQUE INDEXES: only live bookings compete for a spot label or a
    # member slot. Cancelled and no-show rows are history and never block.
    op.create_index(
        "uq_bookings_active_spot",
        "bookings",
        ["class_instance_id", "spot"],
        unique=True,
        postgresql_where=sa.text(f"spot IS NOT NULL AND {ACTIVE_BOOKING}"),
    )
    op.create_index(
        "uq_bookings_active_member",
        "bookings",
        ["member_id", "class_instance_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_BOOKING),
    )
    # Promotion scans one class's waitlisted rows in position order
    op.create_index(
        "ix_bookings_class_waitlist",
        "bookings",
        ["class_instance_id", "status", "waitlist_position"],
    )

    op.create_table(
        "booking_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        *_timestamps(),
        sa.UniqueConstraint("dedupe_key", name="uq_booking_event_dedupe_key"),
    )
    op.create_index("ix_booking_events_id", "booking_events", ["id"])
    op.create_index("ix_booking_events_studio_id", "booking_events", ["studio_id"])
    op.create_index("ix_booking_events_booking_id", "booking_events", ["booking_id"])


def downgrade() -> None:
    op.drop_table("booking_events")
    op.drop_table("bookings")
    op.drop_table("coupon_redemptions")
    op.drop_table("coupons")
    op.drop_table("credit_reservations")
    op.drop_table("comp_classes")
    op.drop_table("class_passes")
    op.drop_table("subscriptions")
    op.drop_table("class_instances")
    op.drop_table("membership_plans")
    op.drop_table("studios")
