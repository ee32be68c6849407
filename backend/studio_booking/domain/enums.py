from enum import Enum


class ClassStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Statuses that hold a seat and count against max_capacity
SEATED_STATUSES = (BookingStatus.BOOKED, BookingStatus.CONFIRMED)
# Statuses that block the member from booking the same class again
INACTIVE_STATUSES = (BookingStatus.CANCELLED, BookingStatus.NO_SHOW)


class CreditSource(str, Enum):
    SUBSCRIPTION = "subscription"
    CLASS_PASS = "class_pass"
    COMP = "comp"
    DROP_IN = "drop_in"


class CreditReservationStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    FORFEITED = "forfeited"


class PlanType(str, Enum):
    UNLIMITED = "unlimited"
    LIMITED = "limited"
    CLASS_PACK = "class_pack"
    DROP_IN = "drop_in"
    INTRO = "intro"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class CouponType(str, Enum):
    PERCENT_OFF = "percent_off"
    AMOUNT_OFF = "amount_off"
    FREE_CLASSES = "free_classes"


class CouponScope(str, Enum):
    ANY = "any"
    PLAN = "plan"
    DROP_IN = "drop_in"
    NEW_MEMBER = "new_member"


class CouponPurpose(str, Enum):
    """What the member is trying to pay for when a coupon is presented."""

    DROP_IN = "drop_in"
    PLAN = "plan"
    CLASS_PACK = "class_pack"
    PRIVATE_BOOKING = "private_booking"


class InvalidCouponReason(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    OUTSIDE_VALIDITY_WINDOW = "outside_validity_window"
    REDEMPTION_LIMIT_REACHED = "redemption_limit_reached"
    SCOPE_MISMATCH = "scope_mismatch"
