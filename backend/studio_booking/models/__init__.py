from studio_booking.models.studio import Studio, MembershipPlan
from studio_booking.models.class_instance import ClassInstance
from studio_booking.models.booking import Booking
from studio_booking.models.credit import Subscription, ClassPass, CompClass, CreditReservation
from studio_booking.models.coupon import Coupon, CouponRedemption
from studio_booking.models.booking_event import BookingEvent

__all__ = [
    "Studio", "MembershipPlan", "ClassInstance", "Booking",
    "Subscription", "ClassPass", "CompClass", "CreditReservation",
    "Coupon", "CouponRedemption", "BookingEvent",
]
