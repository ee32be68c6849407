from studio_booking.schemas.booking import ReservationCreate, BookingResponse, PaymentRequiredResponse
from studio_booking.schemas.class_instance import (
    ClassInstanceResponse, ScheduleResponse, AvailabilityResponse, RosterResponse,
    CapacityUpdate, CapacityUpdateResponse, StatusUpdate, StatusUpdateResponse,
)
from studio_booking.schemas.coupon import (
    CouponValidateRequest, CouponValidateResponse, CouponRedeemRequest,
    CouponRedemptionResponse, CouponCreate, CouponResponse,
)
from studio_booking.schemas.credit import CreditSummaryResponse, CompGrantCreate, CompGrantResponse
from studio_booking.schemas.payment import PaymentResolved

__all__ = [
    "ReservationCreate", "BookingResponse", "PaymentRequiredResponse",
    "ClassInstanceResponse", "ScheduleResponse", "AvailabilityResponse", "RosterResponse",
    "CapacityUpdate", "CapacityUpdateResponse", "StatusUpdate", "StatusUpdateResponse",
    "CouponValidateRequest", "CouponValidateResponse", "CouponRedeemRequest",
    "CouponRedemptionResponse", "CouponCreate", "CouponResponse",
    "CreditSummaryResponse", "CompGrantCreate", "CompGrantResponse",
    "PaymentResolved",
]
