"""
Pydantic schemas for reservation and booking request/response validation.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class ReservationCreate(BaseModel):
    coupon_code: Optional[str] = Field(None, min_length=1, max_length=64)
    spot: Optional[str] = Field(None, min_length=1, max_length=32)


class BookingResponse(BaseModel):
    id: int
    class_instance_id: int
    member_id: int
    status: str
    spot: Optional[str]
    waitlist_position: Optional[int]
    credit_source: Optional[str]
    credit_reservation_id: Optional[int]
    payment_reference: Optional[str]
    base_price_cents: Optional[int]
    amount_cents: Optional[int]
    coupon_id: Optional[int]
    late_cancel: bool
    late_cancel_fee_cents: int
    booked_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    model_config = {"from_attributes": True}


class PaymentRequiredResponse(BaseModel):
    """Returned with 402 when the reservation waits on an external payment."""

    status: str = "payment_required"
    booking_id: int
    reference: str
    base_price_cents: int
    amount_cents: int
    coupon_id: Optional[int] = None
