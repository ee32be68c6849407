"""
Reservation and booking endpoints.

POST /classes/{id}/reservations answers with:
  201 - seated
  202 - accepted onto the waitlist
  402 - a drop-in payment is required; the body carries the payment reference
"""

from datetime import datetime, timezone
from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import PermissionDenied
from studio_booking.core.logging import get_logger
from studio_booking.core.security import Principal, ensure_studio, get_current_principal, require_staff
from studio_booking.db.session import after_commit, get_db
from studio_booking.domain.enums import BookingStatus
from studio_booking.domain.policy import ensure_aware
from studio_booking.models.booking import Booking
from studio_booking.schemas.booking import BookingResponse, PaymentRequiredResponse, ReservationCreate
from studio_booking.services.booking_service import BookingOrchestrator, PaymentRequired
from studio_booking.services.cache_service import invalidate_schedule_cache
from studio_booking.services.capacity_ledger import CapacityLedger

logger = get_logger(__name__)
router = APIRouter(tags=["Bookings"])


async def _booking_in_scope(
    db: AsyncSession,
    booking_id: int,
    principal: Principal,
    owner_allowed: bool = True,
) -> Booking:
    booking = await CapacityLedger(db).get_booking(booking_id)
    ensure_studio(principal, booking.class_instance.studio_id)
    if principal.is_staff:
        return booking
    if owner_allowed and booking.member_id == principal.member_id:
        return booking
    raise PermissionDenied("Not allowed to act on this booking")


@router.post(
    "/classes/{class_instance_id}/reservations",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        202: {"model": BookingResponse, "description": "Waitlisted"},
        402: {"model": PaymentRequiredResponse, "description": "Drop-in payment required"},
    },
)
async def reserve_class(
    class_instance_id: int,
    response: Response,
    payload: Optional[ReservationCreate] = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Reserve a seat with the member's best available credit.

    A full class puts the member on the waitlist; credit is only spent when
    they are promoted.
    """
    payload = payload or ReservationCreate()
    class_instance = await CapacityLedger(db).get_class(class_instance_id)
    ensure_studio(principal, class_instance.studio_id)

    result = await BookingOrchestrator(db).reserve(
        member_id=principal.member_id,
        class_instance_id=class_instance_id,
        coupon_code=payload.coupon_code,
        requested_spot=payload.spot,
    )
    after_commit(db, partial(invalidate_schedule_cache, class_instance.studio_id))

    if isinstance(result, PaymentRequired):
        body = PaymentRequiredResponse(
            booking_id=result.booking_id,
            reference=result.reference,
            base_price_cents=result.base_price_cents,
            amount_cents=result.amount_cents,
            coupon_id=result.coupon_id,
        )
        return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body.model_dump())

    if result.status == BookingStatus.WAITLISTED.value:
        response.status_code = status.HTTP_202_ACCEPTED
    return BookingResponse.model_validate(result)


@router.delete("/bookings/{booking_id}", response_model=BookingResponse)
async def cancel_booking(
    booking_id: int,
    as_of: Optional[datetime] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel a booking. Inside the studio's cancellation window the booking is
    flagged as a late cancel and, by studio policy, its credit is forfeited.
    Cancelling an already cancelled booking returns it unchanged.

    Only staff may backdate `as_of`; a member's value is never earlier than now.
    """
    booking = await _booking_in_scope(db, booking_id, principal)
    studio_id = booking.class_instance.studio_id

    if as_of is not None and not principal.is_staff:
        as_of = max(ensure_aware(as_of), datetime.now(timezone.utc))

    cancelled = await BookingOrchestrator(db).cancel(booking_id, as_of=as_of)
    after_commit(db, partial(invalidate_schedule_cache, studio_id))
    return BookingResponse.model_validate(cancelled)


@router.post("/bookings/{booking_id}/check-in", response_model=BookingResponse)
async def check_in(
    booking_id: int,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    await _booking_in_scope(db, booking_id, principal, owner_allowed=False)
    booking = await BookingOrchestrator(db).check_in(booking_id)
    return BookingResponse.model_validate(booking)


@router.post("/bookings/{booking_id}/no-show", response_model=BookingResponse)
async def mark_no_show(
    booking_id: int,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Record a no-show. The member's credit is forfeited; the seat is not reopened."""
    await _booking_in_scope(db, booking_id, principal, owner_allowed=False)
    booking = await BookingOrchestrator(db).mark_no_show(booking_id)
    return BookingResponse.model_validate(booking)


@router.get("/bookings", response_model=list[BookingResponse])
async def list_my_bookings(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """All bookings of the authenticated member at their studio, newest first."""
    bookings = await BookingOrchestrator(db).list_member_bookings(principal.member_id, principal.studio_id)
    return [BookingResponse.model_validate(b) for b in bookings]
