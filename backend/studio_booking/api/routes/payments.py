"""
Callback entry point for the external payment collaborator.
"""

import hmac
from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.core.security import Unauthenticated
from studio_booking.db.session import after_commit, get_db
from studio_booking.schemas.booking import BookingResponse
from studio_booking.schemas.payment import PaymentResolved
from studio_booking.services.booking_service import BookingOrchestrator
from studio_booking.services.cache_service import invalidate_schedule_cache

logger = get_logger(__name__)
settings = get_settings()
router = APIRouter(prefix="/payments", tags=["Payments"])


def verify_callback_token(x_payment_token: Optional[str] = Header(None)) -> None:
    if x_payment_token is None or not hmac.compare_digest(x_payment_token, settings.PAYMENT_CALLBACK_TOKEN):
        raise Unauthenticated("Invalid payment callback token")


@router.post("/resolved", response_model=BookingResponse, dependencies=[Depends(verify_callback_token)])
async def payment_resolved(
    payload: PaymentResolved,
    db: AsyncSession = Depends(get_db),
):
    """
    Resume a pending drop-in reservation. Success seats the member (or
    waitlists them if the class filled meanwhile); failure cancels the
    pending booking. Repeated callbacks for a resolved reference are no-ops.
    """
    booking = await BookingOrchestrator(db).on_payment_resolved(payload.reference, payload.succeeded)
    after_commit(db, partial(invalidate_schedule_cache, booking.class_instance.studio_id))
    return BookingResponse.model_validate(booking)
