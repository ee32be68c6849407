"""
Class schedule, availability and staff administration endpoints.
"""

from datetime import date
from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.logging import get_logger
from studio_booking.core.security import Principal, ensure_studio, get_current_principal, require_staff
from studio_booking.db.session import after_commit, get_db
from studio_booking.schemas.booking import BookingResponse
from studio_booking.schemas.class_instance import (
    AvailabilityResponse,
    CapacityUpdate,
    CapacityUpdateResponse,
    ClassInstanceResponse,
    RosterResponse,
    ScheduleResponse,
    StatusUpdate,
    StatusUpdateResponse,
)
from studio_booking.services import class_service
from studio_booking.services.booking_service import BookingOrchestrator
from studio_booking.services.cache_service import (
    get_cached_schedule,
    invalidate_schedule_cache,
    set_cached_schedule,
)
from studio_booking.services.capacity_ledger import CapacityLedger

logger = get_logger(__name__)
router = APIRouter(tags=["Classes"])


@router.get("/studios/{studio_id}/classes", response_model=ScheduleResponse)
async def list_studio_classes(
    studio_id: int,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Studio schedule for a date range.
    Cached in Redis; any booking change in the studio invalidates it.
    """
    ensure_studio(principal, studio_id)

    cached = await get_cached_schedule(studio_id, date_from, date_to)
    if cached:
        logger.info("schedule_cache_hit", studio_id=studio_id)
        cached["cached"] = True
        return ScheduleResponse(**cached)

    classes = await class_service.list_schedule(db, studio_id, date_from, date_to)
    response_data = {
        "studio_id": studio_id,
        "classes": [ClassInstanceResponse.model_validate(c).model_dump(mode="json") for c in classes],
        "cached": False,
    }
    await set_cached_schedule(studio_id, date_from, date_to, response_data)
    return ScheduleResponse(**response_data)


@router.get("/classes/{class_instance_id}/availability", response_model=AvailabilityResponse)
async def class_availability(
    class_instance_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Live seat counts. Never cached."""
    ledger = CapacityLedger(db)
    class_instance = await ledger.get_class(class_instance_id)
    ensure_studio(principal, class_instance.studio_id)
    return AvailabilityResponse(**await ledger.availability(class_instance_id))


@router.get("/classes/{class_instance_id}/roster", response_model=RosterResponse)
async def class_roster(
    class_instance_id: int,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    class_instance = await CapacityLedger(db).get_class(class_instance_id)
    ensure_studio(principal, class_instance.studio_id)
    roster = await class_service.get_roster(db, class_instance_id)
    return RosterResponse(
        class_instance_id=roster["class_instance_id"],
        booked=[BookingResponse.model_validate(b) for b in roster["booked"]],
        waitlisted=[BookingResponse.model_validate(b) for b in roster["waitlisted"]],
    )


@router.patch("/classes/{class_instance_id}/capacity", response_model=CapacityUpdateResponse)
async def change_class_capacity(
    class_instance_id: int,
    payload: CapacityUpdate,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """
    Change a class's capacity. Lowering it below the seats already booked is
    rejected; raising it promotes members from the waitlist.
    """
    class_instance = await CapacityLedger(db).get_class(class_instance_id)
    ensure_studio(principal, class_instance.studio_id)

    updated, promoted = await BookingOrchestrator(db).change_capacity(class_instance_id, payload.max_capacity)
    after_commit(db, partial(invalidate_schedule_cache, updated.studio_id))
    return CapacityUpdateResponse(
        class_instance=ClassInstanceResponse.model_validate(updated),
        promoted_booking_ids=[b.id for b in promoted],
    )


@router.patch("/classes/{class_instance_id}/status", response_model=StatusUpdateResponse)
async def change_class_status(
    class_instance_id: int,
    payload: StatusUpdate,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Cancelling a class cancels every active booking and refunds its credit."""
    class_instance = await CapacityLedger(db).get_class(class_instance_id)
    ensure_studio(principal, class_instance.studio_id)

    updated, cancelled = await class_service.update_status(db, class_instance_id, payload.status)
    after_commit(db, partial(invalidate_schedule_cache, updated.studio_id))
    return StatusUpdateResponse(
        class_instance=ClassInstanceResponse.model_validate(updated),
        cancelled_bookings=cancelled,
    )
