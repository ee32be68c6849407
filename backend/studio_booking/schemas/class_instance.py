"""
Pydantic schemas for class schedule, availability and admin operations.
"""

from datetime import date, time
from typing import Optional
from pydantic import BaseModel, Field

from studio_booking.domain.enums import ClassStatus
from studio_booking.schemas.booking import BookingResponse


class ClassInstanceResponse(BaseModel):
    id: int
    studio_id: int
    name: str
    date: date
    start_time: time
    end_time: time
    max_capacity: int
    booked_count: int
    status: str

    model_config = {"from_attributes": True}


class ScheduleResponse(BaseModel):
    studio_id: int
    classes: list[ClassInstanceResponse]
    cached: bool = False


class AvailabilityResponse(BaseModel):
    class_instance_id: int
    capacity: int
    booked: int
    waitlisted: int


class RosterResponse(BaseModel):
    class_instance_id: int
    booked: list[BookingResponse]
    waitlisted: list[BookingResponse]


class CapacityUpdate(BaseModel):
    max_capacity: int = Field(..., gt=0, le=10000)


class CapacityUpdateResponse(BaseModel):
    class_instance: ClassInstanceResponse
    promoted_booking_ids: list[int]


class StatusUpdate(BaseModel):
    status: ClassStatus


class StatusUpdateResponse(BaseModel):
    class_instance: ClassInstanceResponse
    cancelled_bookings: Optional[int] = None
