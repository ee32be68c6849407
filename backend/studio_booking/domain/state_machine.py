# studio_booking/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from studio_booking.core.exceptions import InvalidBookingTransition
from studio_booking.domain.enums import BookingStatus, ClassStatus


class ReservationStage(str, Enum):
    INITIATED = "initiated"
    PRICED = "priced"
    CREDITED = "credited"
    SEATED = "seated"
    CONFIRMED = "confirmed"
    ABORTED = "aborted"


class _TransitionTable:
    """
    Shared machinery for the lifecycle tables below.
    Subclasses declare the legal transitions; terminal states map to set().
    """

    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """Raises InvalidBookingTransition if transition is illegal."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidBookingTransition(
                from_state=getattr(from_status, "value", str(from_status)),
                to_state=getattr(to_status, "value", str(to_status)),
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0


class BookingStateMachine(_TransitionTable):
    """
    Legal booking status transitions.
    Cancellation is a status, never a row removal.
    """

    _ALLOWED_TRANSITIONS = {
        BookingStatus.PENDING_PAYMENT: {
            BookingStatus.BOOKED,
            BookingStatus.WAITLISTED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.WAITLISTED: {
            BookingStatus.BOOKED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.BOOKED: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
            BookingStatus.NO_SHOW,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CANCELLED,
            BookingStatus.NO_SHOW,
        },
        BookingStatus.CANCELLED: set(),
        BookingStatus.NO_SHOW: set(),
    }

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        super().validate_transition(BookingStatus(from_status), BookingStatus(to_status))


class ClassStateMachine(_TransitionTable):
    """Class instances are immutable once completed or cancelled."""

    _ALLOWED_TRANSITIONS = {
        ClassStatus.SCHEDULED: {ClassStatus.IN_PROGRESS, ClassStatus.CANCELLED},
        ClassStatus.IN_PROGRESS: {ClassStatus.COMPLETED, ClassStatus.CANCELLED},
        ClassStatus.COMPLETED: set(),
        ClassStatus.CANCELLED: set(),
    }

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        super().validate_transition(ClassStatus(from_status), ClassStatus(to_status))


class ReservationStateMachine(_TransitionTable):
    """Stages of a single reserve() attempt. Any live stage may abort."""

    _ALLOWED_TRANSITIONS = {
        ReservationStage.INITIATED: {ReservationStage.PRICED, ReservationStage.ABORTED},
        ReservationStage.PRICED: {ReservationStage.CREDITED, ReservationStage.SEATED, ReservationStage.ABORTED},
        ReservationStage.CREDITED: {ReservationStage.SEATED, ReservationStage.ABORTED},
        ReservationStage.SEATED: {ReservationStage.CONFIRMED, ReservationStage.ABORTED},
        ReservationStage.CONFIRMED: set(),
        ReservationStage.ABORTED: set(),
    }
