"""
Error taxonomy for the booking engine.

Every business outcome that is not a success is raised as a subclass of
BookingEngineError. Each carries a stable machine-readable code and the HTTP
status the API layer maps it to, so services never import FastAPI.

PaymentRequired is deliberately absent: it is a returned value, not an error.
"""

from typing import Any, Optional

from sqlalchemy.exc import DBAPIError


class BookingEngineError(Exception):
    """Base class for all domain-level errors."""

    code = "BOOKING_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class NotFoundError(BookingEngineError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any = None):
        details = {"id": entity_id} if entity_id is not None else None
        super().__init__(f"{entity} not found", details)


class PermissionDenied(BookingEngineError):
    code = "FORBIDDEN"
    status_code = 403


class NotBookable(BookingEngineError):
    """Class is not open for booking (not scheduled, or already started)."""

    code = "NOT_BOOKABLE"
    status_code = 409


class CapacityError(BookingEngineError):
    """Seat math failed, or an admin tried an invalid capacity change."""

    code = "CAPACITY_ERROR"
    status_code = 409


class SpotTakenError(BookingEngineError):
    code = "SPOT_TAKEN"
    status_code = 409

    def __init__(self, spot: str):
        super().__init__(f"Spot {spot!r} is already taken", {"spot": spot})
        self.spot = spot


class AlreadyBookedError(BookingEngineError):
    code = "ALREADY_BOOKED"
    status_code = 409


class NoCreditAvailable(BookingEngineError):
    code = "NO_CREDITS"
    status_code = 400

    def __init__(self, message: str = "No credits available. Purchase a plan or drop-in pass."):
        super().__init__(message)


class InvalidCoupon(BookingEngineError):
    code = "INVALID_COUPON"
    status_code = 400

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Coupon is not valid: {reason}", {"reason": reason})
        self.reason = reason


class AlreadyRedeemedError(BookingEngineError):
    code = "ALREADY_REDEEMED"
    status_code = 409


class InvalidBookingTransition(BookingEngineError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            f"Illegal transition attempted: {from_state} -> {to_state}",
            {"from": from_state, "to": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state


class ConcurrencyConflict(BookingEngineError):
    """
    An atomic conditional update did not apply because another request got
    there first. The whole operation may be retried; partial retries may not.
    """

    code = "CONCURRENCY_CONFLICT"
    status_code = 409


# SQLSTATEs for serialization_failure and deadlock_detected
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


def is_transient_db_error(exc: DBAPIError) -> bool:
    """True for lock timeouts, serialization failures and deadlocks."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()
