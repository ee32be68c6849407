"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from typing import Optional

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Reservation metrics
reservation_outcomes = Counter(
    'reservation_outcomes_total',
    'Reservation attempts by outcome',
    ['outcome']  # booked, waitlisted, payment_required, rejected
)

reservation_latency = Histogram(
    'reservation_latency_seconds',
    'Reservation request latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

concurrency_retries = Counter(
    'reservation_concurrency_retries_total',
    'Whole-operation retries caused by concurrency conflicts',
    ['operation']
)

# Inventory metrics
cancellations = Counter(
    'booking_cancellations_total',
    'Booking cancellations by policy outcome',
    ['outcome']  # early, late
)

waitlist_promotions = Counter(
    'waitlist_promotions_total',
    'Waitlisted bookings promoted into a seat'
)

waitlist_skips = Counter(
    'waitlist_promotion_skips_total',
    'Waitlisted members skipped during promotion because no credit was available'
)

# Credit metrics
credit_debits = Counter(
    'credit_debits_total',
    'Credits reserved by source',
    ['source']  # subscription, class_pass, comp
)

credit_settlements = Counter(
    'credit_settlements_total',
    'Credit reservations settled',
    ['result']  # released, forfeited, noop
)

# Coupon metrics
coupon_redemptions = Counter(
    'coupon_redemptions_total',
    'Coupon redemption attempts',
    ['result']  # redeemed, duplicate, limit_reached
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_reservation(outcome: str):
    """Outcome: booked, waitlisted, payment_required, rejected"""
    reservation_outcomes.labels(outcome=outcome).inc()

def record_retry(operation: str):
    concurrency_retries.labels(operation=operation).inc()

def record_cancellation(late: bool):
    cancellations.labels(outcome="late" if late else "early").inc()

def record_credit_debit(source: str):
    credit_debits.labels(source=source).inc()

def record_credit_settlement(result: str):
    credit_settlements.labels(result=result).inc()

def record_coupon_redemption(result: str):
    coupon_redemptions.labels(result=result).inc()

def record_cache_operation(operation: str, hit: Optional[bool] = None):
    """Record a schedule cache lookup (hit/miss) or an invalidation."""
    result = "done" if hit is None else ("hit" if hit else "miss")
    cache_operations.labels(operation=operation, result=result).inc()
