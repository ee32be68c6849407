"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from studio_booking.api.routes import bookings, classes, coupons, credits, payments

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(bookings.router)
api_router.include_router(classes.router)
api_router.include_router(coupons.router)
api_router.include_router(credits.router)
api_router.include_router(payments.router)
