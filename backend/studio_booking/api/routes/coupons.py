"""
Coupon endpoints: member-side validation/redemption, staff-side management.
"""

from enum import Enum

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import BookingEngineError, InvalidCoupon, PermissionDenied
from studio_booking.core.logging import get_logger
from studio_booking.core.security import Principal, ensure_studio, get_current_principal, require_staff
from studio_booking.db.session import get_db
from studio_booking.schemas.coupon import (
    CouponCreate,
    CouponRedeemRequest,
    CouponRedemptionResponse,
    CouponResponse,
    CouponValidateRequest,
    CouponValidateResponse,
)
from studio_booking.services.coupon_service import CouponContext, CouponService, member_target

logger = get_logger(__name__)
router = APIRouter(prefix="/studios/{studio_id}/coupons", tags=["Coupons"])


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    studio_id: int,
    payload: CouponValidateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Check a code without spending it. A valid answer is not a reservation:
    the redemption limit is only enforced at redeem time.
    """
    ensure_studio(principal, studio_id)
    service = CouponService(db)
    check = await service.validate(
        studio_id,
        payload.code,
        CouponContext(purpose=payload.purpose, member_id=principal.member_id, plan_id=payload.plan_id),
    )
    if not check.valid:
        return CouponValidateResponse(valid=False, reason=check.reason.value)

    discounted = None
    if payload.base_price_cents is not None:
        discounted = service.compute_discount(payload.base_price_cents, check.discount)
    return CouponValidateResponse(
        valid=True,
        coupon_id=check.discount.coupon_id,
        type=check.discount.type.value,
        value=check.discount.value,
        discounted_price_cents=discounted,
    )


@router.post("/redeem", response_model=CouponRedemptionResponse, status_code=status.HTTP_201_CREATED)
async def redeem_coupon(
    studio_id: int,
    payload: CouponRedeemRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Spend one redemption. A member redeems for themselves and only once per
    coupon; staff redeem against a purchase reference for `member_id`.
    Replays return 409.
    """
    ensure_studio(principal, studio_id)
    if principal.is_staff:
        if payload.member_id is None or payload.applied_to_type is None:
            raise BookingEngineError(
                "Staff redemptions need member_id, applied_to_type and applied_to_id"
            )
        member_id = payload.member_id
        applied_to = (payload.applied_to_type, payload.applied_to_id)
    else:
        if payload.applied_to_type is not None or payload.member_id not in (None, principal.member_id):
            raise PermissionDenied("Only staff can redeem against a purchase reference")
        member_id = principal.member_id
        applied_to = member_target(member_id)

    service = CouponService(db)
    check = await service.validate(
        studio_id,
        payload.code,
        CouponContext(purpose=payload.purpose, member_id=member_id, plan_id=payload.plan_id),
    )
    if not check.valid:
        raise InvalidCoupon(check.reason.value)

    redemption = await service.redeem(
        check.discount.coupon_id,
        member_id,
        studio_id,
        applied_to,
        discount_amount_cents=payload.discount_amount_cents,
    )
    return CouponRedemptionResponse.model_validate(redemption)


@router.post("", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    studio_id: int,
    payload: CouponCreate,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    ensure_studio(principal, studio_id)
    fields = {
        key: value.value if isinstance(value, Enum) else value
        for key, value in payload.model_dump().items()
    }
    coupon = await CouponService(db).create_coupon(studio_id, **fields)
    return CouponResponse.model_validate(coupon)


@router.get("", response_model=list[CouponResponse])
async def list_coupons(
    studio_id: int,
    active_only: bool = Query(False),
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    ensure_studio(principal, studio_id)
    coupons = await CouponService(db).list_coupons(studio_id, active_only=active_only)
    return [CouponResponse.model_validate(c) for c in coupons]


@router.delete("/{coupon_id}", response_model=CouponResponse)
async def deactivate_coupon(
    studio_id: int,
    coupon_id: int,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a coupon. Existing redemptions are kept."""
    ensure_studio(principal, studio_id)
    coupon = await CouponService(db).deactivate_coupon(studio_id, coupon_id)
    return CouponResponse.model_validate(coupon)
