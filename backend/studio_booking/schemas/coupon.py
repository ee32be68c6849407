"""
Pydantic schemas for coupon validation, redemption and management.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from studio_booking.domain.enums import CouponPurpose, CouponScope, CouponType


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    purpose: CouponPurpose = CouponPurpose.DROP_IN
    plan_id: Optional[int] = None
    base_price_cents: Optional[int] = Field(None, ge=0)


class CouponValidateResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    coupon_id: Optional[int] = None
    type: Optional[str] = None
    value: Optional[int] = None
    discounted_price_cents: Optional[int] = None


class CouponRedeemRequest(BaseModel):
    """
    Members redeem for themselves, at most once per coupon. Staff redeem
    against a purchase reference on behalf of `member_id`.
    """

    code: str = Field(..., min_length=1, max_length=64)
    member_id: Optional[int] = None
    applied_to_type: Optional[str] = Field(None, min_length=1, max_length=32)
    applied_to_id: Optional[str] = Field(None, min_length=1, max_length=64)
    purpose: CouponPurpose = CouponPurpose.PLAN
    plan_id: Optional[int] = None
    discount_amount_cents: int = Field(0, ge=0)

    @model_validator(mode="after")
    def target_is_complete(self) -> "CouponRedeemRequest":
        if (self.applied_to_type is None) != (self.applied_to_id is None):
            raise ValueError("applied_to_type and applied_to_id must be given together")
        return self


class CouponRedemptionResponse(BaseModel):
    id: int
    coupon_id: int
    member_id: int
    applied_to_type: str
    applied_to_id: str
    discount_amount_cents: int
    redeemed_at: datetime

    model_config = {"from_attributes": True}


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    type: CouponType
    value: int = Field(..., gt=0)
    applies_to: CouponScope = CouponScope.ANY
    plan_ids: list[int] = Field(default_factory=list)
    max_redemptions: Optional[int] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class CouponResponse(BaseModel):
    id: int
    studio_id: int
    code: str
    type: str
    value: int
    applies_to: str
    plan_ids: list[int]
    max_redemptions: Optional[int]
    current_redemptions: int
    valid_from: Optional[datetime]
    valid_until: Optional[datetime]
    active: bool

    model_config = {"from_attributes": True}
