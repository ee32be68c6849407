"""
Pydantic schemas for a member's credit balances and staff comp grants.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class SubscriptionBalance(BaseModel):
    id: int
    plan_id: int
    status: str
    current_period_end: Optional[datetime]
    classes_used_this_period: int

    model_config = {"from_attributes": True}


class PunchCardBalance(BaseModel):
    id: int
    total_classes: int
    remaining_classes: int
    expires_at: Optional[datetime]

    model_config = {"from_attributes": True}


class CreditSummaryResponse(BaseModel):
    member_id: int
    studio_id: int
    unlimited: bool
    remaining_classes: int
    subscriptions: list[SubscriptionBalance]
    class_passes: list[PunchCardBalance]
    comp_classes: list[PunchCardBalance]


class CompGrantCreate(BaseModel):
    classes: int = Field(..., gt=0, le=100)
    reason: Optional[str] = Field(None, max_length=255)
    expires_at: Optional[datetime] = None


class CompGrantResponse(PunchCardBalance):
    member_id: int
    granted_by: Optional[int]
    reason: Optional[str]
