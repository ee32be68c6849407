"""
Credit balance and comp grant endpoints.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.security import Principal, ensure_studio, get_current_principal, require_staff
from studio_booking.db.session import get_db
from studio_booking.schemas.credit import (
    CompGrantCreate,
    CompGrantResponse,
    CreditSummaryResponse,
    PunchCardBalance,
    SubscriptionBalance,
)
from studio_booking.services.credit_ledger import CreditLedger

router = APIRouter(prefix="/studios/{studio_id}", tags=["Credits"])


@router.get("/credits", response_model=CreditSummaryResponse)
async def my_credits(
    studio_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """The caller's usable credits at this studio."""
    ensure_studio(principal, studio_id)
    summary = await CreditLedger(db).credit_summary(principal.member_id, studio_id)
    return CreditSummaryResponse(
        member_id=summary["member_id"],
        studio_id=summary["studio_id"],
        unlimited=summary["unlimited"],
        remaining_classes=summary["remaining_classes"],
        subscriptions=[SubscriptionBalance.model_validate(s) for s in summary["subscriptions"]],
        class_passes=[PunchCardBalance.model_validate(p) for p in summary["class_passes"]],
        comp_classes=[PunchCardBalance.model_validate(c) for c in summary["comp_classes"]],
    )


@router.post(
    "/members/{member_id}/comps",
    response_model=CompGrantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_comp(
    studio_id: int,
    member_id: int,
    payload: CompGrantCreate,
    principal: Principal = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    ensure_studio(principal, studio_id)
    comp = await CreditLedger(db).grant_comp(
        member_id,
        studio_id,
        payload.classes,
        granted_by=principal.member_id,
        reason=payload.reason,
        expires_at=payload.expires_at,
    )
    return CompGrantResponse.model_validate(comp)
