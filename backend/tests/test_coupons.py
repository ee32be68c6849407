"""
Tests for coupon validation, discount math and bounded redemption.
"""

from datetime import datetime, timedelta, timezone

import pytest

from studio_booking.core.exceptions import AlreadyRedeemedError, InvalidCoupon
from studio_booking.domain.enums import CouponPurpose, CouponScope, CouponType, InvalidCouponReason
from studio_booking.models.credit import CompClass
from studio_booking.services.coupon_service import CouponContext, CouponService, Discount

MEMBER = 7
DROP_IN = CouponContext(purpose=CouponPurpose.DROP_IN, member_id=MEMBER)


def _discount(type: CouponType, value: int) -> Discount:
    return Discount(coupon_id=1, code="X", type=type, value=value)


@pytest.mark.parametrize(
    "discount, expected",
    [
        (_discount(CouponType.PERCENT_OFF, 20), 800),
        (_discount(CouponType.PERCENT_OFF, 100), 0),
        (_discount(CouponType.AMOUNT_OFF, 300), 700),
        (_discount(CouponType.AMOUNT_OFF, 5000), 0),
        (None, 1000),
    ],
)
def test_compute_discount(discount, expected):
    assert CouponService.compute_discount(1000, discount) == expected


@pytest.mark.asyncio
async def test_validate_is_case_insensitive(db_session, make_coupon):
    coupon = await make_coupon(code="SAVE20")

    check = await CouponService(db_session).validate(coupon.studio_id, " save20 ", DROP_IN)

    assert check.valid
    assert check.discount.coupon_id == coupon.id
    assert check.discount.type is CouponType.PERCENT_OFF


@pytest.mark.asyncio
async def test_validate_reports_why_a_coupon_is_invalid(db_session, studio, make_coupon):
    now = datetime.now(timezone.utc)
    await make_coupon(code="OFF", active=False)
    await make_coupon(code="LATER", valid_from=now + timedelta(days=1))
    await make_coupon(code="GONE", valid_until=now - timedelta(days=1))
    await make_coupon(code="PLANONLY", applies_to=CouponScope.PLAN)
    await make_coupon(code="FREEBIE", type=CouponType.FREE_CLASSES, value=2)
    used_up = await make_coupon(code="ONCE", max_redemptions=1)
    service = CouponService(db_session)
    await service.redeem(used_up.id, MEMBER, studio.id, ("plan_purchase", "p-1"))

    expected = {
        "MISSING": InvalidCouponReason.NOT_FOUND,
        "OFF": InvalidCouponReason.INACTIVE,
        "LATER": InvalidCouponReason.OUTSIDE_VALIDITY_WINDOW,
        "GONE": InvalidCouponReason.OUTSIDE_VALIDITY_WINDOW,
        "ONCE": InvalidCouponReason.REDEMPTION_LIMIT_REACHED,
        "PLANONLY": InvalidCouponReason.SCOPE_MISMATCH,
        "FREEBIE": InvalidCouponReason.SCOPE_MISMATCH,
    }
    for code, reason in expected.items():
        check = await service.validate(studio.id, code, DROP_IN)
        assert not check.valid, code
        assert check.reason is reason, code


@pytest.mark.asyncio
async def test_plan_scope_respects_plan_ids(db_session, plans, make_coupon):
    coupon = await make_coupon(
        code="UNLTD", applies_to=CouponScope.PLAN, plan_ids=[plans["unlimited"].id]
    )
    service = CouponService(db_session)

    good = await service.validate(
        coupon.studio_id, "UNLTD", CouponContext(CouponPurpose.PLAN, MEMBER, plans["unlimited"].id)
    )
    wrong_plan = await service.validate(
        coupon.studio_id, "UNLTD", CouponContext(CouponPurpose.PLAN, MEMBER, plans["limited"].id)
    )

    assert good.valid
    assert wrong_plan.reason is InvalidCouponReason.SCOPE_MISMATCH


@pytest.mark.asyncio
async def test_new_member_scope_rejects_existing_customers(db_session, make_coupon, make_subscription):
    coupon = await make_coupon(code="WELCOME", applies_to=CouponScope.NEW_MEMBER)
    await make_subscription(MEMBER)
    service = CouponService(db_session)

    newcomer = await service.validate(coupon.studio_id, "WELCOME", CouponContext(CouponPurpose.PLAN, 999))
    regular = await service.validate(coupon.studio_id, "WELCOME", CouponContext(CouponPurpose.PLAN, MEMBER))

    assert newcomer.valid
    assert regular.reason is InvalidCouponReason.SCOPE_MISMATCH


@pytest.mark.asyncio
async def test_redeem_counts_and_rejects_replays(db_session, make_coupon):
    coupon = await make_coupon(code="MULTI", max_redemptions=5)
    service = CouponService(db_session)

    redemption = await service.redeem(
        coupon.id, MEMBER, coupon.studio_id, ("plan_purchase", "p-1"), discount_amount_cents=300
    )
    assert redemption.discount_amount_cents == 300

    with pytest.raises(AlreadyRedeemedError):
        await service.redeem(coupon.id, MEMBER, coupon.studio_id, ("plan_purchase", "p-1"))

    assert (await service.get(coupon.studio_id, coupon.id)).current_redemptions == 1


@pytest.mark.asyncio
async def test_redeem_past_the_limit_fails(db_session, make_coupon):
    coupon = await make_coupon(code="SINGLE", max_redemptions=1)
    service = CouponService(db_session)

    await service.redeem(coupon.id, MEMBER, coupon.studio_id, ("plan_purchase", "p-1"))
    with pytest.raises(InvalidCoupon) as exc_info:
        await service.redeem(coupon.id, MEMBER + 1, coupon.studio_id, ("plan_purchase", "p-2"))

    assert exc_info.value.reason == InvalidCouponReason.REDEMPTION_LIMIT_REACHED.value
    assert (await service.get(coupon.studio_id, coupon.id)).current_redemptions == 1


@pytest.mark.asyncio
async def test_free_classes_coupon_grants_comp_credit(db_session, make_coupon):
    coupon = await make_coupon(code="TRYUS", type=CouponType.FREE_CLASSES, value=2)

    await CouponService(db_session).redeem(coupon.id, MEMBER, coupon.studio_id, ("intro_offer", str(MEMBER)))

    comp = (await db_session.execute(CompClass.__table__.select())).one()
    assert comp.member_id == MEMBER
    assert comp.remaining_classes == 2
    assert comp.reason == "coupon:TRYUS"


@pytest.mark.asyncio
async def test_validate_endpoint_prices_a_drop_in(client, studio, make_coupon, headers_for):
    await make_coupon(code="SAVE20")

    response = await client.post(
        f"/api/v1/studios/{studio.id}/coupons/validate",
        json={"code": "save20", "purpose": "drop_in", "base_price_cents": 1000},
        headers=headers_for(MEMBER, studio.id),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is True
    assert data["discounted_price_cents"] == 800


@pytest.mark.asyncio
async def test_validate_endpoint_prices_a_private_booking(client, studio, make_coupon, headers_for):
    await make_coupon(code="SAVE20")
    await make_coupon(code="PLANONLY", applies_to=CouponScope.PLAN)
    await make_coupon(code="TRYUS", type=CouponType.FREE_CLASSES, value=2)
    url = f"/api/v1/studios/{studio.id}/coupons/validate"
    headers = headers_for(MEMBER, studio.id)

    priced = await client.post(
        url, json={"code": "SAVE20", "purpose": "private_booking", "base_price_cents": 20000}, headers=headers
    )
    rejected = [
        (await client.post(url, json={"code": code, "purpose": "private_booking"}, headers=headers)).json()
        for code in ("PLANONLY", "TRYUS")
    ]

    assert priced.json()["discounted_price_cents"] == 16000
    assert [r["reason"] for r in rejected] == ["scope_mismatch", "scope_mismatch"]


def redeem_url(studio) -> str:
    return f"/api/v1/studios/{studio.id}/coupons/redeem"


@pytest.mark.asyncio
async def test_member_redeems_a_coupon_once(client, studio, make_coupon, headers_for):
    await make_coupon(code="PLAN10", type=CouponType.AMOUNT_OFF, value=1000)
    headers = headers_for(MEMBER, studio.id)

    first = await client.post(redeem_url(studio), json={"code": "PLAN10"}, headers=headers)
    second = await client.post(redeem_url(studio), json={"code": "PLAN10"}, headers=headers)

    assert first.status_code == 201
    assert first.json()["applied_to_type"] == "member"
    assert first.json()["applied_to_id"] == str(MEMBER)
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "ALREADY_REDEEMED"


@pytest.mark.asyncio
async def test_member_cannot_mint_comps_with_made_up_references(client, studio, make_coupon, headers_for):
    """An unlimited free-classes coupon still grants a member its classes only once."""
    await make_coupon(code="FIVEFREE", type=CouponType.FREE_CLASSES, value=3)
    headers = headers_for(MEMBER, studio.id)

    referenced = [
        await client.post(
            redeem_url(studio),
            json={"code": "FIVEFREE", "applied_to_type": "plan_purchase", "applied_to_id": f"made-up-{i}"},
            headers=headers,
        )
        for i in range(3)
    ]
    plain = [await client.post(redeem_url(studio), json={"code": "FIVEFREE"}, headers=headers) for _ in range(3)]

    assert {r.status_code for r in referenced} == {403}
    assert [r.status_code for r in plain] == [201, 409, 409]
    summary = await client.get(f"/api/v1/studios/{studio.id}/credits", headers=headers)
    assert summary.json()["remaining_classes"] == 3


@pytest.mark.asyncio
async def test_member_cannot_redeem_for_someone_else(client, studio, make_coupon, headers_for):
    await make_coupon(code="PLAN10", type=CouponType.AMOUNT_OFF, value=1000)

    response = await client.post(
        redeem_url(studio), json={"code": "PLAN10", "member_id": MEMBER + 1}, headers=headers_for(MEMBER, studio.id)
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_staff_redeem_against_a_purchase_reference(client, studio, make_coupon, staff_headers):
    await make_coupon(code="PLAN10", type=CouponType.AMOUNT_OFF, value=1000)
    body = {"code": "PLAN10", "member_id": MEMBER, "applied_to_type": "plan_purchase", "applied_to_id": "inv-1"}

    first = await client.post(redeem_url(studio), json=body, headers=staff_headers)
    second = await client.post(redeem_url(studio), json=body, headers=staff_headers)
    missing_member = await client.post(
        redeem_url(studio),
        json={"code": "PLAN10", "applied_to_type": "plan_purchase", "applied_to_id": "inv-2"},
        headers=staff_headers,
    )

    assert first.status_code == 201
    assert first.json()["member_id"] == MEMBER
    assert first.json()["applied_to_id"] == "inv-1"
    assert second.status_code == 409
    assert missing_member.status_code == 400


@pytest.mark.asyncio
async def test_redeem_target_needs_both_parts(client, studio, make_coupon, staff_headers):
    await make_coupon(code="PLAN10", type=CouponType.AMOUNT_OFF, value=1000)

    response = await client.post(
        redeem_url(studio),
        json={"code": "PLAN10", "member_id": MEMBER, "applied_to_type": "plan_purchase"},
        headers=staff_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_staff_manage_coupons(client, studio, staff_headers):
    created = await client.post(
        f"/api/v1/studios/{studio.id}/coupons",
        json={"code": "spring", "type": "amount_off", "value": 250, "max_redemptions": 10},
        headers=staff_headers,
    )
    assert created.status_code == 201
    coupon = created.json()
    assert coupon["code"] == "SPRING"

    duplicate = await client.post(
        f"/api/v1/studios/{studio.id}/coupons",
        json={"code": "SPRING", "type": "amount_off", "value": 100},
        headers=staff_headers,
    )
    assert duplicate.status_code == 400

    deactivated = await client.delete(f"/api/v1/studios/{studio.id}/coupons/{coupon['id']}", headers=staff_headers)
    assert deactivated.json()["active"] is False

    active = await client.get(
        f"/api/v1/studios/{studio.id}/coupons", params={"active_only": True}, headers=staff_headers
    )
    assert active.json() == []


@pytest.mark.asyncio
async def test_members_cannot_create_coupons(client, studio, headers_for):
    response = await client.post(
        f"/api/v1/studios/{studio.id}/coupons",
        json={"code": "FREE", "type": "percent_off", "value": 100},
        headers=headers_for(MEMBER, studio.id),
    )
    assert response.status_code == 403
