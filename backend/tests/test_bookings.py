"""
Tests for reservation, cancellation and attendance endpoints.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from studio_booking.api.routes import bookings as booking_routes
from studio_booking.core.exceptions import SpotTakenError
from studio_booking.db.session import after_commit, commit_unit_of_work, rollback_unit_of_work
from studio_booking.domain.enums import CreditReservationStatus
from studio_booking.domain.policy import class_start_at
from studio_booking.models.booking_event import BookingEvent
from studio_booking.models.class_instance import ClassInstance
from studio_booking.models.coupon import Coupon
from studio_booking.models.credit import CreditReservation
from studio_booking.services.booking_service import BookingOrchestrator

MEMBER = 101


def reserve_url(class_instance) -> str:
    return f"/api/v1/classes/{class_instance.id}/reservations"


def cancel_as_of(class_instance, hours_before: float) -> dict:
    start = class_start_at(class_instance.date, class_instance.start_time, "UTC")
    return {"as_of": (start - timedelta(hours=hours_before)).isoformat()}


async def event_types(db_session, booking_id: int) -> list[str]:
    result = await db_session.execute(
        select(BookingEvent.event_type).where(BookingEvent.booking_id == booking_id).order_by(BookingEvent.id)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_reserve_with_subscription(client: AsyncClient, db_session, make_class, make_subscription, headers_for):
    """A member with an unlimited plan is seated immediately."""
    class_instance = await make_class()
    await make_subscription(MEMBER)

    response = await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id))

    assert response.status_code == 201
    data = response.json()
    assert data["class_instance_id"] == class_instance.id
    assert data["status"] == "booked"
    assert data["credit_source"] == "subscription"
    assert data["credit_reservation_id"] is not None
    assert await event_types(db_session, data["id"]) == ["booking_confirmed"]

    availability = await client.get(
        f"/api/v1/classes/{class_instance.id}/availability",
        headers=headers_for(MEMBER, class_instance.studio_id),
    )
    assert availability.json()["booked"] == 1


@pytest.mark.asyncio
async def test_reserve_unauthenticated(client: AsyncClient, make_class):
    class_instance = await make_class()
    response = await client.post(reserve_url(class_instance))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_reserve_in_another_studio_is_forbidden(client: AsyncClient, make_class, headers_for):
    class_instance = await make_class()
    response = await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id + 1))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_reserve_nonexistent_class(client: AsyncClient, studio, headers_for):
    response = await client.post("/api/v1/classes/99999/reservations", headers=headers_for(MEMBER, studio.id))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_reserve_started_class_is_not_bookable(client: AsyncClient, make_class, make_subscription, headers_for):
    class_instance = await make_class(days_ahead=-2)
    await make_subscription(MEMBER)

    response = await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id))

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "NOT_BOOKABLE"


@pytest.mark.asyncio
async def test_full_class_waitlists(client: AsyncClient, make_class, make_subscription, headers_for):
    class_instance = await make_class(max_capacity=1)
    await make_subscription(MEMBER)
    await make_subscription(MEMBER + 1)

    first = await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id))
    second = await client.post(reserve_url(class_instance), headers=headers_for(MEMBER + 1, class_instance.studio_id))

    assert first.status_code == 201
    assert second.status_code == 202
    assert second.json()["status"] == "waitlisted"
    assert second.json()["waitlist_position"] == 1
    assert second.json()["credit_reservation_id"] is None


@pytest.mark.asyncio
async def test_duplicate_booking(client: AsyncClient, make_class, make_subscription, headers_for):
    """Same member booking the same class twice returns 409."""
    class_instance = await make_class()
    await make_subscription(MEMBER)
    headers = headers_for(MEMBER, class_instance.studio_id)

    first = await client.post(reserve_url(class_instance), headers=headers)
    second = await client.post(reserve_url(class_instance), headers=headers)

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "ALREADY_BOOKED"


@pytest.mark.asyncio
async def test_reserve_without_credit_or_drop_in(client: AsyncClient, make_class, headers_for):
    class_instance = await make_class()

    response = await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NO_CREDITS"


@pytest.mark.asyncio
async def test_reserve_with_invalid_coupon(client: AsyncClient, make_class, make_subscription, headers_for):
    class_instance = await make_class()
    await make_subscription(MEMBER)

    response = await client.post(
        reserve_url(class_instance),
        json={"coupon_code": "NOPE"},
        headers=headers_for(MEMBER, class_instance.studio_id),
    )

    assert response.status_code == 400
    assert response.json()["error"]["details"]["reason"] == "not_found"


@pytest.mark.asyncio
async def test_drop_in_with_coupon_requires_payment(
    client: AsyncClient, db_session, plans, make_class, make_coupon, headers_for, payment_headers
):
    """20% off a 1000 cent drop-in charges 800; the paid callback seats the member."""
    class_instance = await make_class()
    coupon = await make_coupon(code="SAVE20", value=20)

    response = await client.post(
        reserve_url(class_instance),
        json={"coupon_code": "save20", "spot": "B3"},
        headers=headers_for(MEMBER, class_instance.studio_id),
    )

    assert response.status_code == 402
    pending = response.json()
    assert pending["status"] == "payment_required"
    assert pending["base_price_cents"] == 1000
    assert pending["amount_cents"] == 800
    assert pending["coupon_id"] == coupon.id

    resolved = await client.post(
        "/api/v1/payments/resolved",
        json={"reference": pending["reference"], "succeeded": True},
        headers=payment_headers,
    )
    assert resolved.status_code == 200
    booking = resolved.json()
    assert booking["status"] == "booked"
    assert booking["spot"] == "B3"
    assert booking["credit_source"] == "drop_in"
    assert booking["amount_cents"] == 800

    await db_session.refresh(coupon)
    assert coupon.current_redemptions == 1
    assert await event_types(db_session, booking["id"]) == ["payment_requested", "booking_confirmed"]

    replay = await client.post(
        "/api/v1/payments/resolved",
        json={"reference": pending["reference"], "succeeded": True},
        headers=payment_headers,
    )
    assert replay.json()["status"] == "booked"


@pytest.mark.asyncio
async def test_fully_discounted_drop_in_books_without_payment(
    client: AsyncClient, plans, make_class, make_coupon, headers_for
):
    class_instance = await make_class()
    await make_coupon(code="ONUS", value=100)

    response = await client.post(
        reserve_url(class_instance),
        json={"coupon_code": "ONUS"},
        headers=headers_for(MEMBER, class_instance.studio_id),
    )

    assert response.status_code == 201
    assert response.json()["credit_source"] == "drop_in"
    assert response.json()["amount_cents"] == 0


@pytest.mark.asyncio
async def test_failed_payment_cancels_pending_booking(
    client: AsyncClient, plans, make_class, headers_for, payment_headers
):
    class_instance = await make_class()
    pending = (
        await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id))
    ).json()

    resolved = await client.post(
        "/api/v1/payments/resolved",
        json={"reference": pending["reference"], "succeeded": False},
        headers=payment_headers,
    )

    assert resolved.status_code == 200
    assert resolved.json()["status"] == "cancelled"
    availability = await client.get(
        f"/api/v1/classes/{class_instance.id}/availability",
        headers=headers_for(MEMBER, class_instance.studio_id),
    )
    assert availability.json()["booked"] == 0


@pytest.mark.asyncio
async def test_payment_callback_requires_token(client: AsyncClient):
    response = await client.post(
        "/api/v1/payments/resolved",
        json={"reference": "abc", "succeeded": True},
        headers={"X-Payment-Token": "forged"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_early_cancel_refunds_class_pass(client: AsyncClient, db_session, make_class, make_pass, headers_for):
    """Pass at 1: reserve takes it to 0, an early cancel gives it back."""
    class_instance = await make_class()
    card = await make_pass(MEMBER, remaining=1)
    headers = headers_for(MEMBER, class_instance.studio_id)

    booking = (await client.post(reserve_url(class_instance), headers=headers)).json()
    await db_session.refresh(card)
    assert card.remaining_classes == 0

    response = await client.delete(
        f"/api/v1/bookings/{booking['id']}", params=cancel_as_of(class_instance, 24), headers=headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["late_cancel"] is False
    await db_session.refresh(card)
    assert card.remaining_classes == 1


@pytest.mark.asyncio
async def test_late_cancel_forfeits_credit_and_flags_fee(
    client: AsyncClient, db_session, make_class, make_pass, headers_for
):
    class_instance = await make_class()
    card = await make_pass(MEMBER, remaining=1)
    headers = headers_for(MEMBER, class_instance.studio_id)

    booking = (await client.post(reserve_url(class_instance), headers=headers)).json()
    response = await client.delete(
        f"/api/v1/bookings/{booking['id']}", params=cancel_as_of(class_instance, 2), headers=headers
    )

    data = response.json()
    assert data["late_cancel"] is True
    assert data["late_cancel_fee_cents"] == 500
    await db_session.refresh(card)
    assert card.remaining_classes == 0
    assert "late_cancel_fee" in await event_types(db_session, booking["id"])


@pytest.mark.asyncio
async def test_cancel_exactly_at_window_is_early(client: AsyncClient, make_class, make_pass, headers_for):
    class_instance = await make_class()
    await make_pass(MEMBER, remaining=1)
    headers = headers_for(MEMBER, class_instance.studio_id)

    booking = (await client.post(reserve_url(class_instance), headers=headers)).json()
    response = await client.delete(
        f"/api/v1/bookings/{booking['id']}", params=cancel_as_of(class_instance, 12), headers=headers
    )

    assert response.json()["late_cancel"] is False


@pytest.mark.asyncio
async def test_cancel_twice_returns_same_state(client: AsyncClient, make_class, make_subscription, headers_for):
    class_instance = await make_class()
    await make_subscription(MEMBER)
    headers = headers_for(MEMBER, class_instance.studio_id)

    booking = (await client.post(reserve_url(class_instance), headers=headers)).json()
    first = await client.delete(f"/api/v1/bookings/{booking['id']}", headers=headers)
    second = await client.delete(f"/api/v1/bookings/{booking['id']}", headers=headers)

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()


@pytest.mark.asyncio
async def test_cancel_someone_elses_booking(client: AsyncClient, make_class, make_subscription, headers_for):
    class_instance = await make_class()
    await make_subscription(MEMBER)

    booking = (
        await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id))
    ).json()
    response = await client.delete(
        f"/api/v1/bookings/{booking['id']}", headers=headers_for(MEMBER + 1, class_instance.studio_id)
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_waitlist_skips_member_without_credit(
    client: AsyncClient, make_class, make_subscription, headers_for
):
    """A, B, C wait in that order; A has no credit, so B takes the freed seat."""
    class_instance = await make_class(max_capacity=1)
    holder, a, b, c = MEMBER, MEMBER + 1, MEMBER + 2, MEMBER + 3
    for member in (holder, b, c):
        await make_subscription(member)

    seat = (await client.post(reserve_url(class_instance), headers=headers_for(holder, class_instance.studio_id))).json()
    waiting = {}
    for member in (a, b, c):
        response = await client.post(reserve_url(class_instance), headers=headers_for(member, class_instance.studio_id))
        assert response.status_code == 202
        waiting[member] = response.json()

    await client.delete(f"/api/v1/bookings/{seat['id']}", headers=headers_for(holder, class_instance.studio_id))

    roster = await client.get(
        f"/api/v1/classes/{class_instance.id}/roster",
        headers=headers_for(900, class_instance.studio_id, role="staff"),
    )
    data = roster.json()
    assert [bk["member_id"] for bk in data["booked"]] == [b]
    assert data["booked"][0]["credit_source"] == "subscription"
    assert [bk["member_id"] for bk in data["waitlisted"]] == [a, c]
    assert [bk["waitlist_position"] for bk in data["waitlisted"]] == [1, 3]


@pytest.mark.asyncio
async def test_list_member_bookings(client: AsyncClient, make_class, make_subscription, headers_for):
    first_class = await make_class(days_ahead=3)
    second_class = await make_class(days_ahead=4)
    await make_subscription(MEMBER)
    headers = headers_for(MEMBER, first_class.studio_id)

    await client.post(reserve_url(first_class), headers=headers)
    await client.post(reserve_url(second_class), headers=headers)

    response = await client.get("/api/v1/bookings", headers=headers)
    assert response.status_code == 200
    assert [b["class_instance_id"] for b in response.json()] == [second_class.id, first_class.id]


@pytest.mark.asyncio
async def test_check_in_and_no_show(client: AsyncClient, db_session, make_class, make_pass, headers_for, staff_headers):
    class_instance = await make_class()
    card = await make_pass(MEMBER, remaining=2)
    await make_pass(MEMBER + 1, remaining=1)
    member_headers = headers_for(MEMBER, class_instance.studio_id)

    attended = (await client.post(reserve_url(class_instance), headers=member_headers)).json()
    absent = (
        await client.post(reserve_url(class_instance), headers=headers_for(MEMBER + 1, class_instance.studio_id))
    ).json()

    denied = await client.post(f"/api/v1/bookings/{attended['id']}/check-in", headers=member_headers)
    assert denied.status_code == 403

    checked_in = await client.post(f"/api/v1/bookings/{attended['id']}/check-in", headers=staff_headers)
    assert checked_in.json()["status"] == "confirmed"
    assert checked_in.json()["confirmed_at"] is not None

    again = await client.post(f"/api/v1/bookings/{attended['id']}/check-in", headers=staff_headers)
    assert again.json()["status"] == "confirmed"

    no_show = await client.post(f"/api/v1/bookings/{absent['id']}/no-show", headers=staff_headers)
    assert no_show.json()["status"] == "no_show"

    # The seat stays consumed and the credit is gone
    availability = await client.get(f"/api/v1/classes/{class_instance.id}/availability", headers=member_headers)
    assert availability.json()["booked"] == 2

    cancel_no_show = await client.delete(f"/api/v1/bookings/{absent['id']}", headers=staff_headers)
    assert cancel_no_show.status_code == 409
    assert cancel_no_show.json()["error"]["code"] == "INVALID_TRANSITION"

    await db_session.refresh(card)
    assert card.remaining_classes == 1


@pytest.mark.asyncio
async def test_reserve_ignores_a_client_supplied_clock(
    client: AsyncClient, db_session, make_class, make_pass, headers_for
):
    """A backdated as_of in the body neither reopens a past class nor revives an expired pass."""
    now = datetime.now(timezone.utc)
    past_class = await make_class(days_ahead=-2)
    upcoming = await make_class()
    card = await make_pass(MEMBER, remaining=1, expires_at=now - timedelta(days=5))
    headers = headers_for(MEMBER, upcoming.studio_id)
    backdated = {"as_of": (now - timedelta(days=10)).isoformat()}

    past = await client.post(reserve_url(past_class), json=backdated, headers=headers)
    future = await client.post(reserve_url(upcoming), json=backdated, headers=headers)

    assert past.status_code == 409
    assert past.json()["error"]["code"] == "NOT_BOOKABLE"
    assert future.status_code == 400
    assert future.json()["error"]["code"] == "NO_CREDITS"
    await db_session.refresh(card)
    assert card.remaining_classes == 1


@pytest.mark.asyncio
async def test_members_cannot_backdate_a_cancellation(
    client: AsyncClient, db_session, studio, make_class, make_pass, headers_for, staff_headers
):
    """With a ten day window a class a week out is already late; only staff may say otherwise."""
    studio.cancellation_window_hours = 240
    await db_session.commit()
    class_instance = await make_class()
    await make_pass(MEMBER, remaining=1)
    await make_pass(MEMBER + 1, remaining=1)
    member_headers = headers_for(MEMBER, studio.id)
    backdated = cancel_as_of(class_instance, 24 * 11)

    mine = (await client.post(reserve_url(class_instance), headers=member_headers)).json()
    theirs = (await client.post(reserve_url(class_instance), headers=headers_for(MEMBER + 1, studio.id))).json()

    by_member = await client.delete(f"/api/v1/bookings/{mine['id']}", params=backdated, headers=member_headers)
    by_staff = await client.delete(f"/api/v1/bookings/{theirs['id']}", params=backdated, headers=staff_headers)

    assert by_member.json()["late_cancel"] is True
    assert by_member.json()["late_cancel_fee_cents"] == 500
    assert by_staff.json()["late_cancel"] is False


@pytest.mark.asyncio
async def test_taken_spot_gives_the_credit_back(db_session, make_class, make_pass):
    class_instance = await make_class()
    await make_pass(MEMBER, remaining=1)
    card = await make_pass(MEMBER + 1, remaining=1)
    orchestrator = BookingOrchestrator(db_session)

    first = await orchestrator.reserve(MEMBER, class_instance.id, requested_spot="A1")
    assert first.spot == "A1"

    with pytest.raises(SpotTakenError):
        await orchestrator.reserve(MEMBER + 1, class_instance.id, requested_spot="A1")

    await db_session.refresh(card)
    assert card.remaining_classes == 1
    result = await db_session.execute(
        select(CreditReservation.status).where(CreditReservation.member_id == MEMBER + 1)
    )
    assert set(result.scalars().all()) <= {CreditReservationStatus.RELEASED.value}


@pytest.mark.asyncio
async def test_schedule_cache_is_invalidated_after_commit(
    client: AsyncClient, session_factory, make_class, make_pass, headers_for, monkeypatch
):
    class_instance = await make_class()
    await make_pass(MEMBER, remaining=1)
    seen = []

    async def record_committed_count(studio_id: int) -> None:
        async with session_factory() as session:
            seen.append(
                await session.scalar(
                    select(ClassInstance.booked_count).where(ClassInstance.id == class_instance.id)
                )
            )

    monkeypatch.setattr(booking_routes, "invalidate_schedule_cache", record_committed_count)
    response = await client.post(reserve_url(class_instance), headers=headers_for(MEMBER, class_instance.studio_id))

    assert response.status_code == 201
    assert seen == [1]


@pytest.mark.asyncio
async def test_after_commit_callbacks_are_dropped_on_rollback(db_session):
    calls = []

    async def callback() -> None:
        calls.append("ran")

    after_commit(db_session, callback)
    await rollback_unit_of_work(db_session)
    await commit_unit_of_work(db_session)

    assert calls == []
