"""
Concurrency tests: independent sessions race the same rows.

Each task opens its own session, the way separate API requests would, and
commits on success. Whatever the interleaving, the conditional updates must
leave the counters consistent.
"""

import asyncio

import pytest

from studio_booking.core.exceptions import AlreadyRedeemedError, BookingEngineError, InvalidCoupon, NoCreditAvailable
from studio_booking.domain.enums import BookingStatus, CouponPurpose
from studio_booking.services.booking_service import BookingOrchestrator
from studio_booking.services.capacity_ledger import CapacityLedger
from studio_booking.services.coupon_service import CouponContext, CouponService


async def _in_session(session_factory, work):
    async with session_factory() as session:
        try:
            result = await work(session)
            await session.commit()
            return result
        except BookingEngineError as exc:
            await session.rollback()
            return exc


async def _reserve(session_factory, member_id: int, class_instance_id: int):
    return await _in_session(
        session_factory, lambda s: BookingOrchestrator(s).reserve(member_id, class_instance_id)
    )


async def _cancel(session_factory, booking_id: int):
    return await _in_session(session_factory, lambda s: BookingOrchestrator(s).cancel(booking_id))


@pytest.mark.asyncio
async def test_two_members_race_for_the_last_seat(session_factory, make_class, make_subscription):
    class_instance = await make_class(max_capacity=1)
    await make_subscription(1)
    await make_subscription(2)

    results = await asyncio.gather(
        _reserve(session_factory, 1, class_instance.id),
        _reserve(session_factory, 2, class_instance.id),
    )

    statuses = sorted(r.status for r in results)
    assert statuses == [BookingStatus.BOOKED.value, BookingStatus.WAITLISTED.value]
    waitlisted = next(r for r in results if r.status == BookingStatus.WAITLISTED.value)
    assert waitlisted.waitlist_position == 1


@pytest.mark.asyncio
async def test_crowd_never_oversells(session_factory, make_class, make_subscription):
    class_instance = await make_class(max_capacity=3)
    members = list(range(10, 18))
    for member in members:
        await make_subscription(member)

    results = await asyncio.gather(*(_reserve(session_factory, m, class_instance.id) for m in members))

    booked = [r for r in results if r.status == BookingStatus.BOOKED.value]
    waitlisted = [r for r in results if r.status == BookingStatus.WAITLISTED.value]
    assert len(booked) == 3
    assert sorted(r.waitlist_position for r in waitlisted) == [1, 2, 3, 4, 5]

    async with session_factory() as session:
        ledger = CapacityLedger(session)
        assert await ledger.seated_count(class_instance.id) == 3
        assert (await ledger.get_class(class_instance.id)).booked_count == 3


@pytest.mark.asyncio
async def test_last_pass_credit_is_spent_once(session_factory, db_session, make_class, make_pass):
    first_class = await make_class(days_ahead=5)
    second_class = await make_class(days_ahead=6)
    card = await make_pass(1, remaining=1)

    results = await asyncio.gather(
        _reserve(session_factory, 1, first_class.id),
        _reserve(session_factory, 1, second_class.id),
    )

    assert sum(1 for r in results if isinstance(r, NoCreditAvailable)) == 1
    assert sum(1 for r in results if getattr(r, "status", None) == BookingStatus.BOOKED.value) == 1
    await db_session.refresh(card)
    assert card.remaining_classes == 0


@pytest.mark.asyncio
async def test_single_use_coupon_redeemed_once(session_factory, db_session, studio, make_coupon):
    coupon = await make_coupon(code="ONCE", max_redemptions=1)
    context = CouponContext(purpose=CouponPurpose.PLAN, member_id=1)

    # Both requests are told the coupon is valid
    checks = await asyncio.gather(
        _in_session(session_factory, lambda s: CouponService(s).validate(studio.id, "ONCE", context)),
        _in_session(session_factory, lambda s: CouponService(s).validate(studio.id, "ONCE", context)),
    )
    assert all(check.valid for check in checks)

    results = await asyncio.gather(
        _in_session(
            session_factory,
            lambda s: CouponService(s).redeem(coupon.id, 1, studio.id, ("plan_purchase", "inv-1")),
        ),
        _in_session(
            session_factory,
            lambda s: CouponService(s).redeem(coupon.id, 2, studio.id, ("plan_purchase", "inv-2")),
        ),
    )

    failures = [r for r in results if isinstance(r, (InvalidCoupon, AlreadyRedeemedError))]
    assert len(failures) == 1
    await db_session.refresh(coupon)
    assert coupon.current_redemptions == 1


@pytest.mark.asyncio
async def test_racing_cancellations_promote_each_waiter_once(session_factory, make_class, make_subscription):
    class_instance = await make_class(max_capacity=2)
    for member in (1, 2, 3):
        await make_subscription(member)

    seated = [await _reserve(session_factory, m, class_instance.id) for m in (1, 2)]
    waiting = await _reserve(session_factory, 3, class_instance.id)
    assert waiting.status == BookingStatus.WAITLISTED.value

    await asyncio.gather(*(_cancel(session_factory, b.id) for b in seated))

    async with session_factory() as session:
        ledger = CapacityLedger(session)
        promoted = await ledger.get_booking(waiting.id)
        assert promoted.status == BookingStatus.BOOKED.value
        assert (await ledger.get_class(class_instance.id)).booked_count == 1
        assert await ledger.seated_count(class_instance.id) == 1
