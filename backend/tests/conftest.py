"""
Pytest fixtures for test database, client, and authentication.

Every test gets its own SQLite file (or TEST_DATABASE_URL when set) so that
independent sessions can race the conditional updates against a real store.
"""

import os

# Settings are read once at import time; point them at the test stack first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import date, datetime, time, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from studio_booking.main import app
from studio_booking.core.config import get_settings
from studio_booking.core.security import create_access_token
from studio_booking.db.base import Base
from studio_booking.db.session import commit_unit_of_work, get_db, rollback_unit_of_work
from studio_booking.domain.enums import CouponScope, CouponType, PlanType
from studio_booking.models import (
    ClassInstance,
    ClassPass,
    CompClass,
    Coupon,
    MembershipPlan,
    Studio,
    Subscription,
)

STAFF_ID = 900
DROP_IN_PRICE = 1000


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Create tables on a fresh database, yield a session factory, then drop them."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}"
    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client whose requests each run in their own committed unit of work."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await commit_unit_of_work(session)
            except Exception:
                await rollback_unit_of_work(session)
                raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers_for(member_id: int, studio_id: int, role: str = "member") -> dict:
    token = create_access_token(member_id, studio_id, role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    """Bearer headers for any (member, studio, role), as the auth collaborator would issue."""
    return auth_headers_for


@pytest.fixture
def payment_headers() -> dict:
    return {"X-Payment-Token": get_settings().PAYMENT_CALLBACK_TOKEN}


@pytest_asyncio.fixture
async def studio(db_session: AsyncSession) -> Studio:
    """A UTC studio with a 12 hour window, a 500 cent late fee and credit forfeiture."""
    studio = Studio(
        name="Test Studio",
        timezone="UTC",
        cancellation_window_hours=12,
        late_cancel_fee_cents=500,
        late_cancel_forfeits_credit=True,
    )
    db_session.add(studio)
    await db_session.commit()
    await db_session.refresh(studio)
    return studio


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession, studio: Studio) -> dict[str, MembershipPlan]:
    plans = {
        "unlimited": MembershipPlan(
            studio_id=studio.id, name="Unlimited", type=PlanType.UNLIMITED.value, price_cents=15000
        ),
        "limited": MembershipPlan(
            studio_id=studio.id, name="8 per month", type=PlanType.LIMITED.value, price_cents=9000, class_limit=2
        ),
        "drop_in": MembershipPlan(
            studio_id=studio.id, name="Drop-in", type=PlanType.DROP_IN.value, price_cents=DROP_IN_PRICE
        ),
    }
    db_session.add_all(plans.values())
    await db_session.commit()
    return plans


@pytest_asyncio.fixture
async def staff_headers(studio: Studio) -> dict:
    return auth_headers_for(STAFF_ID, studio.id, role="staff")


@pytest_asyncio.fixture
async def make_class(db_session: AsyncSession, studio: Studio):
    """Factory for class instances a week out at 18:00 studio time."""

    async def _make(
        max_capacity: int = 10,
        days_ahead: int = 7,
        start: time = time(18, 0),
        name: str = "Vinyasa Flow",
    ) -> ClassInstance:
        class_instance = ClassInstance(
            studio_id=studio.id,
            name=name,
            date=date.today() + timedelta(days=days_ahead),
            start_time=start,
            end_time=time(start.hour + 1, start.minute),
            max_capacity=max_capacity,
        )
        db_session.add(class_instance)
        await db_session.commit()
        await db_session.refresh(class_instance)
        return class_instance

    return _make


@pytest_asyncio.fixture
async def make_subscription(db_session: AsyncSession, studio: Studio, plans: dict[str, MembershipPlan]):
    async def _make(member_id: int, plan: str = "unlimited", used: int = 0) -> Subscription:
        subscription = Subscription(
            member_id=member_id,
            studio_id=studio.id,
            plan_id=plans[plan].id,
            current_period_start=datetime.now(timezone.utc) - timedelta(days=1),
            current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
            classes_used_this_period=used,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _make


@pytest_asyncio.fixture
async def make_pass(db_session: AsyncSession, studio: Studio):
    async def _make(
        member_id: int,
        remaining: int = 1,
        total: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        comp: bool = False,
    ):
        model = CompClass if comp else ClassPass
        card = model(
            member_id=member_id,
            studio_id=studio.id,
            total_classes=total or max(remaining, 1),
            remaining_classes=remaining,
            expires_at=expires_at,
        )
        db_session.add(card)
        await db_session.commit()
        await db_session.refresh(card)
        return card

    return _make


@pytest_asyncio.fixture
async def make_coupon(db_session: AsyncSession, studio: Studio):
    async def _make(
        code: str = "SAVE20",
        type: CouponType = CouponType.PERCENT_OFF,
        value: int = 20,
        applies_to: CouponScope = CouponScope.ANY,
        max_redemptions: Optional[int] = None,
        **fields,
    ) -> Coupon:
        fields.setdefault("active", True)
        coupon = Coupon(
            studio_id=studio.id,
            code=code,
            type=type.value,
            value=value,
            applies_to=applies_to.value,
            plan_ids=fields.pop("plan_ids", []),
            max_redemptions=max_redemptions,
            current_redemptions=0,
            **fields,
        )
        db_session.add(coupon)
        await db_session.commit()
        await db_session.refresh(coupon)
        return coupon

    return _make
