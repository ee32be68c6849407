"""
Credit ledger: decides which credit pays for a seat and debits it atomically.

CONCURRENCY STRATEGY: the row is the counter
============================================

Problem:
  A member with one class left books two classes from two devices at once.
  Both requests read remaining_classes=1, both decrement, both succeed.
  Result: a class booked on credit that does not exist.

Solution:
  Every debit is a single conditional UPDATE:

    UPDATE class_passes SET remaining_classes = remaining_classes - 1
    WHERE id = :id AND remaining_classes > 0

  If rows_affected == 0 another request spent the unit first, and we fall
  through to the next candidate instead of failing. The CHECK constraint
  (remaining_classes >= 0) is the final safety net.

  Each debit is recorded as a CreditReservation naming the exact unit taken.
  Refunds and forfeits flip that reservation out of `held` with another
  conditional UPDATE, so a reservation can be settled exactly once no matter
  how many times release is called.

Selection order (one ordered list of typed candidates):
  1. active unlimited subscription (nothing to debit)
  2. active limited subscription with allowance left
  3. class passes, soonest expiry first, non-expiring last
  4. comp classes, same ordering
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import NoCreditAvailable, NotFoundError
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import record_credit_debit, record_credit_settlement
from studio_booking.domain.enums import CreditReservationStatus, CreditSource, PlanType, SubscriptionStatus
from studio_booking.domain.policy import ensure_aware
from studio_booking.models.credit import ClassPass, CompClass, CreditReservation, Subscription

logger = get_logger(__name__)

_PUNCH_CARDS = {
    CreditSource.CLASS_PASS: ClassPass,
    CreditSource.COMP: CompClass,
}


@dataclass(frozen=True)
class CreditCandidate:
    source: CreditSource
    source_id: int
    metered: bool
    expires_at: Optional[datetime] = None
    limit: Optional[int] = None  # per-period ceiling for limited subscriptions


class CreditLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def candidates(
        self,
        member_id: int,
        studio_id: int,
        as_of: Optional[datetime] = None,
    ) -> list[CreditCandidate]:
        """Every credit the member could spend right now, in spending order."""
        as_of = ensure_aware(as_of or datetime.now(timezone.utc))

        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.member_id == member_id,
                Subscription.studio_id == studio_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                or_(
                    Subscription.current_period_end.is_(None),
                    Subscription.current_period_end > as_of,
                ),
            )
            .order_by(Subscription.id)
            .execution_options(populate_existing=True)
        )
        subscriptions = list(result.scalars().unique().all())

        unlimited = [
            CreditCandidate(CreditSource.SUBSCRIPTION, s.id, metered=False)
            for s in subscriptions
            if s.plan.type == PlanType.UNLIMITED.value
        ]
        limited = [
            CreditCandidate(
                CreditSource.SUBSCRIPTION, s.id, metered=True, limit=s.plan.class_limit
            )
            for s in subscriptions
            if s.plan.type == PlanType.LIMITED.value
            and s.plan.class_limit is not None
            and s.classes_used_this_period < s.plan.class_limit
        ]

        punch_cards: list[CreditCandidate] = []
        for source, model in _PUNCH_CARDS.items():
            result = await self.db.execute(
                select(model)
                .where(
                    model.member_id == member_id,
                    model.studio_id == studio_id,
                    model.remaining_classes > 0,
                    or_(model.expires_at.is_(None), model.expires_at > as_of),
                )
                # Soonest expiry first; NULL (never expires) sorts last
                .order_by(model.expires_at.is_(None), model.expires_at, model.id)
            )
            punch_cards.extend(
                CreditCandidate(source, card.id, metered=True, expires_at=card.expires_at)
                for card in result.scalars().all()
            )

        return unlimited + limited + punch_cards

    async def reserve_credit(
        self,
        member_id: int,
        studio_id: int,
        as_of: Optional[datetime] = None,
    ) -> CreditReservation:
        """
        Debit one credit and return the reservation reference.
        Raises NoCreditAvailable when every candidate is exhausted.
        """
        as_of = ensure_aware(as_of or datetime.now(timezone.utc))

        for candidate in await self.candidates(member_id, studio_id, as_of):
            if not await self._debit(candidate, as_of):
                logger.info(
                    "credit_debit_lost_race",
                    member_id=member_id,
                    source=candidate.source.value,
                    source_id=candidate.source_id,
                )
                continue

            reservation = CreditReservation(
                member_id=member_id,
                studio_id=studio_id,
                source=candidate.source.value,
                source_id=candidate.source_id,
                units=1 if candidate.metered else 0,
                status=CreditReservationStatus.HELD.value,
            )
            self.db.add(reservation)
            await self.db.flush()

            record_credit_debit(candidate.source.value)
            logger.info(
                "credit_reserved",
                reservation_id=reservation.id,
                member_id=member_id,
                studio_id=studio_id,
                source=candidate.source.value,
                source_id=candidate.source_id,
                units=reservation.units,
            )
            return reservation

        logger.info("credit_unavailable", member_id=member_id, studio_id=studio_id)
        raise NoCreditAvailable()

    async def _debit(self, candidate: CreditCandidate, as_of: datetime) -> bool:
        if candidate.source is CreditSource.SUBSCRIPTION:
            if not candidate.metered:
                return True
            result = await self.db.execute(
                update(Subscription)
                .where(
                    Subscription.id == candidate.source_id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.classes_used_this_period < candidate.limit,
                )
                .values(classes_used_this_period=Subscription.classes_used_this_period + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        model = _PUNCH_CARDS[candidate.source]
        result = await self.db.execute(
            update(model)
            .where(
                model.id == candidate.source_id,
                model.remaining_classes > 0,
                or_(model.expires_at.is_(None), model.expires_at > as_of),
            )
            .values(remaining_classes=model.remaining_classes - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _refund(self, reservation: CreditReservation) -> None:
        if not reservation.units:
            return
        if reservation.source == CreditSource.SUBSCRIPTION.value:
            await self.db.execute(
                update(Subscription)
                .where(
                    Subscription.id == reservation.source_id,
                    Subscription.classes_used_this_period > 0,
                )
                .values(classes_used_this_period=Subscription.classes_used_this_period - 1)
                .execution_options(synchronize_session=False)
            )
            return
        model = _PUNCH_CARDS[CreditSource(reservation.source)]
        await self.db.execute(
            update(model)
            .where(
                model.id == reservation.source_id,
                model.remaining_classes < model.total_classes,
            )
            .values(remaining_classes=model.remaining_classes + 1)
            .execution_options(synchronize_session=False)
        )

    async def _settle(self, reservation_id: int, outcome: CreditReservationStatus) -> Optional[CreditReservation]:
        """Move a held reservation to `outcome`. Returns None if it was already settled."""
        result = await self.db.execute(
            update(CreditReservation)
            .where(
                CreditReservation.id == reservation_id,
                CreditReservation.status == CreditReservationStatus.HELD.value,
            )
            .values(status=outcome.value, settled_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            record_credit_settlement("noop")
            logger.info("credit_settlement_noop", reservation_id=reservation_id, outcome=outcome.value)
            return None
        return await self.get_reservation(reservation_id)

    async def release_credit(self, reservation_id: int) -> bool:
        """Refund the exact unit a reservation took. Safe to call repeatedly."""
        reservation = await self._settle(reservation_id, CreditReservationStatus.RELEASED)
        if reservation is None:
            return False

        await self._refund(reservation)
        record_credit_settlement(CreditReservationStatus.RELEASED.value)
        logger.info(
            "credit_released",
            reservation_id=reservation_id,
            source=reservation.source,
            source_id=reservation.source_id,
            units=reservation.units,
        )
        return True

    async def forfeit_credit(self, reservation_id: int) -> bool:
        """Settle a held reservation without refunding it (late cancel, no-show)."""
        reservation = await self._settle(reservation_id, CreditReservationStatus.FORFEITED)
        if reservation is None:
            return False

        record_credit_settlement(CreditReservationStatus.FORFEITED.value)
        logger.info(
            "credit_forfeited",
            reservation_id=reservation_id,
            source=reservation.source,
            source_id=reservation.source_id,
        )
        return True

    async def link_booking(self, reservation_id: int, booking_id: int) -> None:
        await self.db.execute(
            update(CreditReservation)
            .where(CreditReservation.id == reservation_id)
            .values(booking_id=booking_id)
            .execution_options(synchronize_session=False)
        )

    async def get_reservation(self, reservation_id: int) -> CreditReservation:
        result = await self.db.execute(
            select(CreditReservation)
            .where(CreditReservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise NotFoundError("Credit reservation", reservation_id)
        return reservation

    async def grant_comp(
        self,
        member_id: int,
        studio_id: int,
        classes: int,
        granted_by: Optional[int] = None,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> CompClass:
        comp = CompClass(
            member_id=member_id,
            studio_id=studio_id,
            total_classes=classes,
            remaining_classes=classes,
            expires_at=expires_at,
            granted_by=granted_by,
            reason=reason,
        )
        self.db.add(comp)
        await self.db.flush()
        await self.db.refresh(comp)

        logger.info(
            "comp_granted",
            comp_id=comp.id,
            member_id=member_id,
            studio_id=studio_id,
            classes=classes,
            granted_by=granted_by,
        )
        return comp

    async def credit_summary(
        self,
        member_id: int,
        studio_id: int,
        as_of: Optional[datetime] = None,
    ) -> dict:
        """Usable balances only: expired and exhausted credits are left out."""
        as_of = ensure_aware(as_of or datetime.now(timezone.utc))
        usable = await self.candidates(member_id, studio_id, as_of)

        by_source: dict[CreditSource, list[int]] = {}
        for candidate in usable:
            by_source.setdefault(candidate.source, []).append(candidate.source_id)

        subscriptions = await self._load(Subscription, by_source.get(CreditSource.SUBSCRIPTION, []))
        passes = await self._load(ClassPass, by_source.get(CreditSource.CLASS_PASS, []))
        comps = await self._load(CompClass, by_source.get(CreditSource.COMP, []))

        return {
            "member_id": member_id,
            "studio_id": studio_id,
            "unlimited": any(not c.metered for c in usable),
            "remaining_classes": (
                sum(s.plan.class_limit - s.classes_used_this_period for s in subscriptions
                    if s.plan.type == PlanType.LIMITED.value)
                + sum(p.remaining_classes for p in passes)
                + sum(c.remaining_classes for c in comps)
            ),
            "subscriptions": subscriptions,
            "class_passes": passes,
            "comp_classes": comps,
        }

    async def _load(self, model, ids: list[int]) -> list:
        if not ids:
            return []
        result = await self.db.execute(
            select(model)
            .where(model.id.in_(ids))
            .order_by(model.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().unique().all())
