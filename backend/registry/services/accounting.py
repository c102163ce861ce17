"""Contribution accounting.

The only component allowed to append to the contribution ledger or to write a
gift's cached ``is_contributed`` flag. Every write for a gift runs in a single
transaction that is serialized per gift: an in-process lock keyed by gift id
plus ``SELECT ... FOR UPDATE`` on the gift row (the row lock is a no-op on
SQLite, where the in-process lock is what orders writers).
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from registry.core.errors import (
    AccountingError,
    AlreadyFullyFunded,
    AmountExceedsPrice,
    AmountExceedsRemaining,
    GiftNotFound,
)
from registry.core.money import ZERO, parse_amount, to_money
from registry.db.session import Database
from registry.models.models import Contribution, Gift, utcnow


logger = logging.getLogger("registry.accounting")


@dataclass(frozen=True)
class FundingState:
    gift_id: int
    price: Decimal
    total_contributed: Decimal
    is_contributed: bool

    @property
    def remaining(self) -> Decimal:
        return max(self.price - self.total_contributed, ZERO)

    @property
    def is_fully_funded(self) -> bool:
        return self.total_contributed >= self.price

    @property
    def is_consistent(self) -> bool:
        return self.is_contributed == self.is_fully_funded


@dataclass
class _GiftLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass
class ContributionResult:
    gift: Gift
    funding: FundingState
    contribution: Contribution
    contributions: list[Contribution]


async def sum_ledger(session: AsyncSession, gift_id: int) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(Contribution.amount), 0)).where(Contribution.gift_id == gift_id)
    )
    return to_money(result.scalar_one())


async def load_contributions(session: AsyncSession, gift_id: int) -> list[Contribution]:
    """Ledger entries for a gift, most recent first; equal timestamps keep insertion order."""
    result = await session.execute(
        select(Contribution)
        .options(selectinload(Contribution.user))
        .where(Contribution.gift_id == gift_id)
        .order_by(Contribution.created_at.desc(), Contribution.id.asc())
    )
    return list(result.scalars().all())


class ContributionService:
    def __init__(self, database: Database, clock: Callable[[], datetime] | None = None) -> None:
        self._database = database
        self._clock = clock or utcnow
        self._locks: dict[int, _GiftLock] = {}

    @asynccontextmanager
    async def gift_lock(self, gift_id: int) -> AsyncIterator[None]:
        """Serialize writers of one gift.

        The entry is dropped once no task holds or waits on it, so ids that
        never resolve to a gift leave nothing behind.
        """
        entry = self._locks.get(gift_id)
        if entry is None:
            entry = self._locks[gift_id] = _GiftLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[gift_id]

    async def contribute(
        self,
        gift_id: int,
        contributor_id: int,
        amount: Any,
        receipt: str | None = None,
        note: str | None = None,
    ) -> ContributionResult:
        value = parse_amount(amount)
        return await self._record(gift_id, contributor_id, value, receipt, note)

    async def settle_full(
        self,
        gift_id: int,
        contributor_id: int,
        receipt: str | None = None,
        note: str | None = None,
    ) -> ContributionResult:
        """Contribute exactly the remaining balance of the gift."""
        return await self._record(gift_id, contributor_id, None, receipt, note)

    async def _record(
        self,
        gift_id: int,
        contributor_id: int,
        amount: Decimal | None,
        receipt: str | None,
        note: str | None,
    ) -> ContributionResult:
        await self._database.ensure_schema_ready()
        try:
            async with self.gift_lock(gift_id):
                async with self._database.session() as session:
                    async with session.begin():
                        gift = await self._get_active_gift_for_update(session, gift_id)
                        price = to_money(gift.price)
                        total = await sum_ledger(session, gift.id)
                        if total >= price:
                            raise AlreadyFullyFunded(gift.id, price, total)

                        remaining = price - total
                        if amount is None:
                            amount = remaining
                        elif amount > price:
                            raise AmountExceedsPrice(gift.id, amount, price, remaining)
                        elif amount > remaining:
                            raise AmountExceedsRemaining(gift.id, amount, remaining)

                        contribution = Contribution(
                            gift_id=gift.id,
                            user_id=contributor_id,
                            amount=amount,
                            receipt_file=receipt,
                            note=note,
                            created_at=self._clock(),
                        )
                        session.add(contribution)
                        new_total = total + amount
                        # Re-asserted on every write, in both directions.
                        gift.is_contributed = new_total >= price
                        await session.flush()

                    contributions = await load_contributions(session, gift.id)
        except AccountingError as exc:
            logger.info(
                "Contribution rejected gift_id=%s user_id=%s amount=%s error=%s",
                gift_id,
                contributor_id,
                amount,
                exc.code,
            )
            raise

        funding = FundingState(
            gift_id=gift.id,
            price=price,
            total_contributed=new_total,
            is_contributed=gift.is_contributed,
        )
        logger.info(
            "Contribution recorded gift_id=%s user_id=%s contribution_id=%s amount=%s total=%s price=%s funded=%s",
            gift.id,
            contributor_id,
            contribution.id,
            amount,
            new_total,
            price,
            funding.is_fully_funded,
        )
        return ContributionResult(
            gift=gift,
            funding=funding,
            contribution=contribution,
            contributions=contributions,
        )

    async def get_funding_state(self, gift_id: int) -> FundingState:
        """Funding state computed from the ledger, never from the cached flag."""
        await self._database.ensure_schema_ready()
        async with self._database.session() as session:
            gift = await session.get(Gift, gift_id)
            if gift is None:
                raise GiftNotFound(gift_id)
            total = await sum_ledger(session, gift.id)
            return FundingState(
                gift_id=gift.id,
                price=to_money(gift.price),
                total_contributed=total,
                is_contributed=bool(gift.is_contributed),
            )

    async def list_contributions(self, gift_id: int) -> list[Contribution]:
        await self._database.ensure_schema_ready()
        async with self._database.session() as session:
            if await session.get(Gift, gift_id) is None:
                raise GiftNotFound(gift_id)
            return await load_contributions(session, gift_id)

    async def recompute(self, gift_id: int) -> tuple[FundingState, bool]:
        """Re-assert the cached flag from the ledger.

        Returns the resulting state and whether the stored flag had drifted.
        """
        await self._database.ensure_schema_ready()
        async with self.gift_lock(gift_id):
            async with self._database.session() as session:
                async with session.begin():
                    gift = await self._get_gift_for_update(session, gift_id)
                    total = await sum_ledger(session, gift.id)
                    price = to_money(gift.price)
                    funded = total >= price
                    corrected = bool(gift.is_contributed) != funded
                    if corrected:
                        logger.warning(
                            "Cached funded flag drifted gift_id=%s cached=%s total=%s price=%s",
                            gift.id,
                            gift.is_contributed,
                            total,
                            price,
                        )
                        gift.is_contributed = funded
        state = FundingState(gift_id=gift_id, price=price, total_contributed=total, is_contributed=funded)
        return state, corrected

    async def reset(self, gift_id: int) -> int:
        """Administrative reset: drop the gift's ledger entries and clear its flag."""
        await self._database.ensure_schema_ready()
        async with self.gift_lock(gift_id):
            async with self._database.session() as session:
                async with session.begin():
                    gift = await self._get_gift_for_update(session, gift_id)
                    result = await session.execute(
                        delete(Contribution).where(Contribution.gift_id == gift.id)
                    )
                    gift.is_contributed = False
        deleted = result.rowcount or 0
        logger.warning("Gift ledger reset gift_id=%s deleted=%s", gift_id, deleted)
        return deleted

    async def _get_gift_for_update(self, session: AsyncSession, gift_id: int) -> Gift:
        result = await session.execute(select(Gift).where(Gift.id == gift_id).with_for_update())
        gift = result.scalar_one_or_none()
        if gift is None:
            raise GiftNotFound(gift_id)
        return gift

    async def _get_active_gift_for_update(self, session: AsyncSession, gift_id: int) -> Gift:
        gift = await self._get_gift_for_update(session, gift_id)
        if not gift.is_active:
            raise GiftNotFound(gift_id)
        return gift
