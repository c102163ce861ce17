"""
Contribution accounting: validation order, ledger effects, cached flag upkeep
and per-gift serialization.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import make_gift, make_user
from registry.core.errors import (
    AlreadyFullyFunded,
    AmountExceedsPrice,
    AmountExceedsRemaining,
    GiftNotFound,
    InvalidAmount,
)
from registry.models.models import Contribution, Gift
from registry.services.accounting import ContributionResult, ContributionService


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 5, 16, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def accounting(database):
    return ContributionService(database, clock=TickingClock())


async def _set_cached_flag(database, gift_id: int, value: bool) -> None:
    async with database.session() as session:
        await session.execute(update(Gift).where(Gift.id == gift_id).values(is_contributed=value))
        await session.commit()


async def _insert_raw_contribution(database, gift_id: int, user_id: int, amount: str) -> None:
    async with database.session() as session:
        session.add(Contribution(gift_id=gift_id, user_id=user_id, amount=Decimal(amount)))
        await session.commit()


class TestFundingScenarios:
    async def test_partial_contribution_is_not_funded(self, accounting, gift, guest):
        result = await accounting.contribute(gift.id, guest.id, 40)

        assert result.funding.total_contributed == Decimal("40.00")
        assert result.funding.remaining == Decimal("60.00")
        assert result.funding.is_fully_funded is False
        assert result.gift.is_contributed is False
        assert len(result.contributions) == 1

    async def test_second_contribution_completes_the_gift(self, accounting, gift, guest):
        await accounting.contribute(gift.id, guest.id, 40)
        result = await accounting.contribute(gift.id, guest.id, 60)

        assert result.funding.total_contributed == Decimal("100.00")
        assert result.funding.is_fully_funded is True
        assert result.gift.is_contributed is True
        assert [c.amount for c in result.contributions] == [Decimal("60.00"), Decimal("40.00")]

    async def test_contribution_to_funded_gift_is_rejected(self, accounting, gift, guest):
        await accounting.contribute(gift.id, guest.id, 40)
        await accounting.contribute(gift.id, guest.id, 60)

        with pytest.raises(AlreadyFullyFunded):
            await accounting.contribute(gift.id, guest.id, 1)

        assert len(await accounting.list_contributions(gift.id)) == 2

    async def test_amount_above_price_is_rejected_with_maximum(self, accounting, gift, guest):
        with pytest.raises(AmountExceedsPrice) as exc_info:
            await accounting.contribute(gift.id, guest.id, 150)

        assert exc_info.value.context["max_amount"] == Decimal("100.00")
        assert exc_info.value.to_dict()["max_amount"] == 100.0
        assert await accounting.list_contributions(gift.id) == []

    async def test_amount_above_remaining_reports_remaining(self, accounting, gift, guest):
        await accounting.contribute(gift.id, guest.id, 90)

        with pytest.raises(AmountExceedsRemaining) as exc_info:
            await accounting.contribute(gift.id, guest.id, 20)

        assert exc_info.value.context["remaining"] == Decimal("10.00")
        assert "10.00" in exc_info.value.message
        assert len(await accounting.list_contributions(gift.id)) == 1

    async def test_concurrent_contributions_do_not_overfund(self, accounting, database, gift):
        first = await make_user(database, "ana")
        second = await make_user(database, "bruno")

        results = await asyncio.gather(
            accounting.contribute(gift.id, first.id, 60),
            accounting.contribute(gift.id, second.id, 60),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, ContributionResult)]
        failures = [r for r in results if isinstance(r, AmountExceedsRemaining)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert failures[0].context["remaining"] == Decimal("40.00")

        state = await accounting.get_funding_state(gift.id)
        assert state.total_contributed == Decimal("60.00")
        assert len(await accounting.list_contributions(gift.id)) == 1

    async def test_contributions_to_different_gifts_are_independent(self, accounting, database, guest):
        gift_a = await make_gift(database, "50.00", name="Tostadora")
        gift_b = await make_gift(database, "50.00", name="Licuadora")

        results = await asyncio.gather(
            accounting.contribute(gift_a.id, guest.id, 50),
            accounting.contribute(gift_b.id, guest.id, 50),
        )

        assert all(r.funding.is_fully_funded for r in results)


class TestValidation:
    @pytest.mark.parametrize("amount", [0, -5, "-0.01", "abc", None, "", True, "1.234", "NaN", "Infinity", [10]])
    async def test_invalid_amount_leaves_state_untouched(self, accounting, gift, guest, amount):
        before = await accounting.get_funding_state(gift.id)

        with pytest.raises(InvalidAmount):
            await accounting.contribute(gift.id, guest.id, amount)

        assert await accounting.get_funding_state(gift.id) == before
        assert await accounting.list_contributions(gift.id) == []

    async def test_amount_is_validated_before_gift_lookup(self, accounting, guest):
        with pytest.raises(InvalidAmount):
            await accounting.contribute(9999, guest.id, 0)

    async def test_missing_gift(self, accounting, guest):
        with pytest.raises(GiftNotFound) as exc_info:
            await accounting.contribute(9999, guest.id, 10)
        assert exc_info.value.status_code == 404

    async def test_inactive_gift_is_not_found(self, accounting, database, guest):
        hidden = await make_gift(database, "80.00", is_active=False)

        with pytest.raises(GiftNotFound):
            await accounting.contribute(hidden.id, guest.id, 10)

    async def test_string_amounts_are_accepted(self, accounting, gift, guest):
        result = await accounting.contribute(gift.id, guest.id, "25.50")
        assert result.contribution.amount == Decimal("25.50")

    async def test_receipt_and_note_are_recorded(self, accounting, gift, guest):
        result = await accounting.contribute(
            gift.id, guest.id, 10, receipt="receipts/yape-001.png", note="Felicidades!"
        )

        entry = result.contributions[0]
        assert entry.receipt_file == "receipts/yape-001.png"
        assert entry.note == "Felicidades!"
        assert entry.user.username == "maria"


class TestSettleFull:
    async def test_settles_remaining_balance(self, accounting, gift, guest):
        await accounting.contribute(gift.id, guest.id, 30)

        result = await accounting.settle_full(gift.id, guest.id, note="pago total")

        assert result.contribution.amount == Decimal("70.00")
        assert result.funding.is_fully_funded is True
        assert result.gift.is_contributed is True

    async def test_settle_on_funded_gift_fails(self, accounting, gift, guest):
        await accounting.settle_full(gift.id, guest.id)

        with pytest.raises(AlreadyFullyFunded):
            await accounting.settle_full(gift.id, guest.id)
        assert len(await accounting.list_contributions(gift.id)) == 1

    async def test_settle_missing_gift(self, accounting, guest):
        with pytest.raises(GiftNotFound):
            await accounting.settle_full(4242, guest.id)


class TestFundingState:
    async def test_computed_from_ledger(self, accounting, database, gift, guest):
        await _insert_raw_contribution(database, gift.id, guest.id, "100.00")

        state = await accounting.get_funding_state(gift.id)

        assert state.is_fully_funded is True
        assert state.is_contributed is False
        assert state.is_consistent is False

    async def test_invariant_holds_through_a_sequence(self, accounting, gift, guest):
        for amount in ["12.50", "37.50", "25", "25"]:
            await accounting.contribute(gift.id, guest.id, amount)
            state = await accounting.get_funding_state(gift.id)
            ledger_sum = sum(c.amount for c in await accounting.list_contributions(gift.id))
            assert state.total_contributed == ledger_sum
            assert state.is_fully_funded == (ledger_sum >= state.price)
            assert state.is_consistent

    async def test_totals_only_increase(self, accounting, gift, guest):
        totals = []
        for amount in [10, "20.5", 30]:
            result = await accounting.contribute(gift.id, guest.id, amount)
            totals.append(result.funding.total_contributed)
        assert totals == sorted(totals)
        assert totals[-1] == Decimal("60.50")

    async def test_cent_rounding_reaches_funded(self, accounting, gift, guest):
        for amount in ["33.33", "33.33", "33.34"]:
            result = await accounting.contribute(gift.id, guest.id, amount)

        assert result.funding.total_contributed == Decimal("100.00")
        assert result.funding.is_fully_funded is True

    async def test_overfunded_legacy_data_counts_as_funded(self, accounting, database, gift, guest):
        await _insert_raw_contribution(database, gift.id, guest.id, "120.00")

        state = await accounting.get_funding_state(gift.id)
        assert state.is_fully_funded is True
        assert state.remaining == Decimal("0.00")
        with pytest.raises(AlreadyFullyFunded):
            await accounting.contribute(gift.id, guest.id, 1)

    async def test_missing_gift(self, accounting):
        with pytest.raises(GiftNotFound):
            await accounting.get_funding_state(31337)


class TestCachedFlag:
    async def test_wrongly_set_flag_heals_on_next_contribution(self, accounting, database, gift, guest):
        await _set_cached_flag(database, gift.id, True)
        assert (await accounting.get_funding_state(gift.id)).is_consistent is False

        partial = await accounting.contribute(gift.id, guest.id, 10)
        assert partial.gift.is_contributed is False
        assert (await accounting.get_funding_state(gift.id)).is_consistent

        final = await accounting.contribute(gift.id, guest.id, 90)
        assert final.gift.is_contributed is True
        assert (await accounting.get_funding_state(gift.id)).is_consistent

    async def test_recompute_reports_drift_once(self, accounting, database, gift):
        await _set_cached_flag(database, gift.id, True)

        state, corrected = await accounting.recompute(gift.id)
        assert corrected is True
        assert state.is_contributed is False

        _, corrected_again = await accounting.recompute(gift.id)
        assert corrected_again is False

    async def test_reset_clears_ledger_and_flag(self, accounting, gift, guest):
        await accounting.contribute(gift.id, guest.id, 40)
        await accounting.contribute(gift.id, guest.id, 60)

        deleted = await accounting.reset(gift.id)

        assert deleted == 2
        state = await accounting.get_funding_state(gift.id)
        assert state.total_contributed == Decimal("0.00")
        assert state.is_contributed is False
        result = await accounting.contribute(gift.id, guest.id, 100)
        assert result.funding.is_fully_funded is True


class TestOrdering:
    async def test_most_recent_first(self, accounting, gift, guest):
        for amount in [10, 20, 30]:
            result = await accounting.contribute(gift.id, guest.id, amount)

        assert [c.amount for c in result.contributions] == [
            Decimal("30.00"),
            Decimal("20.00"),
            Decimal("10.00"),
        ]

    async def test_equal_timestamps_keep_insertion_order(self, database, gift, guest):
        fixed = datetime(2026, 5, 16, 12, 0, tzinfo=timezone.utc)
        accounting = ContributionService(database, clock=lambda: fixed)

        for amount in [10, 20, 30]:
            await accounting.contribute(gift.id, guest.id, amount)

        contributions = await accounting.list_contributions(gift.id)
        ids = [c.id for c in contributions]
        assert ids == sorted(ids)
        assert [c.amount for c in contributions] == [Decimal("10.00"), Decimal("20.00"), Decimal("30.00")]


class TestGiftLocks:
    async def test_locks_are_released_after_use(self, accounting, gift, guest):
        await asyncio.gather(
            accounting.contribute(gift.id, guest.id, 60),
            accounting.contribute(gift.id, guest.id, 60),
            return_exceptions=True,
        )
        await accounting.recompute(gift.id)

        assert accounting._locks == {}

    async def test_missing_gifts_leave_no_lock_behind(self, accounting, guest):
        for gift_id in range(1000, 1050):
            with pytest.raises(GiftNotFound):
                await accounting.settle_full(gift_id, guest.id)

        assert accounting._locks == {}

    async def test_waiters_share_one_lock(self, accounting):
        async with accounting.gift_lock(1):
            waiter = asyncio.create_task(self._enter(accounting, 1))
            await asyncio.sleep(0)
            assert accounting._locks[1].holders == 2
            assert not waiter.done()
        await waiter
        assert accounting._locks == {}

    @staticmethod
    async def _enter(accounting, gift_id):
        async with accounting.gift_lock(gift_id):
            pass
