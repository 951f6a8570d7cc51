"""Tests for the reservation ledger.

Admission control against account balances:
    available = balance - sum(active reservations)

Rejections are returned as data; release and commit are idempotent.
"""

import asyncio
import uuid

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from jobengine.core.errors import (
    AccountNotFoundError,
    InvalidAmountError,
    ReservationConflictError,
)
from jobengine.services.balance_store import InMemoryBalanceStore, ReservationStatus
from jobengine.services.reservation_ledger import (
    UPGRADE_PATH,
    InsufficientBalance,
    ReservationLedger,
    build_ledger,
)

# =============================================================================
# reserve
# =============================================================================


class TestReserve:
    """Admission against the available balance."""

    async def test_admits_when_estimate_fits(self, ledger, account_id) -> None:
        job_id = uuid.uuid4()
        result = await ledger.reserve(account_id, job_id, 700)

        assert result.ok is True
        assert result.available_balance == 300
        assert result.total_reserved == 700
        assert result.required_amount == 700
        assert result.reservation is not None
        assert result.reservation.status is ReservationStatus.ACTIVE
        assert result.insufficient_balance is None

    async def test_admits_exact_available_amount(self, ledger, account_id) -> None:
        result = await ledger.reserve(account_id, uuid.uuid4(), 1000)
        assert result.ok is True
        assert result.available_balance == 0

    async def test_rejects_when_estimate_exceeds_available(
        self, ledger, account_id
    ) -> None:
        await ledger.reserve(account_id, uuid.uuid4(), 700)

        result = await ledger.reserve(account_id, uuid.uuid4(), 400)

        assert result.ok is False
        assert result.available_balance == 300
        assert result.total_reserved == 700
        assert result.required_amount == 400
        assert result.reservation is None

    async def test_rejection_carries_shortfall_and_upgrade_path(
        self, ledger, account_id
    ) -> None:
        await ledger.reserve(account_id, uuid.uuid4(), 700)
        result = await ledger.reserve(account_id, uuid.uuid4(), 400)

        condition = result.insufficient_balance
        assert isinstance(condition, InsufficientBalance)
        assert condition.shortfall == 100
        assert condition.upgrade_path == UPGRADE_PATH
        assert "300" in condition.message
        assert "400" in condition.message

    async def test_rejected_job_holds_nothing(self, ledger, account_id) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 5000)

        assert await ledger.get_reservation(job_id) is None
        assert await ledger.available_balance(account_id) == 1000

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True, "100"])
    async def test_invalid_amount_raises(self, ledger, account_id, amount) -> None:
        with pytest.raises(InvalidAmountError):
            await ledger.reserve(account_id, uuid.uuid4(), amount)

    async def test_unknown_account_raises(self, ledger) -> None:
        with pytest.raises(AccountNotFoundError):
            await ledger.reserve(uuid.uuid4(), uuid.uuid4(), 10)

    async def test_second_reserve_for_same_job_returns_existing(
        self, ledger, account_id
    ) -> None:
        job_id = uuid.uuid4()
        first = await ledger.reserve(account_id, job_id, 300)
        second = await ledger.reserve(account_id, job_id, 900)

        assert first.already_held is False
        assert second.ok is True
        assert second.reservation == first.reservation
        assert second.already_held is True
        assert second.required_amount == 300
        assert await ledger.available_balance(account_id) == 700

    async def test_reserve_after_commit_raises_conflict(
        self, ledger, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 300)
        await ledger.commit(job_id, 200)

        with pytest.raises(ReservationConflictError):
            await ledger.reserve(account_id, job_id, 300)

    async def test_reserve_after_release_takes_new_hold(
        self, ledger, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 300)
        await ledger.release(job_id)

        result = await ledger.reserve(account_id, job_id, 500)

        assert result.ok is True
        assert result.reservation.reserved_amount == 500
        assert await ledger.available_balance(account_id) == 500


# =============================================================================
# release / commit
# =============================================================================


class TestRelease:
    async def test_release_frees_the_hold(self, ledger, account_id) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 700)

        assert await ledger.release(job_id) is True

        reservation = await ledger.get_reservation(job_id)
        assert reservation.status is ReservationStatus.RELEASED
        assert reservation.resolved_at is not None
        assert await ledger.available_balance(account_id) == 1000

    async def test_release_does_not_touch_balance(
        self, ledger, memory_store, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 700)
        await ledger.release(job_id)
        assert memory_store.balance_of(account_id) == 1000
        assert memory_store.usage == []

    async def test_release_unknown_job_is_noop(self, ledger) -> None:
        assert await ledger.release(uuid.uuid4()) is False

    async def test_release_twice_is_noop(self, ledger, account_id) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 700)
        await ledger.release(job_id)
        assert await ledger.release(job_id) is False


class TestCommit:
    async def test_commit_deducts_actual_usage(
        self, ledger, memory_store, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 700)

        assert await ledger.commit(job_id, 450) is True

        assert memory_store.balance_of(account_id) == 550
        assert await ledger.available_balance(account_id) == 550
        reservation = await ledger.get_reservation(job_id)
        assert reservation.status is ReservationStatus.COMMITTED
        assert reservation.committed_amount == 450
        assert [u.units for u in memory_store.usage] == [450]

    async def test_commit_above_estimate_is_allowed(
        self, ledger, memory_store, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 100)
        await ledger.commit(job_id, 250)
        assert memory_store.balance_of(account_id) == 750

    async def test_commit_floors_balance_at_zero(
        self, ledger, memory_store, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 900)
        await ledger.commit(job_id, 5000)
        assert memory_store.balance_of(account_id) == 0

    async def test_commit_zero_units(self, ledger, memory_store, account_id) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 100)
        assert await ledger.commit(job_id, 0) is True
        assert memory_store.balance_of(account_id) == 1000

    async def test_commit_negative_raises(self, ledger, account_id) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 100)
        with pytest.raises(InvalidAmountError):
            await ledger.commit(job_id, -1)

    async def test_commit_unknown_job_is_noop(self, ledger) -> None:
        assert await ledger.commit(uuid.uuid4(), 10) is False


class TestIdempotency:
    """Repeated or mixed resolution never double-applies a balance change."""

    async def test_commit_twice_charges_once(
        self, ledger, memory_store, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 300)
        await ledger.commit(job_id, 300)
        assert await ledger.commit(job_id, 300) is False
        assert memory_store.balance_of(account_id) == 700
        assert len(memory_store.usage) == 1

    async def test_release_after_commit_is_noop(
        self, ledger, memory_store, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 300)
        await ledger.commit(job_id, 300)
        assert await ledger.release(job_id) is False
        reservation = await ledger.get_reservation(job_id)
        assert reservation.status is ReservationStatus.COMMITTED
        assert memory_store.balance_of(account_id) == 700

    async def test_commit_after_release_is_noop(
        self, ledger, memory_store, account_id
    ) -> None:
        job_id = uuid.uuid4()
        await ledger.reserve(account_id, job_id, 300)
        await ledger.release(job_id)
        assert await ledger.commit(job_id, 300) is False
        assert memory_store.balance_of(account_id) == 1000


# =============================================================================
# Scenarios
# =============================================================================


class TestScenarios:
    async def test_reserve_reject_release_retry(self, ledger, account_id) -> None:
        """1000 balance: A takes 700, B (400) is rejected, A releases, B fits."""
        job_a, job_b = uuid.uuid4(), uuid.uuid4()

        a = await ledger.reserve(account_id, job_a, 700)
        assert a.ok and a.available_balance == 300

        b = await ledger.reserve(account_id, job_b, 400)
        assert not b.ok
        assert (b.available_balance, b.total_reserved, b.required_amount) == (
            300,
            700,
            400,
        )

        await ledger.release(job_a)

        retry = await ledger.reserve(account_id, job_b, 400)
        assert retry.ok is True
        assert retry.available_balance == 600

    async def test_concurrent_reserves_never_overdraw(
        self, ledger, account_id
    ) -> None:
        results = await asyncio.gather(
            *(ledger.reserve(account_id, uuid.uuid4(), 300) for _ in range(10))
        )
        admitted = [r for r in results if r.ok]
        assert len(admitted) == 3
        assert await ledger.available_balance(account_id) == 100

    async def test_accounts_are_independent(self) -> None:
        a, b = uuid.uuid4(), uuid.uuid4()
        ledger = ReservationLedger(InMemoryBalanceStore({a: 100, b: 100}))

        await ledger.reserve(a, uuid.uuid4(), 100)
        result = await ledger.reserve(b, uuid.uuid4(), 100)

        assert result.ok is True
        assert await ledger.available_balance(a) == 0

    @settings(max_examples=50, deadline=None)
    @given(
        balance=st.integers(min_value=0, max_value=5000),
        amounts=st.lists(st.integers(min_value=1, max_value=2000), max_size=20),
    )
    def test_admitted_total_stays_within_balance(
        self, balance: int, amounts: list[int]
    ) -> None:
        account = uuid.uuid4()
        ledger = ReservationLedger(InMemoryBalanceStore({account: balance}))

        async def run() -> list:
            return await asyncio.gather(
                *(ledger.reserve(account, uuid.uuid4(), n) for n in amounts)
            )

        results = asyncio.run(run())
        admitted = sum(r.required_amount for r in results if r.ok)
        assert admitted <= balance


# =============================================================================
# Construction
# =============================================================================


class TestBuildLedger:
    def test_memory_backend(self) -> None:
        assert isinstance(build_ledger("memory"), ReservationLedger)

    def test_unknown_backend_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown ledger backend"):
            build_ledger("redis")
