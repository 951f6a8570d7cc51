"""Reservation ledger: admission control for generation jobs.

Before a job starts, its estimated cost is held against the account:

    available = balance - sum(active reservations for the account)

The hold is admitted only if ``estimated_units <= available``. When the job
finishes, ``commit`` converts the hold into a usage deduction of the units
actually consumed; when it aborts, ``release`` drops the hold.

Insufficient balance is an expected outcome, returned as data so callers
can render an upgrade prompt. ``release`` and ``commit`` are idempotent:
calling either against a missing or already-resolved reservation is
logged and ignored.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from jobengine.core.errors import InvalidAmountError, ReservationConflictError
from jobengine.services.balance_store import (
    BalanceStore,
    InMemoryBalanceStore,
    Reservation,
    ReservationStatus,
    SqlBalanceStore,
)

logger = logging.getLogger(__name__)

UPGRADE_PATH = "/dashboard/subscription"
"""Where the UI sends users whose balance cannot cover a job."""


# =============================================================================
# Result Types
# =============================================================================


@dataclass(frozen=True)
class InsufficientBalance:
    """Typed condition for a rejected reservation.

    Attributes:
        available_balance: Units not yet held by other jobs.
        total_reserved: Units held by the account's active reservations.
        required_amount: Units the rejected job asked for.
    """

    available_balance: int
    total_reserved: int
    required_amount: int
    upgrade_path: str = UPGRADE_PATH

    @property
    def shortfall(self) -> int:
        """Units missing to admit the job."""
        return max(0, self.required_amount - self.available_balance)

    @property
    def message(self) -> str:
        """User-facing explanation with the precise shortfall."""
        return (
            f"Insufficient balance: {self.available_balance} units available "
            f"({self.total_reserved} reserved by running jobs), "
            f"{self.required_amount} required. Upgrade your plan to continue."
        )


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of ``ReservationLedger.reserve``.

    Attributes:
        ok: True if the hold was admitted.
        available_balance: Units still available after this call.
        total_reserved: Units held by the account's active reservations
            after this call.
        required_amount: Units requested.
        reservation: The active reservation when ok, else None.
        already_held: True if the job held this active reservation before
            the call (no new hold was taken).
    """

    ok: bool
    available_balance: int
    total_reserved: int
    required_amount: int
    reservation: Reservation | None = None
    already_held: bool = False

    @property
    def insufficient_balance(self) -> InsufficientBalance | None:
        """The rejection condition, or None when admitted."""
        if self.ok:
            return None
        return InsufficientBalance(
            available_balance=self.available_balance,
            total_reserved=self.total_reserved,
            required_amount=self.required_amount,
        )


def _validate_units(units: int, *, allow_zero: bool = False) -> None:
    if isinstance(units, bool) or not isinstance(units, int):
        raise InvalidAmountError(units)
    if units < 0 or (units == 0 and not allow_zero):
        raise InvalidAmountError(units)


# =============================================================================
# Ledger
# =============================================================================


class ReservationLedger:
    """Pre-commits estimated job cost against account balances.

    Args:
        store: Balance store providing per-account serialized sections.
    """

    def __init__(self, store: BalanceStore) -> None:
        self._store = store

    async def reserve(
        self,
        account_id: uuid.UUID,
        job_id: uuid.UUID,
        estimated_units: int,
    ) -> ReservationResult:
        """Hold ``estimated_units`` against the account for one job.

        Args:
            account_id: Account to charge.
            job_id: Job that will own the reservation.
            estimated_units: Positive estimate of billing units.

        Returns:
            ReservationResult; ``ok`` is False when the balance cannot
            cover the estimate.

        Raises:
            InvalidAmountError: If estimated_units is not a positive int.
            AccountNotFoundError: If the account does not exist.
            ReservationConflictError: If the job already committed usage.
        """
        _validate_units(estimated_units)

        async with self._store.account_transaction(account_id) as txn:
            balance = await txn.get_balance()
            total_reserved = await txn.sum_active_reserved()
            existing = await txn.get_reservation(job_id)

            if existing is not None and existing.is_active:
                logger.info(
                    "Job %s already holds %d units; returning existing reservation",
                    job_id,
                    existing.reserved_amount,
                )
                return ReservationResult(
                    ok=True,
                    available_balance=balance - total_reserved,
                    total_reserved=total_reserved,
                    required_amount=existing.reserved_amount,
                    reservation=existing,
                    already_held=True,
                )
            if existing is not None and existing.status is ReservationStatus.COMMITTED:
                raise ReservationConflictError(job_id)

            available = balance - total_reserved
            if estimated_units > available:
                logger.warning(
                    "Reservation rejected for account %s job %s: "
                    "available %d, reserved %d, required %d",
                    account_id,
                    job_id,
                    available,
                    total_reserved,
                    estimated_units,
                )
                return ReservationResult(
                    ok=False,
                    available_balance=available,
                    total_reserved=total_reserved,
                    required_amount=estimated_units,
                )

            reservation = Reservation(
                job_id=job_id,
                account_id=account_id,
                reserved_amount=estimated_units,
                status=ReservationStatus.ACTIVE,
                created_at=datetime.now(UTC),
            )
            await txn.save_reservation(reservation)

        logger.info(
            "Reserved %d units for job %s (account %s)",
            estimated_units,
            job_id,
            account_id,
        )
        return ReservationResult(
            ok=True,
            available_balance=available - estimated_units,
            total_reserved=total_reserved + estimated_units,
            required_amount=estimated_units,
            reservation=reservation,
        )

    async def release(self, job_id: uuid.UUID) -> bool:
        """Drop the job's hold without charging anything.

        Idempotent: a missing or already-resolved reservation is a no-op.

        Returns:
            True if an active reservation was released.
        """
        account_id = await self._store.find_account_for_job(job_id)
        if account_id is None:
            logger.info("No reservation for job %s; nothing to release", job_id)
            return False

        async with self._store.account_transaction(account_id) as txn:
            reservation = await txn.get_reservation(job_id)
            if reservation is None or not reservation.is_active:
                logger.info(
                    "Reservation for job %s already resolved; release ignored",
                    job_id,
                )
                return False
            await txn.save_reservation(
                replace(
                    reservation,
                    status=ReservationStatus.RELEASED,
                    resolved_at=datetime.now(UTC),
                )
            )

        logger.info(
            "Released %d units for job %s", reservation.reserved_amount, job_id
        )
        return True

    async def commit(self, job_id: uuid.UUID, actual_units: int) -> bool:
        """Convert the job's hold into a usage deduction of ``actual_units``.

        ``actual_units`` may differ from the estimate. The balance never
        goes below zero; a shortfall is logged for reconciliation.
        Idempotent like ``release``.

        Returns:
            True if an active reservation was committed.

        Raises:
            InvalidAmountError: If actual_units is negative or not an int.
        """
        _validate_units(actual_units, allow_zero=True)

        account_id = await self._store.find_account_for_job(job_id)
        if account_id is None:
            logger.info("No reservation for job %s; nothing to commit", job_id)
            return False

        async with self._store.account_transaction(account_id) as txn:
            reservation = await txn.get_reservation(job_id)
            if reservation is None or not reservation.is_active:
                logger.info(
                    "Reservation for job %s already resolved; commit ignored",
                    job_id,
                )
                return False

            balance = await txn.get_balance()
            if actual_units > balance:
                logger.warning(
                    "Usage for job %s exceeds balance of account %s "
                    "(usage %d, balance %d); flooring at zero",
                    job_id,
                    account_id,
                    actual_units,
                    balance,
                )
            await txn.set_balance(max(0, balance - actual_units))
            await txn.record_usage(job_id, actual_units)
            await txn.save_reservation(
                replace(
                    reservation,
                    status=ReservationStatus.COMMITTED,
                    committed_amount=actual_units,
                    resolved_at=datetime.now(UTC),
                )
            )

        logger.info(
            "Committed %d units for job %s (estimated %d)",
            actual_units,
            job_id,
            reservation.reserved_amount,
        )
        return True

    async def get_reservation(self, job_id: uuid.UUID) -> Reservation | None:
        """Look up the job's reservation in any state."""
        account_id = await self._store.find_account_for_job(job_id)
        if account_id is None:
            return None
        async with self._store.account_transaction(account_id) as txn:
            return await txn.get_reservation(job_id)

    async def available_balance(self, account_id: uuid.UUID) -> int:
        """Units the account could still reserve right now."""
        async with self._store.account_transaction(account_id) as txn:
            return await txn.get_balance() - await txn.sum_active_reserved()


def build_ledger(backend: str | None = None) -> ReservationLedger:
    """Create a ledger on the configured balance store.

    Args:
        backend: "memory" or "sql". Defaults to ``settings.ledger_backend``.

    Returns:
        ReservationLedger instance.

    Raises:
        ValueError: If the backend is unknown.
    """
    from jobengine.core.config import settings

    backend = backend or settings.ledger_backend
    if backend == "memory":
        return ReservationLedger(InMemoryBalanceStore())
    if backend == "sql":
        from jobengine.core.database import async_session_factory

        return ReservationLedger(SqlBalanceStore(async_session_factory))
    raise ValueError(f"Unknown ledger backend: {backend}")
