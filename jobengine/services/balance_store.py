"""Account balance stores backing the reservation ledger.

A store exposes one operation that matters for correctness:
``account_transaction(account_id)``, an async context manager inside
which reads and writes for that account happen as one serialized unit.
Two transactions on the same account never interleave; transactions on
different accounts never wait on each other.

Implementations:
    InMemoryBalanceStore: per-account ``asyncio.Lock``; single process.
    SqlBalanceStore: ``SELECT ... FOR UPDATE`` on the account row.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.core.errors import AccountNotFoundError
from jobengine.models.billing import TokenReservation
from jobengine.repositories.reservation_repository import ReservationRepository


class ReservationStatus(str, Enum):
    """Lifecycle states of a reservation."""

    ACTIVE = "active"
    RELEASED = "released"
    COMMITTED = "committed"


@dataclass(frozen=True)
class Reservation:
    """Provisional hold of billing units for one job.

    Attributes:
        job_id: Owning job.
        account_id: Account the units are held against.
        reserved_amount: Units held while active.
        status: Current lifecycle state.
        created_at: When the hold was taken.
        resolved_at: When it was released or committed.
        committed_amount: Units actually deducted on commit.
    """

    job_id: uuid.UUID
    account_id: uuid.UUID
    reserved_amount: int
    status: ReservationStatus
    created_at: datetime
    resolved_at: datetime | None = None
    committed_amount: int | None = None

    @property
    def is_active(self) -> bool:
        """True while the hold still counts against the balance."""
        return self.status is ReservationStatus.ACTIVE


class AccountTransaction(ABC):
    """Reads and writes for one account inside a serialized section."""

    @abstractmethod
    async def get_balance(self) -> int:
        """Current balance (committed usage already deducted)."""
        ...

    @abstractmethod
    async def sum_active_reserved(self) -> int:
        """Units held by this account's active reservations."""
        ...

    @abstractmethod
    async def get_reservation(self, job_id: uuid.UUID) -> Reservation | None:
        """The reservation owned by ``job_id``, if any."""
        ...

    @abstractmethod
    async def save_reservation(self, reservation: Reservation) -> None:
        """Insert or overwrite the job's reservation."""
        ...

    @abstractmethod
    async def set_balance(self, balance: int) -> None:
        """Overwrite the account balance."""
        ...

    @abstractmethod
    async def record_usage(self, job_id: uuid.UUID, units: int) -> None:
        """Append an immutable usage record."""
        ...


class BalanceStore(ABC):
    """Persistence contract required by the reservation ledger."""

    @abstractmethod
    def account_transaction(
        self, account_id: uuid.UUID
    ) -> AbstractAsyncContextManager[AccountTransaction]:
        """Open a serialized read-compare-write section for one account.

        Raises:
            AccountNotFoundError: If the account does not exist.
        """
        ...

    @abstractmethod
    async def find_account_for_job(self, job_id: uuid.UUID) -> uuid.UUID | None:
        """Account of the job's reservation, or None if it never reserved."""
        ...


# =============================================================================
# In-memory store
# =============================================================================


@dataclass(frozen=True)
class UsageEntry:
    """Committed usage kept by the in-memory store."""

    account_id: uuid.UUID
    job_id: uuid.UUID
    units: int


class _InMemoryTransaction(AccountTransaction):
    def __init__(self, store: "InMemoryBalanceStore", account_id: uuid.UUID) -> None:
        self._store = store
        self._account_id = account_id

    async def get_balance(self) -> int:
        return self._store._balances[self._account_id]

    async def sum_active_reserved(self) -> int:
        return sum(
            r.reserved_amount
            for r in self._store._reservations.values()
            if r.account_id == self._account_id and r.is_active
        )

    async def get_reservation(self, job_id: uuid.UUID) -> Reservation | None:
        return self._store._reservations.get(job_id)

    async def save_reservation(self, reservation: Reservation) -> None:
        self._store._reservations[reservation.job_id] = reservation

    async def set_balance(self, balance: int) -> None:
        self._store._balances[self._account_id] = balance

    async def record_usage(self, job_id: uuid.UUID, units: int) -> None:
        self._store.usage.append(UsageEntry(self._account_id, job_id, units))


class InMemoryBalanceStore(BalanceStore):
    """Process-local balance store.

    One ``asyncio.Lock`` per account serializes that account's critical
    sections. Suitable for a single-process deployment and for tests; a
    multi-process deployment needs ``SqlBalanceStore``.

    Args:
        balances: Optional initial balances keyed by account id.
    """

    def __init__(self, balances: dict[uuid.UUID, int] | None = None) -> None:
        self._balances: dict[uuid.UUID, int] = dict(balances) if balances else {}
        self._reservations: dict[uuid.UUID, Reservation] = {}
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self.usage: list[UsageEntry] = []

    def set_balance(self, account_id: uuid.UUID, units: int) -> None:
        """Create or top up an account outside any job flow."""
        self._balances[account_id] = units

    def balance_of(self, account_id: uuid.UUID) -> int:
        """Current balance of an account (test/inspection helper)."""
        return self._balances[account_id]

    @asynccontextmanager
    async def account_transaction(
        self, account_id: uuid.UUID
    ) -> AsyncIterator[AccountTransaction]:
        if account_id not in self._balances:
            raise AccountNotFoundError(account_id)
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            yield _InMemoryTransaction(self, account_id)

    async def find_account_for_job(self, job_id: uuid.UUID) -> uuid.UUID | None:
        reservation = self._reservations.get(job_id)
        return reservation.account_id if reservation is not None else None


# =============================================================================
# SQL store
# =============================================================================


def _to_reservation(row: TokenReservation) -> Reservation:
    return Reservation(
        job_id=row.job_id,
        account_id=row.account_id,
        reserved_amount=row.reserved_amount,
        status=ReservationStatus(row.status),
        created_at=row.created_at,
        resolved_at=row.resolved_at,
        committed_amount=row.committed_amount,
    )


class _SqlTransaction(AccountTransaction):
    def __init__(
        self, db: AsyncSession, account_id: uuid.UUID, balance: int
    ) -> None:
        self._db = db
        self._account_id = account_id
        self._balance = balance

    async def get_balance(self) -> int:
        return self._balance

    async def sum_active_reserved(self) -> int:
        return await ReservationRepository.sum_active_reserved(
            self._db, self._account_id
        )

    async def get_reservation(self, job_id: uuid.UUID) -> Reservation | None:
        row = await ReservationRepository.get_by_job(self._db, job_id)
        return _to_reservation(row) if row is not None else None

    async def save_reservation(self, reservation: Reservation) -> None:
        await ReservationRepository.upsert(
            self._db,
            job_id=reservation.job_id,
            account_id=reservation.account_id,
            reserved_amount=reservation.reserved_amount,
            status=reservation.status.value,
            created_at=reservation.created_at,
            committed_amount=reservation.committed_amount,
            resolved_at=reservation.resolved_at,
        )

    async def set_balance(self, balance: int) -> None:
        await ReservationRepository.set_balance(self._db, self._account_id, balance)
        self._balance = balance

    async def record_usage(self, job_id: uuid.UUID, units: int) -> None:
        await ReservationRepository.add_usage(
            self._db, account_id=self._account_id, job_id=job_id, units=units
        )


class SqlBalanceStore(BalanceStore):
    """Balance store on PostgreSQL.

    Each account transaction runs in its own session and database
    transaction, holding the account row lock until commit.

    Args:
        session_factory: Async session factory for DB access.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def account_transaction(
        self, account_id: uuid.UUID
    ) -> AsyncIterator[AccountTransaction]:
        async with self._session_factory() as db, db.begin():
            account = await ReservationRepository.lock_account(db, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            yield _SqlTransaction(db, account_id, account.balance_units)

    async def find_account_for_job(self, job_id: uuid.UUID) -> uuid.UUID | None:
        async with self._session_factory() as db:
            return await ReservationRepository.get_account_id_for_job(db, job_id)
