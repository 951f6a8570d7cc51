"""Repository for reservation ledger rows.

Database access for the accounts, token_reservations and usage_records
tables. The account row lock taken by ``lock_account`` is what makes the
ledger's read-compare-write atomic per account.
"""

import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.models.billing import Account, TokenReservation, UsageRecord


class ReservationRepository:
    """Stateless repository for reservation and balance operations.

    All methods are static, with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def lock_account(
        db: AsyncSession, account_id: uuid.UUID
    ) -> Account | None:
        """Read an account row with ``SELECT ... FOR UPDATE``.

        Concurrent transactions locking the same account wait here until
        the holder commits or rolls back. Other accounts are unaffected.

        Args:
            db: Async database session inside an open transaction.
            account_id: Account to lock.

        Returns:
            The locked Account, or None if it does not exist.
        """
        stmt = select(Account).where(Account.id == account_id).with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def sum_active_reserved(db: AsyncSession, account_id: uuid.UUID) -> int:
        """Total units held by the account's active reservations."""
        stmt = select(
            func.coalesce(func.sum(TokenReservation.reserved_amount), 0)
        ).where(
            TokenReservation.account_id == account_id,
            TokenReservation.status == "active",
        )
        result = await db.execute(stmt)
        return int(result.scalar_one())

    @staticmethod
    async def get_by_job(
        db: AsyncSession, job_id: uuid.UUID
    ) -> TokenReservation | None:
        """Fetch the reservation owned by a job, if any."""
        stmt = select(TokenReservation).where(TokenReservation.job_id == job_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_account_id_for_job(
        db: AsyncSession, job_id: uuid.UUID
    ) -> uuid.UUID | None:
        """Return the account a job's reservation belongs to."""
        stmt = select(TokenReservation.account_id).where(
            TokenReservation.job_id == job_id
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def upsert(
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        account_id: uuid.UUID,
        reserved_amount: int,
        status: str,
        created_at: datetime,
        committed_amount: int | None = None,
        resolved_at: datetime | None = None,
    ) -> TokenReservation:
        """Insert a reservation row or overwrite the job's existing one.

        Args:
            db: Async database session.
            job_id: Owning job (unique).
            account_id: Account the units are held against.
            reserved_amount: Units held.
            status: active, released or committed.
            created_at: When the hold was (re)taken.
            committed_amount: Units deducted on commit.
            resolved_at: When the hold was released or committed.

        Returns:
            The persisted TokenReservation.
        """
        row = await ReservationRepository.get_by_job(db, job_id)
        if row is None:
            row = TokenReservation(job_id=job_id, account_id=account_id)
            db.add(row)
        row.reserved_amount = reserved_amount
        row.status = status
        row.created_at = created_at
        row.committed_amount = committed_amount
        row.resolved_at = resolved_at
        await db.flush()
        return row

    @staticmethod
    async def set_balance(
        db: AsyncSession, account_id: uuid.UUID, balance_units: int
    ) -> None:
        """Overwrite an account's balance (caller holds the row lock)."""
        await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_units=balance_units)
        )

    @staticmethod
    async def add_usage(
        db: AsyncSession,
        *,
        account_id: uuid.UUID,
        job_id: uuid.UUID,
        units: int,
    ) -> UsageRecord:
        """Append a usage record.

        Returns:
            Created UsageRecord with database-generated fields.
        """
        record = UsageRecord(account_id=account_id, job_id=job_id, units=units)
        db.add(record)
        await db.flush()
        return record
