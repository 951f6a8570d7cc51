"""Billing ORM models for the reservation ledger.

Account holds the spendable balance in integer billing units.
TokenReservation is the provisional hold a job takes before it starts
(one row per job). UsageRecord is append-only: committed usage is never
updated or deleted.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from jobengine.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")


class Account(Base, TimestampMixin):
    """A billable account.

    Attributes:
        id: UUID primary key.
        balance_units: Remaining balance in billing units. Committed usage
            is already deducted; active reservations are not.
        created_at: When the account was created.
        updated_at: Last balance change.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance_units >= 0", name="ck_accounts_balance_nonneg"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    balance_units: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )


class TokenReservation(Base):
    """Provisional hold of billing units for one job.

    Attributes:
        id: UUID primary key.
        job_id: Owning job. Unique, so a job holds at most one reservation.
        account_id: FK to accounts.
        reserved_amount: Units held while the reservation is active.
        status: One of active, released, committed.
        committed_amount: Actual units deducted on commit (None otherwise).
        created_at: When the hold was taken.
        resolved_at: When the hold was released or committed.
    """

    __tablename__ = "token_reservations"
    __table_args__ = (
        CheckConstraint(
            "reserved_amount > 0", name="ck_reservations_amount_positive"
        ),
        CheckConstraint(
            "status IN ('active', 'released', 'committed')",
            name="ck_reservations_status_valid",
        ),
        Index("ix_token_reservations_account_status", "account_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    reserved_amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
    )
    committed_amount: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class UsageRecord(Base):
    """Immutable record of units a finished job actually consumed.

    Attributes:
        id: UUID primary key.
        account_id: FK to accounts.
        job_id: Job whose reservation was committed.
        units: Units deducted from the balance.
        created_at: When the usage was committed.
    """

    __tablename__ = "usage_records"
    __table_args__ = (
        CheckConstraint("units >= 0", name="ck_usage_units_nonneg"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    units: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
