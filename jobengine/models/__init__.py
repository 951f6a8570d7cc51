"""ORM models for the account balance store."""

from jobengine.models.base import Base
from jobengine.models.billing import Account, TokenReservation, UsageRecord

__all__ = [
    "Base",
    "Account",
    "TokenReservation",
    "UsageRecord",
]
