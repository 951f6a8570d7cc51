"""Engine error classes.

Faults raised by the ledger and job runner. Expected business outcomes
(insufficient balance, failed quality checks) are returned as data and
never appear here.
"""

import uuid


class EngineError(Exception):
    """Base class for engine errors.

    Attributes:
        code: Machine-readable error code (e.g., "ACCOUNT_NOT_FOUND").
        message: Human-readable error message.
        details: Optional list of additional error details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidAmountError(EngineError):
    """Reservation or usage amount is not a positive integer."""

    def __init__(self, amount: object) -> None:
        super().__init__(
            code="INVALID_AMOUNT",
            message=f"Amount must be a positive integer, got {amount!r}",
        )


class AccountNotFoundError(EngineError):
    """The balance store has no account with this id.

    Args:
        account_id: Account that was looked up.
    """

    def __init__(self, account_id: uuid.UUID) -> None:
        super().__init__(
            code="ACCOUNT_NOT_FOUND",
            message=f"Account '{account_id}' not found",
        )


class ReservationConflictError(EngineError):
    """A job tried to reserve again after its usage was already committed.

    Args:
        job_id: Job whose reservation is already committed.
    """

    def __init__(self, job_id: uuid.UUID) -> None:
        super().__init__(
            code="RESERVATION_CONFLICT",
            message=f"Job '{job_id}' already committed its usage and cannot reserve again",
        )


class JobAlreadyActiveError(EngineError):
    """A job id was submitted while a run for it is still in flight.

    Args:
        job_id: Job that is already submitted or running.
    """

    def __init__(self, job_id: uuid.UUID) -> None:
        super().__init__(
            code="JOB_ALREADY_ACTIVE",
            message=f"Job '{job_id}' is already submitted or running",
        )


class JobNotFoundError(EngineError):
    """The job runner has no job with this id."""

    def __init__(self, job_id: uuid.UUID) -> None:
        super().__init__(
            code="JOB_NOT_FOUND",
            message=f"Job '{job_id}' not found",
        )
