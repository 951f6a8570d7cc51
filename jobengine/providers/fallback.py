"""Retry and fallback decisions as an explicit state machine.

The router drives a call through these states:

    Attempting(model, attempt) --success--> Succeeded
        |
        +--fatal error / budget spent--> Failed
        +--retryable, fallback left----> FallingOver --resume--> Attempting
        +--retryable, chain exhausted--> Backoff ------resume--> Attempting

All transitions are pure functions of (state, error, plan); the router
only performs the I/O (provider call, sleep) between them.
"""

from dataclasses import dataclass, field

from jobengine.providers.catalog import FALLBACK_CHAINS, ProcessingTier
from jobengine.providers.errors import RateLimitError, is_retryable

# =============================================================================
# Policy
# =============================================================================


@dataclass(frozen=True)
class FallbackPolicy:
    """Attempt budget and backoff parameters.

    Attributes:
        max_attempts: Provider attempts per call, fallbacks included.
        base_delay_ms: Backoff base.
        max_delay_ms: Backoff cap.
        enable_fallback: Whether substitute models may be tried.
        chains: Fallback chain per tier.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    enable_fallback: bool = True
    chains: dict[ProcessingTier, tuple[str, ...]] = field(
        default_factory=lambda: dict(FALLBACK_CHAINS)
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


@dataclass(frozen=True)
class CallPlan:
    """Call-local inputs to the transitions.

    Attributes:
        requested_model: Model the caller asked for.
        chain: Fallback chain of the requested model's tier.
        policy: Budget and backoff parameters.
    """

    requested_model: str
    chain: tuple[str, ...]
    policy: FallbackPolicy


# =============================================================================
# States
# =============================================================================


@dataclass(frozen=True)
class Attempting:
    """About to call ``model``; ``attempt`` is 1-based."""

    model: str
    attempt: int
    tried: frozenset[str]


@dataclass(frozen=True)
class Backoff:
    """Waiting ``delay_seconds`` before retrying the same model."""

    model: str
    attempt: int
    delay_seconds: float
    tried: frozenset[str]
    cause: Exception


@dataclass(frozen=True)
class FallingOver:
    """Switching immediately from ``from_model`` to ``next_model``."""

    from_model: str
    next_model: str
    attempt: int
    tried: frozenset[str]
    cause: Exception


@dataclass(frozen=True)
class Failed:
    """Terminal failure.

    ``exhausted`` is True when the attempt budget ran out on retryable
    errors, False when ``cause`` was fatal.
    """

    cause: Exception
    attempts: int
    exhausted: bool


@dataclass(frozen=True)
class Succeeded:
    """Terminal success."""

    result: object
    attempts: int


CallState = Attempting | Backoff | FallingOver | Failed | Succeeded


# =============================================================================
# Transitions
# =============================================================================


def backoff_delay(attempt: int, base_delay_ms: int, max_delay_ms: int) -> float:
    """Seconds to wait after failed ``attempt``: min(base * 2^attempt, cap)."""
    return min(base_delay_ms * (2**attempt), max_delay_ms) / 1000


def next_fallback_model(
    current: str, chain: tuple[str, ...], tried: frozenset[str]
) -> str | None:
    """Next untried chain model after ``current``.

    Scanning starts right after ``current`` if it is in the chain, else at
    the chain head. Never moves backward.
    """
    start_index = chain.index(current) + 1 if current in chain else 0
    for model in chain[start_index:]:
        if model not in tried:
            return model
    return None


def start(plan: CallPlan) -> Attempting:
    """Initial state of a call."""
    return Attempting(
        model=plan.requested_model,
        attempt=1,
        tried=frozenset({plan.requested_model}),
    )


def on_success(state: Attempting, result: object) -> Succeeded:
    return Succeeded(result=result, attempts=state.attempt)


def on_failure(
    state: Attempting, error: Exception, plan: CallPlan
) -> Backoff | FallingOver | Failed:
    """Decide what follows a failed attempt."""
    if not is_retryable(error):
        return Failed(cause=error, attempts=state.attempt, exhausted=False)
    if state.attempt >= plan.policy.max_attempts:
        return Failed(cause=error, attempts=state.attempt, exhausted=True)

    if plan.policy.enable_fallback:
        next_model = next_fallback_model(state.model, plan.chain, state.tried)
        if next_model is not None:
            return FallingOver(
                from_model=state.model,
                next_model=next_model,
                attempt=state.attempt + 1,
                tried=state.tried | {next_model},
                cause=error,
            )

    delay = backoff_delay(
        state.attempt, plan.policy.base_delay_ms, plan.policy.max_delay_ms
    )
    if isinstance(error, RateLimitError) and error.retry_after_seconds:
        delay = min(error.retry_after_seconds, plan.policy.max_delay_ms / 1000)
    return Backoff(
        model=state.model,
        attempt=state.attempt + 1,
        delay_seconds=delay,
        tried=state.tried,
        cause=error,
    )


def resume(state: Backoff | FallingOver) -> Attempting:
    """Leave a waiting state for the next attempt."""
    if isinstance(state, FallingOver):
        return Attempting(
            model=state.next_model, attempt=state.attempt, tried=state.tried
        )
    return Attempting(model=state.model, attempt=state.attempt, tried=state.tried)
