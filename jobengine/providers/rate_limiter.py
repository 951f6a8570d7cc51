"""Per-model admission control against external provider quotas.

Each model has independent minute and day windows. ``acquire`` admits a
request when its estimated tokens plus one request fit every configured
limit, and otherwise parks the caller in a FIFO queue. A single
``loop.call_later`` timer wakes the queue when the blocking window
reopens; there is no polling and no background reset task. Windows reset
lazily on access: once the clock passes a reset time the counters go to
zero and the reset time moves to now + window length.

All counter mutations happen synchronously on the event loop thread, so
they are atomic relative to each other without a lock.
"""

import asyncio
import contextlib
import logging
import re
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from jobengine.core.config import settings
from jobengine.providers.errors import QuotaExceededError

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0


@dataclass(frozen=True)
class RateLimitConfig:
    """Published quota of one model.

    Attributes:
        tokens_per_minute: Token quota per minute window.
        requests_per_minute: Request quota per minute window.
        tokens_per_day: Token quota per day window (None = unlimited).
    """

    tokens_per_minute: int
    requests_per_minute: int
    tokens_per_day: int | None = None


@dataclass(frozen=True)
class RateLimitState:
    """Point-in-time copy of a limiter's window counters."""

    tokens_used_this_minute: int
    requests_this_minute: int
    tokens_used_today: int
    minute_reset_time: float
    day_reset_time: float


MODEL_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "gpt-5": RateLimitConfig(2_000_000, 5000, 100_000_000),
    "gpt-5-2025-08-07": RateLimitConfig(2_000_000, 5000, 100_000_000),
    "gpt-5-mini": RateLimitConfig(4_000_000, 5000, 40_000_000),
    "gpt-4o": RateLimitConfig(800_000, 5000, 40_000_000),
    "gpt-4o-mini": RateLimitConfig(4_000_000, 5000, 40_000_000),
    "gpt-image-1-mini": RateLimitConfig(800_000, 50),
    "dall-e-3": RateLimitConfig(500_000, 5),
    "deepseek-chat": RateLimitConfig(600_000, 120),
    "deepseek-reasoner": RateLimitConfig(60_000, 60),
    "gemini-2.5-pro": RateLimitConfig(4_000_000, 1000),
    "gemini-2.5-flash": RateLimitConfig(4_000_000, 2000),
    "claude-sonnet-4.5": RateLimitConfig(400_000, 4000),
    "sonar-pro": RateLimitConfig(500_000, 50),
    "sonar-reasoning": RateLimitConfig(500_000, 50),
}


def default_rate_limit() -> RateLimitConfig:
    """Conservative quota for models without a published entry."""
    return RateLimitConfig(
        tokens_per_minute=settings.default_tokens_per_minute,
        requests_per_minute=settings.default_requests_per_minute,
    )


_VENDOR_PREFIX = re.compile(r"^(openai|google|anthropic)/")


def normalize_model_name(model: str) -> str:
    """Strip the vendor path prefix: "openai/gpt-4o" -> "gpt-4o"."""
    return _VENDOR_PREFIX.sub("", model)


@dataclass
class _Waiter:
    future: asyncio.Future
    tokens: int
    # Windows the tokens were counted in, set on admission
    minute_window: float | None = None
    day_window: float | None = None


class ModelRateLimiter:
    """Quota windows and wait queue for one model.

    Args:
        model: Normalized model name (for logging).
        config: Quota to enforce.
        clock: Monotonic clock in seconds.
        minute_seconds: Length of the short window.
        day_seconds: Length of the long window.
    """

    def __init__(
        self,
        model: str,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        minute_seconds: float = MINUTE_SECONDS,
        day_seconds: float = DAY_SECONDS,
    ) -> None:
        self.model = model
        self.config = config
        self._clock = clock
        self._minute_seconds = minute_seconds
        self._day_seconds = day_seconds

        now = clock()
        self._tokens_this_minute = 0
        self._requests_this_minute = 0
        self._tokens_today = 0
        self._minute_reset_time = now + minute_seconds
        self._day_reset_time = now + day_seconds

        self._waiters: deque[_Waiter] = deque()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> int:
        """Number of callers waiting in the queue."""
        return len(self._waiters)

    def _reset_if_needed(self, now: float) -> None:
        if now >= self._minute_reset_time:
            self._tokens_this_minute = 0
            self._requests_this_minute = 0
            self._minute_reset_time = now + self._minute_seconds
        if now >= self._day_reset_time:
            self._tokens_today = 0
            self._day_reset_time = now + self._day_seconds

    def _wait_seconds(self, tokens: int, now: float) -> float | None:
        """None if ``tokens`` fit now, else seconds until the blocking window reopens."""
        cfg = self.config
        over_day = (
            cfg.tokens_per_day is not None
            and self._tokens_today + tokens > cfg.tokens_per_day
        )
        over_minute = (
            self._tokens_this_minute + tokens > cfg.tokens_per_minute
            or self._requests_this_minute + 1 > cfg.requests_per_minute
        )
        if over_day:
            return max(self._day_reset_time - now, 0.0)
        if over_minute:
            return max(self._minute_reset_time - now, 0.0)
        return None

    def _admit(self, tokens: int) -> None:
        self._tokens_this_minute += tokens
        self._tokens_today += tokens
        self._requests_this_minute += 1

    def _refund(self, waiter: _Waiter) -> None:
        """Undo an admission, only in windows that have not rolled over since."""
        self._reset_if_needed(self._clock())
        if waiter.minute_window == self._minute_reset_time:
            self._tokens_this_minute = max(0, self._tokens_this_minute - waiter.tokens)
            self._requests_this_minute = max(0, self._requests_this_minute - 1)
        if waiter.day_window == self._day_reset_time:
            self._tokens_today = max(0, self._tokens_today - waiter.tokens)

    def _check_quota(self, tokens: int) -> None:
        if tokens < 0:
            raise ValueError(f"estimated_tokens must be non-negative, got {tokens}")
        if tokens > self.config.tokens_per_minute:
            raise QuotaExceededError(
                self.model, tokens, self.config.tokens_per_minute, "minute"
            )
        day_limit = self.config.tokens_per_day
        if day_limit is not None and tokens > day_limit:
            raise QuotaExceededError(self.model, tokens, day_limit, "day")

    def _schedule(self, delay: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._process_queue)

    def _process_queue(self) -> None:
        """Admit waiters from the head while they fit; re-arm the timer otherwise."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        while self._waiters:
            head = self._waiters[0]
            if head.future.done():
                self._waiters.popleft()
                continue
            now = self._clock()
            self._reset_if_needed(now)
            wait = self._wait_seconds(head.tokens, now)
            if wait is not None:
                self._schedule(wait)
                return
            self._waiters.popleft()
            self._admit(head.tokens)
            head.minute_window = self._minute_reset_time
            head.day_window = self._day_reset_time
            head.future.set_result(None)

    async def acquire(self, estimated_tokens: int) -> None:
        """Wait until ``estimated_tokens`` plus one request fit, then count them.

        Raises:
            QuotaExceededError: If the request can never fit a window.
            ValueError: If estimated_tokens is negative.
        """
        self._check_quota(estimated_tokens)

        now = self._clock()
        self._reset_if_needed(now)
        wait = self._wait_seconds(estimated_tokens, now)
        if not self._waiters and wait is None:
            self._admit(estimated_tokens)
            return

        logger.info(
            "Rate limit reached for %s, waiting (%d/%d TPM, %d/%d RPM, %d queued)",
            self.model,
            self._tokens_this_minute,
            self.config.tokens_per_minute,
            self._requests_this_minute,
            self.config.requests_per_minute,
            len(self._waiters),
        )
        waiter = _Waiter(asyncio.get_running_loop().create_future(), estimated_tokens)
        self._waiters.append(waiter)
        if self._timer is None:
            self._schedule(wait if wait is not None else 0.0)

        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Admitted, but the caller is gone before making the call.
                self._refund(waiter)
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            self._process_queue()
            raise

    def report_usage(self, actual_tokens: int, estimated_tokens: int = 0) -> None:
        """Add the positive difference between actual and estimated tokens.

        Over-estimates are not refunded within the window.
        """
        self._reset_if_needed(self._clock())
        difference = actual_tokens - estimated_tokens
        if difference > 0:
            self._tokens_this_minute += difference
            self._tokens_today += difference

    def snapshot(self) -> RateLimitState:
        """Current counters after applying any due window reset."""
        self._reset_if_needed(self._clock())
        return RateLimitState(
            tokens_used_this_minute=self._tokens_this_minute,
            requests_this_minute=self._requests_this_minute,
            tokens_used_today=self._tokens_today,
            minute_reset_time=self._minute_reset_time,
            day_reset_time=self._day_reset_time,
        )

    def usage_percentage(self) -> dict[str, int | None]:
        """Rounded usage of each quota in percent."""
        state = self.snapshot()
        cfg = self.config
        return {
            "tokens_per_minute": round(
                state.tokens_used_this_minute / cfg.tokens_per_minute * 100
            ),
            "requests_per_minute": round(
                state.requests_this_minute / cfg.requests_per_minute * 100
            ),
            "tokens_per_day": (
                round(state.tokens_used_today / cfg.tokens_per_day * 100)
                if cfg.tokens_per_day
                else None
            ),
        }

    def close(self) -> None:
        """Cancel the wake-up timer and fail all waiters with CancelledError."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.future.done():
                waiter.future.cancel()


class RateLimiterRegistry:
    """Explicitly owned map of model name -> limiter.

    Created by the application's composition root and injected into the
    router, so every test can build an isolated registry.

    Args:
        limits: Quota table keyed by normalized model name.
        default: Quota for models missing from ``limits``;
            read from settings when None.
        clock: Monotonic clock shared by all limiters.
        minute_seconds: Short window length.
        day_seconds: Long window length.
    """

    def __init__(
        self,
        limits: dict[str, RateLimitConfig] | None = None,
        default: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        minute_seconds: float = MINUTE_SECONDS,
        day_seconds: float = DAY_SECONDS,
    ) -> None:
        self._limits = dict(MODEL_RATE_LIMITS if limits is None else limits)
        self._default = default or default_rate_limit()
        self._clock = clock
        self._minute_seconds = minute_seconds
        self._day_seconds = day_seconds
        self._limiters: dict[str, ModelRateLimiter] = {}

    def get(self, model: str) -> ModelRateLimiter:
        """Limiter for a model, created on first use."""
        name = normalize_model_name(model)
        limiter = self._limiters.get(name)
        if limiter is None:
            config = self._limits.get(name)
            if config is None:
                logger.warning(
                    "No rate limit config for model %s, using default", name
                )
                config = self._default
            limiter = ModelRateLimiter(
                name,
                config,
                clock=self._clock,
                minute_seconds=self._minute_seconds,
                day_seconds=self._day_seconds,
            )
            self._limiters[name] = limiter
        return limiter

    async def acquire(self, model: str, estimated_tokens: int) -> None:
        await self.get(model).acquire(estimated_tokens)

    def report_usage(
        self, model: str, actual_tokens: int, estimated_tokens: int = 0
    ) -> None:
        self.get(model).report_usage(actual_tokens, estimated_tokens)

    def reset(self) -> None:
        """Drop all limiters, cancelling any queued callers."""
        for limiter in self._limiters.values():
            limiter.close()
        self._limiters.clear()
