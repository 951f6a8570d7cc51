"""Tests for per-model rate limiting.

Windows are shortened to fractions of a second so queueing behavior can
be exercised on the real event loop; counter arithmetic uses a manual
clock.
"""

import asyncio

import pytest

from jobengine.core.config import settings
from jobengine.providers.errors import QuotaExceededError
from jobengine.providers.rate_limiter import (
    MODEL_RATE_LIMITS,
    ModelRateLimiter,
    RateLimitConfig,
    RateLimiterRegistry,
    normalize_model_name,
)

_WINDOW = 0.2


class ManualClock:
    """Clock advanced explicitly by the test."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _limiter(
    tpm: int = 1000, rpm: int = 60, tpd: int | None = None, **kwargs
) -> ModelRateLimiter:
    kwargs.setdefault("minute_seconds", _WINDOW)
    kwargs.setdefault("day_seconds", 100.0)
    return ModelRateLimiter("x", RateLimitConfig(tpm, rpm, tpd), **kwargs)


# =============================================================================
# Window accounting
# =============================================================================


class TestWindowAccounting:
    async def test_acquire_counts_tokens_and_request(self) -> None:
        limiter = _limiter(clock=ManualClock())
        await limiter.acquire(400)

        state = limiter.snapshot()
        assert state.tokens_used_this_minute == 400
        assert state.requests_this_minute == 1
        assert state.tokens_used_today == 400

    async def test_minute_window_resets_lazily(self) -> None:
        clock = ManualClock()
        limiter = _limiter(clock=clock, minute_seconds=60.0)
        await limiter.acquire(400)

        clock.now = 61.0
        state = limiter.snapshot()

        assert state.tokens_used_this_minute == 0
        assert state.requests_this_minute == 0
        assert state.tokens_used_today == 400
        assert state.minute_reset_time == pytest.approx(121.0)

    async def test_window_resets_once_per_elapsed_window(self) -> None:
        clock = ManualClock()
        limiter = _limiter(clock=clock, minute_seconds=60.0)
        clock.now = 61.0
        limiter.snapshot()
        await limiter.acquire(100)

        clock.now = 90.0
        assert limiter.snapshot().tokens_used_this_minute == 100

    async def test_day_window_resets(self) -> None:
        clock = ManualClock()
        limiter = _limiter(
            tpd=5000, clock=clock, minute_seconds=60.0, day_seconds=86_400.0
        )
        await limiter.acquire(400)

        clock.now = 86_401.0
        assert limiter.snapshot().tokens_used_today == 0

    async def test_usage_percentage(self) -> None:
        limiter = _limiter(tpm=1000, rpm=10, tpd=10_000, clock=ManualClock())
        await limiter.acquire(250)

        assert limiter.usage_percentage() == {
            "tokens_per_minute": 25,
            "requests_per_minute": 10,
            "tokens_per_day": 2,
        }

    async def test_usage_percentage_without_day_quota(self) -> None:
        limiter = _limiter(clock=ManualClock())
        assert limiter.usage_percentage()["tokens_per_day"] is None


class TestReportUsage:
    async def test_adds_underestimate(self) -> None:
        limiter = _limiter(clock=ManualClock())
        await limiter.acquire(400)
        limiter.report_usage(550, 400)
        assert limiter.snapshot().tokens_used_this_minute == 550
        assert limiter.snapshot().tokens_used_today == 550

    async def test_overestimate_is_not_refunded(self) -> None:
        limiter = _limiter(clock=ManualClock())
        await limiter.acquire(400)
        limiter.report_usage(100, 400)
        assert limiter.snapshot().tokens_used_this_minute == 400

    async def test_report_without_estimate_adds_actual(self) -> None:
        limiter = _limiter(clock=ManualClock())
        limiter.report_usage(300)
        assert limiter.snapshot().tokens_used_this_minute == 300


class TestQuotaChecks:
    async def test_request_larger_than_minute_quota_raises(self) -> None:
        limiter = _limiter(tpm=1000)
        with pytest.raises(QuotaExceededError) as exc_info:
            await limiter.acquire(1001)
        assert exc_info.value.window == "minute"
        assert exc_info.value.limit == 1000

    async def test_request_larger_than_day_quota_raises(self) -> None:
        limiter = _limiter(tpm=10_000, tpd=5000)
        with pytest.raises(QuotaExceededError) as exc_info:
            await limiter.acquire(6000)
        assert exc_info.value.window == "day"

    async def test_negative_estimate_raises(self) -> None:
        limiter = _limiter()
        with pytest.raises(ValueError):
            await limiter.acquire(-1)


# =============================================================================
# Waiting
# =============================================================================


class TestWaiting:
    async def test_third_request_waits_for_window_reset(self) -> None:
        """tpm=1000: two 400-token requests pass, the third waits for reset."""
        limiter = _limiter(tpm=1000)

        await limiter.acquire(400)
        await limiter.acquire(400)
        assert limiter.snapshot().tokens_used_this_minute == 800

        third = asyncio.create_task(limiter.acquire(400))
        await asyncio.sleep(0.05)
        assert not third.done()
        assert limiter.pending == 1

        await asyncio.wait_for(third, timeout=2)
        state = limiter.snapshot()
        assert state.tokens_used_this_minute == 400
        assert state.tokens_used_this_minute <= 1000
        assert limiter.pending == 0

    async def test_request_quota_blocks(self) -> None:
        limiter = _limiter(tpm=10_000, rpm=2)
        await limiter.acquire(1)
        await limiter.acquire(1)

        blocked = asyncio.create_task(limiter.acquire(1))
        await asyncio.sleep(0.05)
        assert not blocked.done()

        await asyncio.wait_for(blocked, timeout=2)
        assert limiter.snapshot().requests_this_minute == 1

    async def test_waiters_are_released_in_fifo_order(self) -> None:
        limiter = _limiter(tpm=1000)
        await limiter.acquire(900)
        order: list[str] = []

        async def request(name: str, tokens: int) -> None:
            await limiter.acquire(tokens)
            order.append(name)

        first = asyncio.create_task(request("first", 500))
        await asyncio.sleep(0)
        # Would fit the current window, but must queue behind "first".
        second = asyncio.create_task(request("second", 50))
        await asyncio.sleep(0.05)
        assert order == []

        await asyncio.wait_for(asyncio.gather(first, second), timeout=2)
        assert order == ["first", "second"]

    async def test_cancelled_waiter_leaves_queue(self) -> None:
        limiter = _limiter(tpm=1000)
        await limiter.acquire(1000)

        cancelled = asyncio.create_task(limiter.acquire(600))
        survivor = asyncio.create_task(limiter.acquire(600))
        await asyncio.sleep(0)
        assert limiter.pending == 2

        cancelled.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cancelled
        assert limiter.pending == 1

        await asyncio.wait_for(survivor, timeout=2)
        assert limiter.snapshot().tokens_used_this_minute == 600

    async def test_invariant_holds_after_every_acquire(self) -> None:
        limiter = _limiter(tpm=1000, rpm=3)
        observed: list[tuple[int, int]] = []

        async def request() -> None:
            await limiter.acquire(300)
            state = limiter.snapshot()
            observed.append(
                (state.tokens_used_this_minute, state.requests_this_minute)
            )

        await asyncio.wait_for(
            asyncio.gather(*(request() for _ in range(7))), timeout=5
        )

        assert len(observed) == 7
        assert all(tokens <= 1000 and requests <= 3 for tokens, requests in observed)

    async def test_close_cancels_waiters(self) -> None:
        limiter = _limiter(tpm=1000, minute_seconds=60.0)
        await limiter.acquire(1000)
        waiter = asyncio.create_task(limiter.acquire(10))
        await asyncio.sleep(0)

        limiter.close()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert limiter.pending == 0

    async def test_cancel_after_admission_refunds_quota(self) -> None:
        clock = ManualClock()
        limiter = _limiter(tpm=1000, clock=clock, minute_seconds=60.0)
        await limiter.acquire(900)
        waiter = asyncio.create_task(limiter.acquire(500))
        await asyncio.sleep(0)
        assert limiter.pending == 1

        # Window reopens and admits the waiter before its task resumes
        clock.now = 61.0
        limiter._process_queue()
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        state = limiter.snapshot()
        assert state.tokens_used_this_minute == 0
        assert state.requests_this_minute == 0
        assert state.tokens_used_today == 900


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    def test_vendor_prefix_is_normalized(self) -> None:
        assert normalize_model_name("openai/gpt-4o") == "gpt-4o"
        assert normalize_model_name("google/gemini-2.5-pro") == "gemini-2.5-pro"
        assert normalize_model_name("deepseek-chat") == "deepseek-chat"

    def test_prefixed_and_bare_names_share_a_limiter(self) -> None:
        registry = RateLimiterRegistry()
        assert registry.get("openai/gpt-4o") is registry.get("gpt-4o")

    def test_published_quota_is_used(self) -> None:
        registry = RateLimiterRegistry()
        expected = MODEL_RATE_LIMITS["deepseek-reasoner"]
        assert registry.get("deepseek-reasoner").config == expected

    def test_unconfigured_model_gets_default(self) -> None:
        registry = RateLimiterRegistry()
        config = registry.get("mistral/some-model").config
        assert config.tokens_per_minute == settings.default_tokens_per_minute
        assert config.requests_per_minute == settings.default_requests_per_minute
        assert config.tokens_per_day is None

    def test_default_quota_follows_settings(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "default_tokens_per_minute", 5000)
        monkeypatch.setattr(settings, "default_requests_per_minute", 7)

        config = RateLimiterRegistry().get("mistral/some-model").config

        assert config == RateLimitConfig(5000, 7)

    def test_explicit_default_overrides_settings(self) -> None:
        registry = RateLimiterRegistry(default=RateLimitConfig(10, 1))
        assert registry.get("mistral/some-model").config == RateLimitConfig(10, 1)

    def test_registries_are_isolated(self) -> None:
        a, b = RateLimiterRegistry(), RateLimiterRegistry()
        a.report_usage("deepseek-chat", 500)
        assert b.get("deepseek-chat").snapshot().tokens_used_this_minute == 0

    async def test_acquire_and_report_go_to_the_model_limiter(self) -> None:
        registry = RateLimiterRegistry({"x": RateLimitConfig(1000, 10)})
        await registry.acquire("x", 300)
        registry.report_usage("x", 400, 300)
        assert registry.get("x").snapshot().tokens_used_this_minute == 400

    async def test_reset_drops_limiters(self) -> None:
        registry = RateLimiterRegistry()
        limiter = registry.get("deepseek-chat")
        registry.reset()
        assert registry.get("deepseek-chat") is not limiter
