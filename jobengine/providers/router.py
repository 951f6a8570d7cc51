"""Provider router: one entry point for every generation call.

The router resolves a logical model name to a backend through the
catalog, waits on the model's rate limiter before every attempt, bounds
each attempt with a timeout, and drives the fallback state machine on
failure. Callers get a normalized ``CompletionResult`` no matter which
backend served the call.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import NoReturn

import structlog

from jobengine.providers import fallback
from jobengine.providers.base import (
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    GeneratedImage,
    ImageBackend,
    ImageRequest,
    ResponseFormat,
    TextBackend,
)
from jobengine.providers.catalog import BackendProvider, resolve_route
from jobengine.providers.errors import (
    GenerationFailedError,
    ProviderError,
    ProviderNotConfiguredError,
    TransientError,
)
from jobengine.providers.rate_limiter import RateLimiterRegistry

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096
IMAGE_TOKENS_PER_REQUEST = 1000


class ProviderRouter:
    """Routes completions and image generations to the right backend.

    Args:
        backends: Text backends keyed by provider.
        rate_limiters: Registry consulted before every attempt.
        policy: Attempt budget, backoff and fallback chains.
        image_backend: Backend for image models (None = images disabled).
        timeout_seconds: Upper bound for one attempt.
        default_temperature: Temperature when a call does not pass one.
        default_max_tokens: Output token cap when a call does not pass one.
        sleep: Awaitable sleep used for backoff (injectable for tests).
    """

    def __init__(
        self,
        backends: dict[BackendProvider, TextBackend],
        rate_limiters: RateLimiterRegistry,
        policy: fallback.FallbackPolicy | None = None,
        image_backend: ImageBackend | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        default_temperature: float = DEFAULT_TEMPERATURE,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backends = dict(backends)
        self.rate_limiters = rate_limiters
        self.policy = policy or fallback.FallbackPolicy()
        self.image_backend = image_backend
        self.timeout_seconds = timeout_seconds
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens
        self._sleep = sleep

    def _plan(self, request: CompletionRequest) -> fallback.CallPlan:
        # Substitutes whose backend is not wired up are left out of the chain.
        chain = tuple(
            model
            for model in self.policy.chains.get(request.tier, ())
            if model == request.model
            or resolve_route(model).provider in self.backends
        )
        return fallback.CallPlan(
            requested_model=request.model, chain=chain, policy=self.policy
        )

    async def _attempt(self, request: CompletionRequest) -> CompletionResult:
        backend = self.backends.get(request.provider)
        if backend is None:
            raise ProviderNotConfiguredError(
                f"No backend configured for provider {request.provider.value} "
                f"(model {request.model})"
            )

        estimated = request.estimated_tokens()
        await self.rate_limiters.acquire(request.model, estimated)
        try:
            result = await asyncio.wait_for(
                backend.complete(request), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            raise TransientError(
                f"{request.model} timed out after {self.timeout_seconds}s"
            ) from e
        self.rate_limiters.report_usage(
            request.model, result.usage.total_tokens, estimated
        )
        return result

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage] | str,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> CompletionResult:
        """Generate a completion with fallback and backoff.

        Args:
            model: Logical model name.
            messages: Chat messages, or a plain prompt sent as one user message.
            temperature: Sampling temperature (router default when None).
            max_tokens: Max output tokens (router default when None).
            response_format: TEXT or JSON.

        Returns:
            CompletionResult from whichever model finally served the call.

        Raises:
            GenerationFailedError: Attempt budget exhausted on retryable errors.
            ProviderError: A fatal backend error, propagated unchanged.
        """
        if isinstance(messages, str):
            messages = [ChatMessage(role="user", content=messages)]
        request = CompletionRequest(
            model=model,
            messages=tuple(messages),
            temperature=(
                self.default_temperature if temperature is None else temperature
            ),
            max_tokens=self.default_max_tokens if max_tokens is None else max_tokens,
            response_format=response_format,
        )
        plan = self._plan(request)
        state: fallback.CallState = fallback.start(plan)

        while True:
            if isinstance(state, fallback.Attempting):
                attempt_request = (
                    request
                    if state.model == request.model
                    else request.with_model(state.model)
                )
                try:
                    result = await self._attempt(attempt_request)
                except ProviderError as e:
                    state = fallback.on_failure(state, e, plan)
                    continue
                state = fallback.on_success(state, result)

            elif isinstance(state, fallback.FallingOver):
                logger.warning(
                    "router_fallback",
                    requested_model=model,
                    from_model=state.from_model,
                    next_model=state.next_model,
                    attempt=state.attempt,
                    error=str(state.cause),
                )
                state = fallback.resume(state)

            elif isinstance(state, fallback.Backoff):
                logger.warning(
                    "router_backoff",
                    model=state.model,
                    attempt=state.attempt,
                    delay_seconds=state.delay_seconds,
                    error=str(state.cause),
                )
                await self._sleep(state.delay_seconds)
                state = fallback.resume(state)

            elif isinstance(state, fallback.Succeeded):
                served: CompletionResult = state.result  # type: ignore[assignment]
                if state.attempts > 1:
                    logger.info(
                        "router_recovered",
                        requested_model=model,
                        served_model=served.model,
                        attempts=state.attempts,
                    )
                return replace(served, attempts=state.attempts)

            else:
                _raise_failure(model, state)

    async def _attempt_image(self, request: ImageRequest) -> list[GeneratedImage]:
        await self.rate_limiters.acquire(
            request.model, IMAGE_TOKENS_PER_REQUEST * request.count
        )
        try:
            return await asyncio.wait_for(
                self.image_backend.generate(request),  # type: ignore[union-attr]
                timeout=self.timeout_seconds,
            )
        except TimeoutError as e:
            raise TransientError(
                f"{request.model} timed out after {self.timeout_seconds}s"
            ) from e

    async def generate_image(
        self,
        model: str,
        prompt: str,
        *,
        size: str = "1024x1024",
        quality: str = "standard",
        count: int = 1,
    ) -> list[GeneratedImage]:
        """Generate images, backing off on retryable errors.

        Image models have no fallback chain; the same model is retried.

        Raises:
            ProviderNotConfiguredError: If no image backend is wired up or
                the model is not an image model.
            GenerationFailedError: Attempt budget exhausted.
            ProviderError: A fatal backend error.
        """
        if resolve_route(model).provider is not BackendProvider.OPENAI_IMAGE:
            raise ProviderNotConfiguredError(f"{model} is not an image model")
        if self.image_backend is None:
            raise ProviderNotConfiguredError("No image backend configured")

        request = ImageRequest(
            model=model, prompt=prompt, size=size, quality=quality, count=count
        )
        plan = fallback.CallPlan(requested_model=model, chain=(), policy=self.policy)
        state: fallback.CallState = fallback.start(plan)

        while True:
            if isinstance(state, fallback.Attempting):
                try:
                    return await self._attempt_image(request)
                except ProviderError as e:
                    state = fallback.on_failure(state, e, plan)

            elif isinstance(state, fallback.Backoff):
                logger.warning(
                    "router_backoff",
                    model=model,
                    attempt=state.attempt,
                    delay_seconds=state.delay_seconds,
                    error=str(state.cause),
                )
                await self._sleep(state.delay_seconds)
                state = fallback.resume(state)

            else:
                _raise_failure(model, state)  # type: ignore[arg-type]


def _raise_failure(model: str, state: fallback.Failed) -> NoReturn:
    """Log a terminal failure and raise what the caller should see.

    Exhausted budgets raise a generic GenerationFailedError chained to the
    backend error; fatal errors propagate unchanged.
    """
    logger.error(
        "router_exhausted" if state.exhausted else "router_fatal",
        requested_model=model,
        attempts=state.attempts,
        error=str(state.cause),
        error_type=type(state.cause).__name__,
    )
    if state.exhausted:
        raise GenerationFailedError(
            model, state.attempts, state.cause  # type: ignore[arg-type]
        ) from state.cause
    raise state.cause
