"""Scripted backends for testing.

Each call pops the next scripted outcome: an exception instance is
raised, anything else is returned as completion content. When the
script runs out, a default response is returned.
"""

from typing import Any

from jobengine.providers.base import (
    CompletionRequest,
    CompletionResult,
    GeneratedImage,
    ImageBackend,
    ImageRequest,
    TextBackend,
    TokenUsage,
)
from jobengine.providers.catalog import BackendProvider


class MockTextBackend(TextBackend):
    """Mock chat backend.

    Attributes:
        outcomes: Remaining scripted outcomes (str or Exception).
        calls: Requests received, in order, for test assertions.
    """

    def __init__(
        self,
        provider: BackendProvider,
        outcomes: list[Any] | None = None,
        input_tokens: int = 100,
        output_tokens: int = 50,
    ) -> None:
        self._provider = provider
        self.outcomes: list[Any] = list(outcomes) if outcomes else []
        self.calls: list[CompletionRequest] = []
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens

    @property
    def provider(self) -> BackendProvider:
        return self._provider

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.calls.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            outcome = f"Mock response from {request.model}"
        return CompletionResult(
            content=outcome,
            usage=TokenUsage.from_counts(
                self._provider, self.input_tokens, self.output_tokens
            ),
            model=request.model,
            provider=self._provider,
        )


class MockImageBackend(ImageBackend):
    """Mock image backend with the same scripting rules."""

    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.outcomes: list[Any] = list(outcomes) if outcomes else []
        self.calls: list[ImageRequest] = []

    async def generate(self, request: ImageRequest) -> list[GeneratedImage]:
        self.calls.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        return [
            GeneratedImage(url=f"https://images.example.com/{request.model}/{i}.png")
            for i in range(request.count)
        ]
