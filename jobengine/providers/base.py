"""Abstract backend interfaces and the unified call types.

A router call is described by an immutable ``CompletionRequest``. When
the router falls over to another model it builds a new request with
``with_model`` rather than mutating the old one.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum

from jobengine.providers.catalog import (
    BILLING_MULTIPLIERS,
    BackendProvider,
    ProcessingTier,
    resolve_route,
)


class ResponseFormat(Enum):
    """Desired response shape."""

    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class ChatMessage:
    """One message in a completion request.

    Attributes:
        role: "system", "user" or "assistant".
        content: Message text.
    """

    role: str
    content: str


@dataclass(frozen=True)
class CompletionRequest:
    """Immutable description of one provider call attempt.

    ``provider`` and ``tier`` are derived from ``model`` through the
    catalog when not given explicitly.
    """

    model: str
    messages: tuple[ChatMessage, ...]
    temperature: float = 0.7
    max_tokens: int = 4096
    response_format: ResponseFormat = ResponseFormat.TEXT
    provider: BackendProvider | None = None
    tier: ProcessingTier | None = None

    def __post_init__(self) -> None:
        route = resolve_route(self.model)
        if self.provider is None:
            object.__setattr__(self, "provider", route.provider)
        if self.tier is None:
            object.__setattr__(self, "tier", route.tier)

    def with_model(self, model: str) -> "CompletionRequest":
        """New request for a substitute model; the tier is kept."""
        return replace(
            self,
            model=model,
            provider=resolve_route(model).provider,
        )

    def estimated_tokens(self) -> int:
        """Rate-limit estimate: prompt characters / 4, plus max output."""
        chars = sum(len(m.content) for m in self.messages)
        return math.ceil(chars / 4) + self.max_tokens


@dataclass(frozen=True)
class TokenUsage:
    """Normalized token usage.

    Billing fields are the raw counts times the provider's multiplier.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    billing_input_tokens: int = 0
    billing_output_tokens: int = 0
    total_billing_tokens: int = 0

    @classmethod
    def from_counts(
        cls,
        provider: BackendProvider,
        input_tokens: int,
        output_tokens: int,
        total_tokens: int | None = None,
    ) -> "TokenUsage":
        """Build usage from raw counts, applying the billing multiplier."""
        multiplier = BILLING_MULTIPLIERS[provider]
        if total_tokens is None:
            total_tokens = input_tokens + output_tokens
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            billing_input_tokens=input_tokens * multiplier,
            billing_output_tokens=output_tokens * multiplier,
            total_billing_tokens=total_tokens * multiplier,
        )


@dataclass(frozen=True)
class CompletionResult:
    """Normalized completion returned by the router.

    Attributes:
        content: Generated text (or JSON text).
        usage: Normalized token usage.
        model: Model that actually served the call.
        provider: Backend that served the call.
        attempts: Provider attempts the router made, including this one.
    """

    content: str
    usage: TokenUsage
    model: str
    provider: BackendProvider
    attempts: int = 1


@dataclass(frozen=True)
class ImageRequest:
    """Image generation request."""

    model: str
    prompt: str
    size: str = "1024x1024"
    quality: str = "standard"
    count: int = 1


@dataclass(frozen=True)
class GeneratedImage:
    """One generated image.

    Attributes:
        url: Hosted image URL, or a data URL for base64 payloads.
        revised_prompt: Prompt as rewritten by the backend, if reported.
    """

    url: str
    revised_prompt: str | None = None


class TextBackend(ABC):
    """A backend that serves chat completions."""

    @property
    @abstractmethod
    def provider(self) -> BackendProvider:
        """The provider this backend serves."""
        ...

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one completion attempt.

        Raises:
            ProviderError: Mapped backend failure.
        """
        ...


class ImageBackend(ABC):
    """A backend that generates images."""

    @abstractmethod
    async def generate(self, request: ImageRequest) -> list[GeneratedImage]:
        """Generate ``request.count`` images.

        Raises:
            ProviderError: Mapped backend failure.
        """
        ...
