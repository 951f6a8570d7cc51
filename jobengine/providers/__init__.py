"""Provider routing layer.

Exports:
    Error classes for provider error handling
    ProviderConfig for configuration
    ProviderRouter, RateLimiterRegistry and the build_router factory
"""

from jobengine.providers.base import (
    ChatMessage,
    CompletionResult,
    GeneratedImage,
    ResponseFormat,
    TokenUsage,
)
from jobengine.providers.config import ProviderConfig
from jobengine.providers.errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    GenerationFailedError,
    ModelNotFoundError,
    ProviderError,
    ProviderNotConfiguredError,
    QuotaExceededError,
    RateLimitError,
    TransientError,
)
from jobengine.providers.factory import build_router
from jobengine.providers.rate_limiter import RateLimitConfig, RateLimiterRegistry
from jobengine.providers.router import ProviderRouter

__all__ = [
    # Config
    "ProviderConfig",
    # Types
    "ChatMessage",
    "CompletionResult",
    "GeneratedImage",
    "ResponseFormat",
    "TokenUsage",
    # Errors
    "ProviderError",
    "RateLimitError",
    "AuthenticationError",
    "ModelNotFoundError",
    "ContentFilterError",
    "ContextLengthError",
    "TransientError",
    "ProviderNotConfiguredError",
    "QuotaExceededError",
    "GenerationFailedError",
    # Routing
    "ProviderRouter",
    "RateLimitConfig",
    "RateLimiterRegistry",
    "build_router",
]
