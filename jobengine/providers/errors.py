"""Provider error taxonomy.

Adapters map SDK exceptions onto these classes so the router can decide
between fallback/backoff (retryable) and immediate failure (fatal)
without knowing which backend raised.
"""


__all__ = [
    "RETRYABLE_STATUS_CODES",
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
    "is_retryable",
]

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503})


class ProviderError(Exception):
    """Base class for all provider errors.

    Attributes:
        status_code: HTTP status reported by the backend, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(
        self,
        message: str,
        retry_after_seconds: float | None = None,
        status_code: int | None = 429,
    ):
        """Initialize RateLimitError.

        Args:
            message: Error description from the provider.
            retry_after_seconds: Optional hint from provider on when to retry.
            status_code: HTTP status, 429 unless the backend says otherwise.
        """
        super().__init__(message, status_code=status_code)
        self.retry_after_seconds = retry_after_seconds


class AuthenticationError(ProviderError):
    """Invalid or expired API key."""


class ModelNotFoundError(ProviderError):
    """Requested model doesn't exist or isn't accessible."""


class ContentFilterError(ProviderError):
    """Content blocked by provider's safety filter."""


class ContextLengthError(ProviderError):
    """Input exceeded model's context window."""


class TransientError(ProviderError):
    """Temporary failure: connection errors, timeouts, 5xx responses."""


class ProviderNotConfiguredError(ProviderError):
    """No backend is registered (or credentialed) for the model's provider."""


class QuotaExceededError(ProviderError):
    """A single request is larger than a whole rate-limit window.

    Waiting cannot help, so this is raised instead of suspending forever.
    """

    def __init__(self, model: str, requested: int, limit: int, window: str):
        super().__init__(
            f"Request of {requested} tokens exceeds the {window} quota "
            f"of {limit} tokens for {model}"
        )
        self.model = model
        self.requested = requested
        self.limit = limit
        self.window = window


class GenerationFailedError(ProviderError):
    """The router gave up on a call.

    The message is generic and safe to show to users. The backend's own
    message stays available as ``last_error`` and via ``__cause__``.

    Attributes:
        model: Model originally requested.
        attempts: Number of provider attempts made.
        last_error: Final backend error.
    """

    def __init__(
        self,
        model: str,
        attempts: int,
        last_error: ProviderError | None = None,
    ):
        super().__init__(
            "Generation failed, please retry",
            status_code=last_error.status_code if last_error else None,
        )
        self.model = model
        self.attempts = attempts
        self.last_error = last_error


def is_retryable(error: BaseException) -> bool:
    """Whether the router may fall back or back off after ``error``.

    Rate limits, transient failures and HTTP 429/500/502/503 are
    retryable; everything else is fatal.
    """
    if isinstance(error, (RateLimitError, TransientError)):
        return True
    if isinstance(error, ProviderError):
        return error.status_code in RETRYABLE_STATUS_CODES
    return False
