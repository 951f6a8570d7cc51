"""Chat backend for every OpenAI-compatible API.

DeepSeek, OpenAI, OpenRouter and Perplexity all speak the OpenAI chat
completions protocol, so one adapter on the official SDK serves them,
configured with the provider's base URL and key.
"""

import contextlib
import time

import openai
import structlog
from openai import AsyncOpenAI

from jobengine.providers.base import (
    CompletionRequest,
    CompletionResult,
    ResponseFormat,
    TextBackend,
    TokenUsage,
)
from jobengine.providers.catalog import BackendProvider, backend_model_name
from jobengine.providers.errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    TransientError,
)

logger = structlog.get_logger()

_TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})

# Perplexity rejects response_format=json_object.
_JSON_MODE_PROVIDERS = frozenset(
    {BackendProvider.DEEPSEEK, BackendProvider.OPENAI, BackendProvider.OPENROUTER}
)


def _retry_after(error: openai.APIStatusError) -> float | None:
    header = error.response.headers.get("retry-after")
    if header is None:
        return None
    with contextlib.suppress(ValueError):
        return float(header)
    return None


def classify_openai_error(error: Exception) -> ProviderError:
    """Map OpenAI SDK exceptions to the internal error taxonomy.

    Returns a ProviderError subclass instance (does not raise). The caller
    raises via ``raise classify_openai_error(e) from e`` so the SDK
    message stays in the chain.
    """
    if isinstance(error, openai.RateLimitError):
        return RateLimitError(
            str(error),
            retry_after_seconds=_retry_after(error),
            status_code=error.status_code,
        )

    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthenticationError(str(error), status_code=error.status_code)

    if isinstance(error, openai.NotFoundError):
        return ModelNotFoundError(str(error), status_code=error.status_code)

    if isinstance(error, openai.BadRequestError):
        error_msg = str(error).lower()
        if "context_length" in error_msg or "maximum context" in error_msg:
            return ContextLengthError(str(error), status_code=error.status_code)
        if "content_policy" in error_msg or "content_filter" in error_msg:
            return ContentFilterError(str(error), status_code=error.status_code)
        return ProviderError(str(error), status_code=error.status_code)

    # APITimeoutError is a subclass of APIConnectionError.
    if isinstance(error, openai.APIConnectionError):
        return TransientError(str(error))

    if isinstance(error, openai.APIStatusError):
        if error.status_code in _TRANSIENT_STATUS_CODES:
            return TransientError(str(error), status_code=error.status_code)
        return ProviderError(str(error), status_code=error.status_code)

    return ProviderError(str(error))


class OpenAICompatibleBackend(TextBackend):
    """Chat completions over the OpenAI SDK for one provider.

    Args:
        provider: Which provider this instance serves.
        api_key: Provider API key.
        base_url: Provider endpoint (None = OpenAI default).
        client: Pre-built client, mainly for tests.
    """

    def __init__(
        self,
        provider: BackendProvider,
        api_key: str | None,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._provider = provider
        # The router enforces its own attempt budget; the SDK must not retry.
        self.client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, max_retries=0
        )

    @property
    def provider(self) -> BackendProvider:
        return self._provider

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Generate a completion.

        Args:
            request: Unified call descriptor.

        Returns:
            CompletionResult with usage normalized for billing.

        Raises:
            ProviderError: Classified SDK failure.
        """
        model = backend_model_name(request.model, self._provider)
        response_format = None
        if (
            request.response_format is ResponseFormat.JSON
            and self._provider in _JSON_MODE_PROVIDERS
        ):
            response_format = {"type": "json_object"}

        logger.info(
            "llm_request_start",
            provider=self._provider.value,
            model=model,
            message_count=len(request.messages),
        )
        start_time = time.monotonic()

        kwargs: dict = {
            "model": model,
            "messages": [
                {"role": m.role, "content": m.content} for m in request.messages
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if response_format is not None:
            kwargs["response_format"] = response_format

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            logger.error(
                "llm_request_failed",
                provider=self._provider.value,
                model=model,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise classify_openai_error(e) from e

        latency_ms = (time.monotonic() - start_time) * 1000
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0
        total_tokens = usage.total_tokens if usage else 0

        logger.info(
            "llm_request_complete",
            provider=self._provider.value,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )

        content = response.choices[0].message.content if response.choices else None
        return CompletionResult(
            content=content or "",
            usage=TokenUsage.from_counts(
                self._provider, input_tokens, output_tokens, total_tokens
            ),
            model=response.model or model,
            provider=self._provider,
        )
