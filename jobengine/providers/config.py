"""Provider configuration management.

Credentials and endpoints for the OpenAI-compatible backends, plus the
router's timeout, attempt budget and backoff policy.
"""

import os
from dataclasses import dataclass

DEEPSEEK_BASE_URL = "https://api.deepseek.com"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
PERPLEXITY_BASE_URL = "https://api.perplexity.ai"


@dataclass
class ProviderConfig:
    """Centralized provider configuration.

    Attributes:
        deepseek_api_key: DeepSeek API key (loaded from environment).
        openai_api_key: OpenAI API key; also used for image generation.
        openrouter_api_key: OpenRouter aggregator API key.
        perplexity_api_key: Perplexity API key.
        deepseek_base_url: DeepSeek endpoint.
        openai_base_url: OpenAI endpoint override (None = SDK default).
        openrouter_base_url: OpenRouter endpoint.
        perplexity_base_url: Perplexity endpoint.
        default_max_tokens: Default max output tokens.
        default_temperature: Default sampling temperature.
        timeout_seconds: Upper bound for one provider attempt.
        max_attempts: Router attempt budget per call.
        retry_base_delay_ms: Base delay for exponential backoff.
        retry_max_delay_ms: Max delay cap for exponential backoff.
        enable_fallback: Whether the router may switch to fallback models.
    """

    # API keys (loaded from environment)
    deepseek_api_key: str | None = None
    openai_api_key: str | None = None
    openrouter_api_key: str | None = None
    perplexity_api_key: str | None = None

    # Endpoints
    deepseek_base_url: str = DEEPSEEK_BASE_URL
    openai_base_url: str | None = None
    openrouter_base_url: str = OPENROUTER_BASE_URL
    perplexity_base_url: str = PERPLEXITY_BASE_URL

    # Defaults
    default_max_tokens: int = 4096
    default_temperature: float = 0.7
    timeout_seconds: float = 120.0

    # Retry policy
    max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    enable_fallback: bool = True

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Load configuration from environment variables.

        Returns:
            ProviderConfig instance with values from environment.
        """
        return cls(
            deepseek_api_key=os.getenv("DEEPSEEK_API_KEY"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
            perplexity_api_key=os.getenv("PERPLEXITY_API_KEY"),
            deepseek_base_url=os.getenv("DEEPSEEK_BASE_URL", DEEPSEEK_BASE_URL),
            openai_base_url=os.getenv("OPENAI_BASE_URL"),
            openrouter_base_url=os.getenv("OPENROUTER_BASE_URL", OPENROUTER_BASE_URL),
            perplexity_base_url=os.getenv("PERPLEXITY_BASE_URL", PERPLEXITY_BASE_URL),
            default_max_tokens=int(os.getenv("DEFAULT_MAX_TOKENS", "4096")),
            default_temperature=float(os.getenv("DEFAULT_TEMPERATURE", "0.7")),
            timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
            max_attempts=int(os.getenv("LLM_MAX_ATTEMPTS", "3")),
            retry_base_delay_ms=int(os.getenv("LLM_RETRY_BASE_DELAY_MS", "1000")),
            retry_max_delay_ms=int(os.getenv("LLM_RETRY_MAX_DELAY_MS", "10000")),
            enable_fallback=os.getenv("LLM_ENABLE_FALLBACK", "true").lower()
            not in ("0", "false", "no"),
        )
