"""Router factory.

Builds a ProviderRouter wired with a backend for every provider that has
credentials. There is no module-level router: the composition root owns
the instance, and the rate limiter registry it shares.
"""

import logging

from jobengine.providers.backends.image import OpenAIImageBackend
from jobengine.providers.backends.openai_compatible import OpenAICompatibleBackend
from jobengine.providers.base import TextBackend
from jobengine.providers.catalog import BackendProvider
from jobengine.providers.config import ProviderConfig
from jobengine.providers.fallback import FallbackPolicy
from jobengine.providers.rate_limiter import RateLimiterRegistry
from jobengine.providers.router import ProviderRouter

logger = logging.getLogger(__name__)


def build_router(
    config: ProviderConfig | None = None,
    rate_limiters: RateLimiterRegistry | None = None,
) -> ProviderRouter:
    """Create a router for the configured providers.

    Args:
        config: Provider configuration. Loaded from environment when None.
        rate_limiters: Shared registry. A fresh one is created when None.

    Returns:
        ProviderRouter instance.

    Raises:
        ValueError: If no provider has an API key.
    """
    if config is None:
        config = ProviderConfig.from_env()

    credentials = {
        BackendProvider.DEEPSEEK: (config.deepseek_api_key, config.deepseek_base_url),
        BackendProvider.OPENAI: (config.openai_api_key, config.openai_base_url),
        BackendProvider.OPENROUTER: (
            config.openrouter_api_key,
            config.openrouter_base_url,
        ),
        BackendProvider.PERPLEXITY: (
            config.perplexity_api_key,
            config.perplexity_base_url,
        ),
    }

    backends: dict[BackendProvider, TextBackend] = {}
    for provider, (api_key, base_url) in credentials.items():
        if api_key:
            backends[provider] = OpenAICompatibleBackend(provider, api_key, base_url)
        else:
            logger.info("No API key for %s; backend disabled", provider.value)

    if not backends:
        raise ValueError("No provider API key configured")

    image_backend = None
    if config.openai_api_key:
        image_backend = OpenAIImageBackend(
            config.openai_api_key, config.openai_base_url
        )

    return ProviderRouter(
        backends=backends,
        rate_limiters=rate_limiters or RateLimiterRegistry(),
        policy=FallbackPolicy(
            max_attempts=config.max_attempts,
            base_delay_ms=config.retry_base_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
            enable_fallback=config.enable_fallback,
        ),
        image_backend=image_backend,
        timeout_seconds=config.timeout_seconds,
        default_temperature=config.default_temperature,
        default_max_tokens=config.default_max_tokens,
    )
