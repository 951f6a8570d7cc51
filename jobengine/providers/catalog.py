"""Model catalog: which backend serves a model, and at which tier.

Routing is data-driven. ``MODEL_CATALOG`` lists every model the system
knows about explicitly. Names missing from the table are resolved by
``PREFIX_RULES`` in order, then by the documented default (OpenRouter
aggregator, simple tier).

The tier of the *requested* model selects the fallback chain for the
whole call; substitutes inherit it.
"""

from dataclasses import dataclass
from enum import Enum


class BackendProvider(Enum):
    """Backends the router can reach."""

    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    OPENAI_IMAGE = "openai_image"
    OPENROUTER = "openrouter"
    PERPLEXITY = "perplexity"


class ProcessingTier(Enum):
    """Capability class selecting the fallback chain."""

    COMPLEX = "complex"
    SIMPLE = "simple"


@dataclass(frozen=True)
class ModelRoute:
    """Routing decision for one model name.

    Attributes:
        provider: Backend that serves the model.
        tier: Processing tier of the model.
    """

    provider: BackendProvider
    tier: ProcessingTier


# =============================================================================
# Routing Tables
# =============================================================================

_C = ProcessingTier.COMPLEX
_S = ProcessingTier.SIMPLE

MODEL_CATALOG: dict[str, ModelRoute] = {
    # DeepSeek direct
    "deepseek-reasoner": ModelRoute(BackendProvider.DEEPSEEK, _C),
    "deepseek-chat": ModelRoute(BackendProvider.DEEPSEEK, _S),
    # OpenAI direct
    "openai/gpt-5": ModelRoute(BackendProvider.OPENAI, _C),
    "openai/gpt-5-mini": ModelRoute(BackendProvider.OPENAI, _S),
    "openai/gpt-4o": ModelRoute(BackendProvider.OPENAI, _S),
    "openai/gpt-4o-mini": ModelRoute(BackendProvider.OPENAI, _S),
    "gpt-5": ModelRoute(BackendProvider.OPENAI, _C),
    "gpt-5-mini": ModelRoute(BackendProvider.OPENAI, _S),
    "gpt-4o": ModelRoute(BackendProvider.OPENAI, _S),
    "gpt-4o-mini": ModelRoute(BackendProvider.OPENAI, _S),
    # OpenAI images
    "gpt-image-1-mini": ModelRoute(BackendProvider.OPENAI_IMAGE, _S),
    "dall-e-3": ModelRoute(BackendProvider.OPENAI_IMAGE, _S),
    # OpenRouter aggregator
    "google/gemini-2.5-pro": ModelRoute(BackendProvider.OPENROUTER, _C),
    "google/gemini-2.5-flash": ModelRoute(BackendProvider.OPENROUTER, _S),
    "anthropic/claude-sonnet-4.5": ModelRoute(BackendProvider.OPENROUTER, _S),
    # Perplexity search models
    "sonar-pro": ModelRoute(BackendProvider.PERPLEXITY, _S),
    "sonar-reasoning": ModelRoute(BackendProvider.PERPLEXITY, _C),
}

# (match kind, needle, provider), first match wins. Image rules sit before
# the generic gpt- rule.
PREFIX_RULES: tuple[tuple[str, str, BackendProvider], ...] = (
    ("prefix", "deepseek", BackendProvider.DEEPSEEK),
    ("contains", "dall-e", BackendProvider.OPENAI_IMAGE),
    ("contains", "gpt-image", BackendProvider.OPENAI_IMAGE),
    ("prefix", "openai/", BackendProvider.OPENAI),
    ("contains", "gpt-", BackendProvider.OPENAI),
    ("prefix", "google/", BackendProvider.OPENROUTER),
    ("prefix", "anthropic/", BackendProvider.OPENROUTER),
    ("contains", "sonar", BackendProvider.PERPLEXITY),
)

DEFAULT_PROVIDER = BackendProvider.OPENROUTER
DEFAULT_TIER = ProcessingTier.SIMPLE

COMPLEX_MARKERS = ("reasoner", "gpt-5", "gemini-2.5-pro")

FALLBACK_CHAINS: dict[ProcessingTier, tuple[str, ...]] = {
    ProcessingTier.COMPLEX: (
        "deepseek-reasoner",
        "openai/gpt-5",
        "openai/gpt-4o",
        "google/gemini-2.5-pro",
        "google/gemini-2.5-flash",
        "anthropic/claude-sonnet-4.5",
    ),
    ProcessingTier.SIMPLE: (
        "deepseek-chat",
        "openai/gpt-5-mini",
        "openai/gpt-4o-mini",
        "openai/gpt-4o",
        "anthropic/claude-sonnet-4.5",
    ),
}

# Billing units per raw token.
BILLING_MULTIPLIERS: dict[BackendProvider, int] = {
    BackendProvider.DEEPSEEK: 2,
    BackendProvider.OPENROUTER: 2,
    BackendProvider.OPENAI: 1,
    BackendProvider.OPENAI_IMAGE: 1,
    BackendProvider.PERPLEXITY: 1,
}


def validate_chains(chains: dict[ProcessingTier, tuple[str, ...]]) -> None:
    """Reject chains that list a model more than once.

    Raises:
        ValueError: If any chain contains a duplicate.
    """
    for tier, chain in chains.items():
        if len(set(chain)) != len(chain):
            raise ValueError(f"Fallback chain for {tier.value} contains duplicates")


validate_chains(FALLBACK_CHAINS)


# =============================================================================
# Resolution
# =============================================================================


def _detect_provider(model: str) -> BackendProvider:
    for kind, needle, provider in PREFIX_RULES:
        if kind == "prefix" and model.startswith(needle):
            return provider
        if kind == "contains" and needle in model:
            return provider
    return DEFAULT_PROVIDER


def _detect_tier(model: str) -> ProcessingTier:
    for marker in COMPLEX_MARKERS:
        index = model.find(marker)
        if index == -1:
            continue
        # gpt-5-mini and friends are simple
        if marker == "gpt-5" and model[index + len(marker) :].startswith("-mini"):
            continue
        return ProcessingTier.COMPLEX
    return DEFAULT_TIER


def resolve_route(model: str) -> ModelRoute:
    """Return the provider and tier for a model name.

    Args:
        model: Logical model name, e.g. "openai/gpt-4o".

    Returns:
        The catalog entry, or one derived from prefix rules and
        complex-tier markers for unknown names.
    """
    route = MODEL_CATALOG.get(model)
    if route is not None:
        return route
    return ModelRoute(_detect_provider(model), _detect_tier(model))


def backend_model_name(model: str, provider: BackendProvider) -> str:
    """Translate a logical model name into the backend's native name.

    DeepSeek only accepts its two model names; OpenAI does not want the
    ``openai/`` vendor prefix; OpenRouter and Perplexity take the name as is.
    """
    if provider is BackendProvider.DEEPSEEK:
        return "deepseek-reasoner" if "reasoner" in model else "deepseek-chat"
    if provider in (BackendProvider.OPENAI, BackendProvider.OPENAI_IMAGE):
        return model.removeprefix("openai/")
    return model
