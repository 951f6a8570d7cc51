"""Tests for model routing tables and the unified call types."""

import pytest

from jobengine.providers.base import ChatMessage, CompletionRequest, TokenUsage
from jobengine.providers.catalog import (
    FALLBACK_CHAINS,
    MODEL_CATALOG,
    BackendProvider,
    ProcessingTier,
    backend_model_name,
    resolve_route,
    validate_chains,
)


class TestResolveRoute:
    @pytest.mark.parametrize(
        ("model", "provider", "tier"),
        [
            ("deepseek-reasoner", BackendProvider.DEEPSEEK, ProcessingTier.COMPLEX),
            ("deepseek-chat", BackendProvider.DEEPSEEK, ProcessingTier.SIMPLE),
            ("openai/gpt-5", BackendProvider.OPENAI, ProcessingTier.COMPLEX),
            ("openai/gpt-5-mini", BackendProvider.OPENAI, ProcessingTier.SIMPLE),
            ("dall-e-3", BackendProvider.OPENAI_IMAGE, ProcessingTier.SIMPLE),
            (
                "google/gemini-2.5-pro",
                BackendProvider.OPENROUTER,
                ProcessingTier.COMPLEX,
            ),
            ("sonar-pro", BackendProvider.PERPLEXITY, ProcessingTier.SIMPLE),
        ],
    )
    def test_catalog_entries(
        self, model: str, provider: BackendProvider, tier: ProcessingTier
    ) -> None:
        route = resolve_route(model)
        assert route.provider is provider
        assert route.tier is tier

    @pytest.mark.parametrize(
        ("model", "provider"),
        [
            ("deepseek-v3", BackendProvider.DEEPSEEK),
            ("dall-e-2", BackendProvider.OPENAI_IMAGE),
            ("gpt-image-1", BackendProvider.OPENAI_IMAGE),
            ("openai/o3", BackendProvider.OPENAI),
            ("gpt-4.1", BackendProvider.OPENAI),
            ("google/gemma-3", BackendProvider.OPENROUTER),
            ("anthropic/claude-opus-4", BackendProvider.OPENROUTER),
            ("sonar-deep-research", BackendProvider.PERPLEXITY),
            ("meta-llama/llama-3-70b", BackendProvider.OPENROUTER),
        ],
    )
    def test_unknown_names_use_prefix_rules(
        self, model: str, provider: BackendProvider
    ) -> None:
        assert resolve_route(model).provider is provider

    @pytest.mark.parametrize(
        ("model", "tier"),
        [
            ("deepseek-reasoner-v2", ProcessingTier.COMPLEX),
            ("gpt-5-turbo", ProcessingTier.COMPLEX),
            ("gpt-5-mini-2025", ProcessingTier.SIMPLE),
            ("google/gemini-2.5-pro-exp", ProcessingTier.COMPLEX),
            ("meta-llama/llama-3-70b", ProcessingTier.SIMPLE),
        ],
    )
    def test_unknown_names_tier(self, model: str, tier: ProcessingTier) -> None:
        assert resolve_route(model).tier is tier


class TestBackendModelName:
    def test_deepseek_names_collapse_to_two_models(self) -> None:
        assert backend_model_name("deepseek-v3", BackendProvider.DEEPSEEK) == (
            "deepseek-chat"
        )
        assert backend_model_name("deepseek-reasoner", BackendProvider.DEEPSEEK) == (
            "deepseek-reasoner"
        )

    def test_openai_prefix_is_stripped(self) -> None:
        assert backend_model_name("openai/gpt-4o", BackendProvider.OPENAI) == "gpt-4o"

    def test_aggregator_names_pass_through(self) -> None:
        model = "google/gemini-2.5-flash"
        assert backend_model_name(model, BackendProvider.OPENROUTER) == model


class TestFallbackChains:
    def test_chains_have_no_duplicates(self) -> None:
        validate_chains(FALLBACK_CHAINS)

    def test_duplicate_chain_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="duplicates"):
            validate_chains({ProcessingTier.SIMPLE: ("a", "b", "a")})

    def test_every_chain_model_is_catalogued(self) -> None:
        for chain in FALLBACK_CHAINS.values():
            for model in chain:
                assert model in MODEL_CATALOG

    def test_chains_head_with_tier_default(self) -> None:
        assert FALLBACK_CHAINS[ProcessingTier.COMPLEX][0] == "deepseek-reasoner"
        assert FALLBACK_CHAINS[ProcessingTier.SIMPLE][0] == "deepseek-chat"


class TestCompletionRequest:
    def test_route_derived_from_model(self) -> None:
        request = CompletionRequest(model="deepseek-reasoner", messages=())
        assert request.provider is BackendProvider.DEEPSEEK
        assert request.tier is ProcessingTier.COMPLEX

    def test_with_model_keeps_tier(self) -> None:
        request = CompletionRequest(model="deepseek-reasoner", messages=())
        substitute = request.with_model("openai/gpt-4o")

        assert substitute.model == "openai/gpt-4o"
        assert substitute.provider is BackendProvider.OPENAI
        assert substitute.tier is ProcessingTier.COMPLEX
        assert request.model == "deepseek-reasoner"

    def test_estimated_tokens(self) -> None:
        request = CompletionRequest(
            model="deepseek-chat",
            messages=(ChatMessage("user", "x" * 10),),
            max_tokens=100,
        )
        assert request.estimated_tokens() == 103


class TestTokenUsage:
    def test_multiplier_applied_for_deepseek(self) -> None:
        usage = TokenUsage.from_counts(BackendProvider.DEEPSEEK, 100, 50)
        assert usage.total_tokens == 150
        assert usage.billing_input_tokens == 200
        assert usage.billing_output_tokens == 100
        assert usage.total_billing_tokens == 300

    def test_openai_is_billed_one_to_one(self) -> None:
        usage = TokenUsage.from_counts(BackendProvider.OPENAI, 100, 50)
        assert usage.total_billing_tokens == 150

    def test_reported_total_is_kept(self) -> None:
        usage = TokenUsage.from_counts(BackendProvider.OPENROUTER, 100, 50, 160)
        assert usage.total_tokens == 160
        assert usage.total_billing_tokens == 320
