"""Backend adapters.

Exports:
    OpenAICompatibleBackend: Chat completions for DeepSeek, OpenAI,
        OpenRouter and Perplexity.
    OpenAIImageBackend: Image generation.
    MockTextBackend, MockImageBackend: Scripted backends for tests.
"""

from jobengine.providers.backends.image import OpenAIImageBackend
from jobengine.providers.backends.mock import MockImageBackend, MockTextBackend
from jobengine.providers.backends.openai_compatible import (
    OpenAICompatibleBackend,
    classify_openai_error,
)

__all__ = [
    "OpenAICompatibleBackend",
    "OpenAIImageBackend",
    "MockTextBackend",
    "MockImageBackend",
    "classify_openai_error",
]
