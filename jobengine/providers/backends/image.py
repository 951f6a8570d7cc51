"""OpenAI image generation backend."""

import time

import openai
import structlog
from openai import AsyncOpenAI

from jobengine.providers.backends.openai_compatible import classify_openai_error
from jobengine.providers.base import GeneratedImage, ImageBackend, ImageRequest
from jobengine.providers.catalog import BackendProvider, backend_model_name
from jobengine.providers.errors import ProviderError

logger = structlog.get_logger()

# dall-e-3 generates one image per request and is the only model that
# accepts a quality setting.
_SINGLE_IMAGE_MODELS = frozenset({"dall-e-3"})


class OpenAIImageBackend(ImageBackend):
    """Image generation over ``client.images.generate``.

    Args:
        api_key: OpenAI API key.
        base_url: Endpoint override (None = OpenAI default).
        client: Pre-built client, mainly for tests.
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, max_retries=0
        )

    async def _generate_once(self, model: str, request: ImageRequest, n: int) -> list:
        kwargs: dict = {
            "model": model,
            "prompt": request.prompt,
            "size": request.size,
            "n": n,
        }
        if model in _SINGLE_IMAGE_MODELS:
            kwargs["quality"] = request.quality
        try:
            response = await self.client.images.generate(**kwargs)
        except openai.OpenAIError as e:
            logger.error(
                "image_request_failed",
                model=model,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise classify_openai_error(e) from e
        return list(response.data or [])

    async def generate(self, request: ImageRequest) -> list[GeneratedImage]:
        """Generate images.

        Returns:
            One GeneratedImage per image returned by the API.

        Raises:
            ProviderError: Classified SDK failure, or an image without a URL.
        """
        model = backend_model_name(request.model, BackendProvider.OPENAI_IMAGE)
        logger.info("image_request_start", model=model, count=request.count)
        start_time = time.monotonic()

        if model in _SINGLE_IMAGE_MODELS:
            data = []
            for _ in range(request.count):
                data.extend(await self._generate_once(model, request, 1))
        else:
            data = await self._generate_once(model, request, request.count)

        images: list[GeneratedImage] = []
        for item in data:
            if item.url:
                url = item.url
            elif item.b64_json:
                url = f"data:image/png;base64,{item.b64_json}"
            else:
                raise ProviderError(f"Image generated by {model} has no URL")
            images.append(
                GeneratedImage(url=url, revised_prompt=item.revised_prompt)
            )

        logger.info(
            "image_request_complete",
            model=model,
            count=len(images),
            latency_ms=(time.monotonic() - start_time) * 1000,
        )
        return images
