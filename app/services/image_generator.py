import asyncio
import logging

from openai import AsyncOpenAI

from app.config import Settings, get_settings
from app.models.flyer import ImageRef
from app.services.errors import UpstreamError, ValidationError
from app.services.layout_document import MIN_DIMENSION

logger = logging.getLogger(__name__)

# Together AI only accepts dimensions that are multiples of 16
DIMENSION_STEP = 16


def normalize_dimension(value: int) -> int:
    """Clamp to the minimum size, then round to the nearest multiple of 16."""
    value = max(value, MIN_DIMENSION)
    # Halves round up
    return (value + DIMENSION_STEP // 2) // DIMENSION_STEP * DIMENSION_STEP


class ImageGenerator:
    """
    Generates raster images with FLUX.1-schnell on Together AI.

    Together exposes an OpenAI-compatible images endpoint, so the OpenAI SDK
    is pointed at it and the Together-specific fields go in `extra_body`.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._client: AsyncOpenAI | None = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.settings.together_api_key:
                raise UpstreamError("TOGETHER_API_KEY is not set.")
            self._client = AsyncOpenAI(
                api_key=self.settings.together_api_key,
                base_url=self.settings.together_base_url,
            )
        return self._client

    async def generate_image(self, prompt: str, width: int, height: int) -> ImageRef:
        """Generate one image for `prompt`. Raises UpstreamError on any failure."""
        if not prompt or not prompt.strip():
            raise ValidationError("Image prompt is empty")

        valid_width = normalize_dimension(width)
        valid_height = normalize_dimension(height)
        logger.info(
            f"Generating {valid_width}x{valid_height} image with {self.settings.image_model}: {prompt!r}"
        )

        client = self.client
        try:
            response = await asyncio.wait_for(
                client.images.generate(
                    model=self.settings.image_model,
                    prompt=prompt,
                    n=1,
                    extra_body={
                        "width": valid_width,
                        "height": valid_height,
                        "output_format": "png",
                        "response_format": "base64",
                    },
                ),
                timeout=self.settings.call_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamError(
                f"Together AI timed out after {self.settings.call_timeout:g}s"
            ) from exc
        except Exception as exc:
            raise UpstreamError(f"Together AI Error: {exc}") from exc

        if not response.data or not response.data[0].b64_json:
            raise UpstreamError("Invalid response from Together AI")

        try:
            return ImageRef.from_base64(response.data[0].b64_json)
        except ValidationError as exc:
            raise UpstreamError(f"Together AI returned an unreadable image: {exc}") from exc


image_generator = ImageGenerator()
