import asyncio
import logging
import re

from google import genai

from app.config import Settings, get_settings
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds

LAYOUT_PROMPT = """Act as a Senior Art Director and Frontend Developer. Produce the HTML `<div>` markup for a professional flyer that matches the user's theme. You must:

1. Choose element sizes deliberately, based on the content and the theme, keeping the layout clear and balanced.
2. Make every image clearly related to the subject of the flyer.
3. Align and pad text and visuals so the layout reads clean and professional.
4. Scale or wrap text so nothing is clipped by the flyer boundaries.
5. Use spacing so no area of the flyer feels empty or crowded.
6. Use layering, opacity and custom shapes to make the design engaging.
7. If the topic contains an emoji and the user does not ask for it, leave it out of the design.
8. Use only `<div>`, `<span>` and `<img>` elements and no JavaScript.
9. For visual elements:
   * use a background image or gradient plus transparent-friendly stickers, layered to enhance the design;
   * every visual element is an `<img>` tag with an empty src, an `x-prompt` attribute holding the prompt that will generate the image, and a `transparent` attribute set to true or false depending on whether the image needs a transparent background;
   * give every `<img>` explicit `width` and `height` attributes in pixels;
   * keep every visual consistent with the flyer's content, its theme and the other visuals.
10. Use Google Fonts for the typography.
11. Wrap every text in a `<span>` with a `data-font-url` attribute holding the Google Fonts link for its family and weight.
12. Give every `<div>`, `<img>` and `<span>` an explicit `z-index` (never auto).
13. The `<span>` around a text carries no styling other than its z-index.

Output only the HTML, with the whole flyer rendered inside a single `<div>` element."""

_CODE_FENCE = re.compile(r"```(?:html)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences the model sometimes wraps around HTML."""
    return _CODE_FENCE.sub("", text).strip()


class GeminiService:
    """Produces flyer layouts with the Gemini text model."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._client: genai.Client | None = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.settings.gemini_api_key:
                raise UpstreamError("GEMINI_API_KEY is not set.")
            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    async def generate_layout(self, brief: str) -> str:
        """Ask Gemini for the flyer markup matching `brief`."""
        prompt = f"{LAYOUT_PROMPT}\n\nUser Requirements: {brief}"
        text = await self._generate_text(prompt)
        return strip_code_fences(text)

    async def _generate_text(self, prompt: str) -> str:
        """Send a text request to Gemini with retry logic."""
        client = self.client
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            try:
                response = await asyncio.wait_for(
                    client.aio.models.generate_content(
                        model=self.settings.gemini_model,
                        contents=prompt,
                    ),
                    timeout=self.settings.call_timeout,
                )

                if not response.candidates:
                    raise UpstreamError("Gemini API returned no candidates")

                candidate = response.candidates[0]
                if candidate.content is None:
                    finish_reason = getattr(candidate, "finish_reason", "UNKNOWN")
                    raise UpstreamError(
                        f"Gemini API returned no content. Finish reason: {finish_reason}"
                    )

                text = "".join(
                    part.text for part in candidate.content.parts or [] if part.text
                )
                if not text.strip():
                    raise UpstreamError("Invalid response structure from Gemini API")
                return text

            except UpstreamError as e:
                last_error = e
            except asyncio.TimeoutError as e:
                last_error = UpstreamError(
                    f"Gemini API timed out after {self.settings.call_timeout:g}s"
                )
                last_error.__cause__ = e
            except Exception as e:
                last_error = UpstreamError(f"Gemini API Error: {e}")
                last_error.__cause__ = e

            logger.warning(
                f"Layout generation attempt {attempt + 1}/{MAX_RETRIES} failed: {last_error}"
            )
            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep(RETRY_DELAY * (attempt + 1))

        raise last_error or UpstreamError("Gemini API failed after all retries")


gemini_service = GeminiService()
