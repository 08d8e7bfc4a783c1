import html
import logging
import re
from html.parser import HTMLParser

from app.models.flyer import Placeholder, ResolutionState
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)

PROMPT_ATTR = "x-prompt"
TRANSPARENT_ATTR = "transparent"
GENERATED_ATTR = "data-x-image-generated"
FAILED_ATTR = "data-x-image-failed"
FAILED_ALT = "Image generation failed"

# Dimension used when neither an attribute nor an inline style gives a size
DEFAULT_DIMENSION = 300

# Smallest size the image model accepts
MIN_DIMENSION = 64

_PIXEL_VALUE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:px)?\s*$", re.IGNORECASE)
_STYLE_DECLARATION = re.compile(r"(?:^|;)\s*(width|height)\s*:\s*([^;]+)", re.IGNORECASE)


def _parse_pixels(value: str | None) -> int | None:
    if value is None:
        return None
    match = _PIXEL_VALUE.match(value)
    if match is None:
        return None
    pixels = round(float(match.group(1)))
    return pixels if pixels > 0 else None


def _style_pixels(style: str | None) -> dict[str, int]:
    """Pixel sizes declared in an inline style, e.g. `width: 240px`."""
    sizes: dict[str, int] = {}
    if not style:
        return sizes
    for name, value in _STYLE_DECLARATION.findall(style):
        pixels = _parse_pixels(value)
        if pixels is not None:
            sizes[name.lower()] = pixels
    return sizes


def resolve_dimension(attribute: str | None, styled: int | None) -> int:
    """
    Pick one target dimension.

    The explicit attribute wins, then the laid-out size from the inline style,
    then the default. The result is never below MIN_DIMENSION.
    """
    value = _parse_pixels(attribute) or styled or DEFAULT_DIMENSION
    return max(value, MIN_DIMENSION)


class _PlaceholderParser(HTMLParser):
    """Collects `<img x-prompt>` start tags with their source spans."""

    def __init__(self, markup: str) -> None:
        super().__init__(convert_charrefs=True)
        self.placeholders: list[Placeholder] = []
        # HTMLParser counts lines by "\n" only
        self._line_offsets = [0] + [
            i + 1 for i, char in enumerate(markup) if char == "\n"
        ]

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self._collect(tag, attrs, self_closing=False)

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self._collect(tag, attrs, self_closing=True)

    def _collect(
        self, tag: str, attrs: list[tuple[str, str | None]], self_closing: bool
    ) -> None:
        if tag != "img":
            return

        # First occurrence wins for repeated attributes
        values: dict[str, str | None] = {}
        for name, value in attrs:
            values.setdefault(name, value)
        prompt = (values.get(PROMPT_ATTR) or "").strip()
        if not prompt:
            return

        lineno, column = self.getpos()
        start = self._line_offsets[lineno - 1] + column
        end = start + len(self.get_starttag_text() or "")

        styled = _style_pixels(values.get("style"))
        transparent = (values.get(TRANSPARENT_ATTR) or "").strip().lower() == "true"

        self.placeholders.append(
            Placeholder(
                index=len(self.placeholders),
                prompt=prompt,
                transparent=transparent,
                width=resolve_dimension(values.get("width"), styled.get("width")),
                height=resolve_dimension(values.get("height"), styled.get("height")),
                start=start,
                end=end,
                attrs=list(attrs),
                self_closing=self_closing,
            )
        )


class LayoutDocument:
    """
    A generated layout and the image placeholders found in it.

    The markup itself is never modified; `render` splices rewritten
    placeholder tags into a copy.
    """

    def __init__(self, markup: str, placeholders: list[Placeholder]) -> None:
        self.markup = markup
        self.placeholders = placeholders

    @classmethod
    def parse(cls, markup: str) -> "LayoutDocument":
        return cls(markup, scan_placeholders(markup))

    def render(self) -> str:
        """Return the markup with every terminal placeholder filled in."""
        parts: list[str] = []
        cursor = 0
        for placeholder in self.placeholders:
            if not placeholder.is_terminal:
                continue
            parts.append(self.markup[cursor:placeholder.start])
            parts.append(_render_tag(placeholder))
            cursor = placeholder.end
        parts.append(self.markup[cursor:])
        return "".join(parts)


def scan_placeholders(markup: str) -> list[Placeholder]:
    """Enumerate image placeholders in document order. Has no side effects."""
    parser = _PlaceholderParser(markup)
    try:
        parser.feed(markup)
        parser.close()
    except Exception as exc:
        logger.error(f"Failed to parse layout markup: {exc}")
        raise UpstreamError("Layout markup could not be parsed") from exc
    return parser.placeholders


def _render_tag(placeholder: Placeholder) -> str:
    if placeholder.state is ResolutionState.RESOLVED and placeholder.result is not None:
        overrides = {
            "src": placeholder.result.to_data_uri(),
            GENERATED_ATTR: "1",
        }
    else:
        overrides = {
            "alt": FAILED_ALT,
            FAILED_ATTR: "1",
        }

    attrs: list[tuple[str, str | None]] = []
    for name, value in placeholder.attrs:
        if name in overrides:
            value = overrides.pop(name)
        attrs.append((name, value))
    attrs.extend(overrides.items())

    rendered = []
    for name, value in attrs:
        if value is None:
            rendered.append(name)
        else:
            rendered.append(f'{name}="{html.escape(value, quote=True)}"')

    closing = " />" if placeholder.self_closing else ">"
    return f"<img {' '.join(rendered)}{closing}"
