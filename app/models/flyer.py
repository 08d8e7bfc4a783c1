from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Literal

from PIL import Image, UnidentifiedImageError

from app.services.errors import ValidationError

logger = logging.getLogger(__name__)

DATA_URI_PREFIX = "data:"


@dataclass(frozen=True, slots=True)
class ImageRef:
    """
    Encoded image bytes tagged with their MIME type.

    This is the handle passed between generation, background removal and the
    document writer, so images are only decoded where pixels are needed.
    """

    data: bytes
    mime_type: str

    @classmethod
    def from_bytes(cls, data: bytes) -> ImageRef:
        """Wrap encoded bytes, sniffing the MIME type from the image header."""
        if not data:
            raise ValidationError("Image data is empty")
        try:
            with Image.open(io.BytesIO(data)) as image:
                image_format = image.format
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
            raise ValidationError("Image data is not a recognised image format") from exc

        mime_type = Image.MIME.get(image_format or "", "application/octet-stream")
        return cls(data=data, mime_type=mime_type)

    @classmethod
    def from_base64(cls, payload: str) -> ImageRef:
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("Image payload is not valid base64") from exc
        return cls.from_bytes(data)

    @classmethod
    def from_data_uri(cls, uri: str) -> ImageRef:
        """
        Parse `data:image/...;base64,...` or a bare base64 payload.

        The declared MIME type is ignored; the bytes are sniffed instead.
        """
        uri = uri.strip()
        if uri.startswith(DATA_URI_PREFIX):
            header, _, payload = uri.partition(",")
            if not header.endswith(";base64"):
                raise ValidationError("Only base64 data URIs are supported")
            return cls.from_base64(payload)
        return cls.from_base64(uri)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


class ResolutionState(str, Enum):
    """Lifecycle of a single image placeholder."""

    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass(slots=True)
class Placeholder:
    """
    One `<img x-prompt=...>` slot in a generated layout.

    Everything except the resolution fields is fixed at scan time. The
    resolution fields move once from PENDING to RESOLVED or FAILED.
    """

    index: int
    prompt: str
    transparent: bool
    width: int
    height: int
    # Character span of the placeholder's start tag in the source markup.
    start: int = 0
    end: int = 0
    # Attributes of the start tag in source order, used when rewriting it.
    attrs: list[tuple[str, str | None]] = field(default_factory=list)
    self_closing: bool = False
    state: ResolutionState = ResolutionState.PENDING
    result: ImageRef | None = None
    failure_reason: str | None = None
    background_removed: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state is not ResolutionState.PENDING

    def mark_resolved(self, image: ImageRef, background_removed: bool = False) -> None:
        self._ensure_pending()
        self.state = ResolutionState.RESOLVED
        self.result = image
        self.background_removed = background_removed

    def mark_failed(self, reason: str) -> None:
        self._ensure_pending()
        self.state = ResolutionState.FAILED
        self.failure_reason = reason or "Image generation failed"

    def _ensure_pending(self) -> None:
        if self.is_terminal:
            raise RuntimeError(
                f"Placeholder {self.index} is already {self.state.value}"
            )


@dataclass(slots=True)
class RunSummary:
    """Aggregate counters for one resolution run."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    # Transparent placeholders resolved with the un-segmented image.
    degraded: int = 0


ProgressStage = Literal["layout", "image"]
ProgressStatus = Literal["started", "resolved", "failed", "completed"]


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    stage: ProgressStage
    status: ProgressStatus
    index: int | None = None
    total: int | None = None
    message: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"stage": self.stage, "status": self.status}
        if self.index is not None:
            data["index"] = self.index
        if self.total is not None:
            data["total"] = self.total
        if self.message is not None:
            data["message"] = self.message
        return data


ProgressSink = Callable[[ProgressEvent], None]


def ignore_progress(event: ProgressEvent) -> None:
    """Progress sink that drops every event."""


def emit_progress(sink: ProgressSink, event: ProgressEvent) -> None:
    """Deliver `event` to `sink`; a failing sink is logged, never raised."""
    try:
        sink(event)
    except Exception:
        logger.exception(f"Progress sink failed on {event.stage}/{event.status}; continuing")


@dataclass(slots=True)
class FlyerResult:
    """Outcome of one generation run: rendered markup plus its bookkeeping."""

    brief: str
    html: str
    summary: RunSummary
    placeholders: list[Placeholder] = field(default_factory=list)
