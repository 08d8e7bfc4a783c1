"""Shared pytest fixtures and in-memory fakes for the flyer services."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from app.config import Settings
from app.models.flyer import ImageRef, ProgressEvent
from app.services.errors import SegmentationError, UpstreamError


def make_png(width: int = 8, height: int = 8, color=(200, 30, 30, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_jpeg(width: int = 8, height: int = 8) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (10, 120, 240)).save(buffer, format="JPEG")
    return buffer.getvalue()


class FakeImageGenerator:
    """Returns a distinct image per call; fails on the configured call numbers."""

    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, int, int]] = []
        self.images: list[ImageRef] = []

    async def __call__(self, prompt: str, width: int, height: int) -> ImageRef:
        self.calls.append((prompt, width, height))
        call_number = len(self.calls)
        if call_number in self.fail_on:
            raise UpstreamError(f"Together AI Error: 500 - call {call_number}")
        image = ImageRef(
            data=make_png(color=(call_number, 0, 0, 255)), mime_type="image/png"
        )
        self.images.append(image)
        return image


class FakeBackgroundRemover:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[ImageRef] = []

    async def __call__(self, image: ImageRef) -> ImageRef:
        self.calls.append(image)
        if self.fail:
            raise SegmentationError("Background removal failed: model error")
        return ImageRef(data=image.data + b"-cutout", mime_type="image/png")


class FakeLayoutProducer:
    def __init__(self, markup: str = "", error: Exception | None = None) -> None:
        self.markup = markup
        self.error = error
        self.calls: list[str] = []

    async def __call__(self, brief: str) -> str:
        self.calls.append(brief)
        if self.error is not None:
            raise self.error
        return self.markup


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of(self, stage: str, status: str) -> list[ProgressEvent]:
        return [e for e in self.events if e.stage == stage and e.status == status]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        gemini_api_key="test-gemini-key",
        together_api_key="test-together-key",
        call_timeout=5.0,
    )


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def generator() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def remover() -> FakeBackgroundRemover:
    return FakeBackgroundRemover()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
