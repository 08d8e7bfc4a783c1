import asyncio
import logging
from typing import Awaitable, Callable

from app.models.flyer import (
    ImageRef,
    Placeholder,
    ProgressEvent,
    ProgressSink,
    RunSummary,
    emit_progress,
    ignore_progress,
)
from app.services.errors import SegmentationError, UpstreamError

logger = logging.getLogger(__name__)

GenerateImage = Callable[[str, int, int], Awaitable[ImageRef]]
RemoveBackground = Callable[[ImageRef], Awaitable[ImageRef]]
# Called with (placeholder, stage, image) for every image produced along the way
ImageObserver = Callable[[Placeholder, str, ImageRef], None]


class ResolutionLoop:
    """
    Resolves image placeholders one at a time, in document order.

    A failed generation marks only that placeholder as failed. A failed
    background removal keeps the un-segmented image.
    """

    def __init__(
        self,
        generate_image: GenerateImage,
        remove_background: RemoveBackground,
        progress: ProgressSink = ignore_progress,
        timeout: float | None = None,
        on_image: ImageObserver | None = None,
    ) -> None:
        self._generate_image = generate_image
        self._remove_background = remove_background
        self._progress = progress
        self._timeout = timeout
        self._on_image = on_image

    async def resolve(self, placeholders: list[Placeholder]) -> RunSummary:
        """Drive every placeholder to a terminal state and return the counts."""
        summary = RunSummary(total=len(placeholders))

        for position, placeholder in enumerate(placeholders):
            self._emit(
                ProgressEvent(
                    stage="image",
                    status="started",
                    index=position,
                    total=summary.total,
                    message=f"Generating image {position + 1} of {summary.total}...",
                )
            )

            await self._resolve_one(placeholder, summary)

            if placeholder.failure_reason is not None:
                self._emit(
                    ProgressEvent(
                        stage="image",
                        status="failed",
                        index=position,
                        total=summary.total,
                        message=placeholder.failure_reason,
                    )
                )
            else:
                self._emit(
                    ProgressEvent(
                        stage="image",
                        status="resolved",
                        index=position,
                        total=summary.total,
                    )
                )

        logger.info(
            f"Resolved {summary.total} placeholders: {summary.completed} completed, "
            f"{summary.failed} failed, {summary.degraded} without background removal"
        )
        return summary

    async def _resolve_one(self, placeholder: Placeholder, summary: RunSummary) -> None:
        try:
            image = await self._call(
                self._generate_image(placeholder.prompt, placeholder.width, placeholder.height),
                error=UpstreamError,
                what="Image generation",
            )
        except Exception as exc:
            # Traceback only for unexpected errors
            logger.error(
                f"Image {placeholder.index} failed: {exc}",
                exc_info=None if isinstance(exc, UpstreamError) else exc,
            )
            placeholder.mark_failed(str(exc))
            summary.failed += 1
            return

        self._notify(placeholder, "generated", image)

        background_removed = False
        if placeholder.transparent:
            try:
                image = await self._call(
                    self._remove_background(image),
                    error=SegmentationError,
                    what="Background removal",
                )
                background_removed = True
            except Exception as exc:
                logger.warning(
                    f"Background removal failed for image {placeholder.index}, "
                    f"using original image: {exc}"
                )
                summary.degraded += 1
            else:
                self._notify(placeholder, "segmented", image)

        placeholder.mark_resolved(image, background_removed=background_removed)
        summary.completed += 1

    async def _call(
        self, call: Awaitable[ImageRef], error: type[Exception], what: str
    ) -> ImageRef:
        if self._timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise error(f"{what} timed out after {self._timeout:g}s") from exc

    def _emit(self, event: ProgressEvent) -> None:
        emit_progress(self._progress, event)

    def _notify(self, placeholder: Placeholder, stage: str, image: ImageRef) -> None:
        if self._on_image is None:
            return
        try:
            self._on_image(placeholder, stage, image)
        except Exception:
            logger.exception(f"Image observer failed for image {placeholder.index}")
