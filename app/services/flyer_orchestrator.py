import logging
from typing import Awaitable, Callable

from app.config import Settings, get_settings
from app.models.flyer import (
    FlyerResult,
    ProgressEvent,
    ProgressSink,
    emit_progress,
    ignore_progress,
)
from app.services.debug_saver import DebugSaver
from app.services.errors import ValidationError
from app.services.gemini_service import gemini_service
from app.services.image_generator import image_generator
from app.services.image_processor import image_processor
from app.services.layout_document import LayoutDocument
from app.services.resolution_loop import GenerateImage, RemoveBackground, ResolutionLoop

logger = logging.getLogger(__name__)

GenerateLayout = Callable[[str], Awaitable[str]]


class FlyerOrchestrator:
    """Runs one brief through layout generation and image resolution."""

    def __init__(
        self,
        generate_layout: GenerateLayout,
        generate_image: GenerateImage,
        remove_background: RemoveBackground,
        settings: Settings | None = None,
    ) -> None:
        self._generate_layout = generate_layout
        self._generate_image = generate_image
        self._remove_background = remove_background
        self._settings = settings

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    async def generate_flyer(
        self, brief: str, progress: ProgressSink = ignore_progress
    ) -> FlyerResult:
        """
        Generate a complete flyer from a natural-language brief.

        Process flow:
        1. Validate the brief
        2. Ask the layout model for markup with `<img x-prompt>` placeholders
        3. Scan the markup for placeholders in document order
        4. Resolve each placeholder: generate, optionally remove background
        5. Render the markup with the resolved images

        Errors from the layout model abort the run; errors on a single image
        only mark that image as failed.
        """
        brief = (brief or "").strip()
        if not brief:
            raise ValidationError("Please enter your requirements first.")

        debug = self._debug_saver(brief)
        debug = self._save_debug(debug, DebugSaver.save_brief, brief)

        emit_progress(
            progress,
            ProgressEvent(
                stage="layout", status="started", message="Generating layout with Gemini..."
            ),
        )
        try:
            markup = await self._generate_layout(brief)
        except Exception:
            logger.exception("Layout generation failed")
            raise
        debug = self._save_debug(debug, DebugSaver.save_layout, markup)

        document = LayoutDocument.parse(markup)
        total = len(document.placeholders)
        emit_progress(
            progress,
            ProgressEvent(
                stage="layout",
                status="completed",
                total=total,
                message=f"Generating {total} images..." if total else "No images to generate",
            ),
        )
        logger.info(f"Layout ready with {total} image placeholders")

        loop = ResolutionLoop(
            generate_image=self._generate_image,
            remove_background=self._remove_background,
            progress=progress,
            on_image=debug.save_image if debug else None,
        )
        summary = await loop.resolve(document.placeholders)

        html = document.render()
        self._save_debug(debug, DebugSaver.save_final_result, html, summary, document.placeholders)

        return FlyerResult(
            brief=brief,
            html=html,
            summary=summary,
            placeholders=document.placeholders,
        )

    def _debug_saver(self, brief: str) -> DebugSaver | None:
        if self.settings.debug_dir is None:
            return None
        try:
            return DebugSaver(self.settings.debug_dir, brief)
        except OSError:
            logger.exception(f"Cannot create debug session in {self.settings.debug_dir}")
            return None

    @staticmethod
    def _save_debug(debug: DebugSaver | None, save, *args) -> DebugSaver | None:
        """Run one debug save; on failure, log it and stop saving for this run."""
        if debug is None:
            return None
        try:
            save(debug, *args)
        except Exception:
            logger.exception(f"Debug save {save.__name__} failed; disabling debug output")
            return None
        return debug


flyer_orchestrator = FlyerOrchestrator(
    generate_layout=gemini_service.generate_layout,
    generate_image=image_generator.generate_image,
    remove_background=image_processor.remove_background,
)
