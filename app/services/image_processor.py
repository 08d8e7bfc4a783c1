import asyncio
import io
import logging
from typing import Any

import numpy as np
from PIL import Image
from rembg import new_session, remove
from scipy import ndimage

from app.config import Settings, get_settings
from app.models.flyer import ImageRef
from app.services.errors import SegmentationError

logger = logging.getLogger(__name__)

# Alpha value above which a matte pixel counts as foreground
ALPHA_THRESHOLD = 16

# Minimum size of connected foreground region to keep (filters stray specks)
MIN_REGION_SIZE = 200

# Largest hole inside the foreground that gets filled back in
MAX_HOLE_SIZE = 64


class ImageProcessor:
    """Background removal and alpha-matte cleanup for generated images."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._session: Any = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def session(self) -> Any:
        """rembg inference session, created on first use (downloads the model)."""
        if self._session is None:
            self._session = new_session(self.settings.rembg_model)
        return self._session

    async def remove_background(self, image: ImageRef) -> ImageRef:
        """
        Cut the foreground out of `image` and return it as an RGBA PNG.

        Segmentation runs in a worker thread, bounded by the configured
        timeout. Any failure is raised as SegmentationError.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.remove_background_sync, image),
                timeout=self.settings.call_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise SegmentationError(
                f"Background removal timed out after {self.settings.call_timeout:g}s"
            ) from exc

    def remove_background_sync(self, image: ImageRef) -> ImageRef:
        try:
            source = Image.open(io.BytesIO(image.data))
            source.load()
        except OSError as exc:
            raise SegmentationError(f"Cannot decode {image.mime_type} image") from exc

        try:
            cutout = remove(source.convert("RGBA"), session=self.session)
        except Exception as exc:
            raise SegmentationError(f"Background removal failed: {exc}") from exc

        cutout_array = np.array(cutout.convert("RGBA"))
        alpha = cutout_array[:, :, 3]
        foreground = self._clean_mask(alpha > ALPHA_THRESHOLD)

        if not np.any(foreground):
            raise SegmentationError("Background removal left no foreground")

        # Soft edges from rembg survive; filled pinholes become opaque
        cutout_array[:, :, 3] = np.where(
            foreground, np.where(alpha > ALPHA_THRESHOLD, alpha, 255), 0
        ).astype(np.uint8)

        buffer = io.BytesIO()
        Image.fromarray(cutout_array, "RGBA").save(buffer, format="PNG")
        return ImageRef(data=buffer.getvalue(), mime_type="image/png")

    def _clean_mask(self, mask: np.ndarray) -> np.ndarray:
        """
        Clean up the binary foreground mask.

        1. Remove small isolated regions (noise)
        2. Fill small holes
        """
        labeled, num_features = ndimage.label(mask)
        if num_features == 0:
            return mask

        sizes = ndimage.sum(mask, labeled, index=np.arange(1, num_features + 1))
        keep = np.zeros(num_features + 1, dtype=bool)
        keep[1:] = np.asarray(sizes) >= MIN_REGION_SIZE

        cleaned_mask = keep[labeled]

        # If every region was small, the image is a small sticker: keep it all
        if not np.any(cleaned_mask):
            cleaned_mask = mask.copy()

        holes = ndimage.binary_fill_holes(cleaned_mask) & ~cleaned_mask
        labeled_holes, num_holes = ndimage.label(holes)
        if num_holes:
            hole_sizes = ndimage.sum(holes, labeled_holes, index=np.arange(1, num_holes + 1))
            fill = np.zeros(num_holes + 1, dtype=bool)
            fill[1:] = np.asarray(hole_sizes) <= MAX_HOLE_SIZE
            cleaned_mask = cleaned_mask | fill[labeled_holes]

        return cleaned_mask


image_processor = ImageProcessor()
