from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from loguru import logger

from upscaler.core.chunking import ChunkedImage
from upscaler.core.scaling import ProgressiveScaler
from upscaler.core.utils import image_processing


@dataclass(frozen=True)
class PreviewDescriptor:
    width: int
    height: int
    buffer: np.ndarray = field(compare=False, repr=False)
    source_width: int
    source_height: int
    # True when the preview was not derived from the full-resolution pixels
    approximate: bool = False

    @property
    def display_scale(self) -> float:
        """Ratio between the preview and the full-size image, for UI reporting."""
        return self.width / self.source_width


def preview_size(width: int, height: int, preview_bound: int) -> tuple[int, int]:
    """Fit ``width`` x ``height`` within ``preview_bound``, keeping the aspect ratio.

    The long edge becomes exactly ``preview_bound``. Images already within the bound are
    returned unchanged, never enlarged.
    """
    if max(width, height) <= preview_bound:
        return width, height

    preview_scale = preview_bound / max(width, height)
    if width >= height:
        return preview_bound, max(1, int(height * preview_scale + 0.5))
    return max(1, int(width * preview_scale + 0.5)), preview_bound


class PreviewGenerator:
    def __init__(self, preview_bound: int = 1024, scaler: Optional[ProgressiveScaler] = None):
        """
        Initializes the PreviewGenerator.

        Args:
            preview_bound: Largest edge of a preview in pixels.
            scaler: Scaler used to resize previews. Defaults to a LANCZOS `ProgressiveScaler`.
        """
        if not isinstance(preview_bound, int) or preview_bound <= 0:
            raise ValueError("preview_bound must be a positive integer.")
        self.preview_bound = preview_bound
        self.scaler = scaler or ProgressiveScaler()

    def build(self, image, source: Optional[np.ndarray] = None) -> PreviewDescriptor:
        """Build a preview of a direct buffer or of a chunked image.

        Args:
            image: Either a materialized RGBA8 buffer or a `ChunkedImage`.
            source: Original source image. Chunked previews are downscaled from it; defaults to
                the source kept by the chunked image.
        """
        if isinstance(image, ChunkedImage):
            return self.from_chunked(image, source)
        if image_processing.is_rgba8(image):
            return self.from_buffer(image)
        raise TypeError("Input must be an RGBA8 numpy array or a ChunkedImage.")

    def from_buffer(self, buffer: np.ndarray) -> PreviewDescriptor:
        """Downscale a materialized buffer in a single stage."""
        width, height = image_processing.dimensions(buffer)
        preview_w, preview_h = preview_size(width, height, self.preview_bound)

        if (preview_w, preview_h) == (width, height):
            pixels = buffer.copy()
        else:
            pixels = self.scaler.scale(buffer, preview_w, preview_h)

        return PreviewDescriptor(preview_w, preview_h, pixels, width, height)

    def from_chunked(
        self, image: ChunkedImage, source: Optional[np.ndarray] = None
    ) -> PreviewDescriptor:
        """Preview a chunked image from the original source instead of its tiles.

        The result approximates a downscale of the full-resolution output; tiles are never
        rendered just to be shrunk again. An image already within the bound is assembled
        untouched from its tiles.
        """
        preview_w, preview_h = preview_size(image.width, image.height, self.preview_bound)

        if (preview_w, preview_h) == (image.width, image.height):
            pixels = image.get_chunk(0, 0, image.width, image.height)
            return PreviewDescriptor(preview_w, preview_h, pixels, image.width, image.height)

        source = image.source if source is None else source
        pixels = self.scaler.scale(source, preview_w, preview_h)
        logger.info(
            f"Created preview {preview_w}x{preview_h} for {image.width}x{image.height} "
            "chunked image from source"
        )
        return PreviewDescriptor(
            preview_w, preview_h, pixels, image.width, image.height, approximate=True
        )
