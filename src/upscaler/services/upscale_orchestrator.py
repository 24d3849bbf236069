"""Entry point of the upscaling engine."""

import math
import numbers
import time
from typing import Callable, Optional

import numpy as np
from loguru import logger

from upscaler.core.cancellation import CancellationToken
from upscaler.core.chunking import ChunkedImageBuilder
from upscaler.core.config import settings
from upscaler.core.preview import PreviewGenerator
from upscaler.core.result import Chunked, Direct, UpscaleOutput, UpscaleResult
from upscaler.core.scaling import ProgressiveScaler
from upscaler.core.surface_limits import SurfaceLimits
from upscaler.core.utils import errors, image_processing

ProgressCallback = Callable[[float, str], None]

# Share of the progress bar used by scaling or tiling; the preview takes the rest
_SCALING_PROGRESS = 80.0


class UpscaleOrchestrator:
    def __init__(
        self,
        limits: Optional[SurfaceLimits] = None,
        preview_bound: Optional[int] = None,
        chunk_strategy: Optional[str] = None,
        tile_size: Optional[int] = None,
        tile_overlap: Optional[int] = None,
        max_workers: Optional[int] = None,
        tile_memory_ceiling_mb: Optional[int] = None,
        tile_cache_limit: Optional[int] = None,
        scaler: Optional[ProgressiveScaler] = None,
    ):
        """Decides between direct and chunked output and assembles `UpscaleResult` objects.

        Every argument defaults to the corresponding value of `settings`.

        Args:
            limits: Surface limits deciding between direct and chunked output.
            preview_bound: Largest preview edge in pixels.
            chunk_strategy: "lazy" or "eager" construction of chunked outputs.
            tile_size: Preferred output tile edge in pixels.
            tile_overlap: Context margin in output pixels around each tile.
            max_workers: Upper bound of threads rendering tiles.
            tile_memory_ceiling_mb: Memory allowed for tiles rendered concurrently.
            tile_cache_limit: Maximum number of lazily rendered tiles kept per image.
            scaler: Scaler used for every resampling operation.
        """
        self.limits = limits or SurfaceLimits()
        self.scaler = scaler or ProgressiveScaler()
        self.preview_generator = PreviewGenerator(
            preview_bound or settings.PREVIEW_BOUND, self.scaler
        )
        self.chunk_builder = ChunkedImageBuilder(
            self.scaler,
            self.limits,
            strategy=chunk_strategy or settings.CHUNK_STRATEGY,
            tile_size=tile_size or settings.TILE_SIZE,
            overlap=settings.TILE_OVERLAP if tile_overlap is None else tile_overlap,
            max_workers=max_workers or settings.MAX_WORKERS,
            memory_ceiling_mb=tile_memory_ceiling_mb or settings.TILE_MEMORY_CEILING_MB,
            cache_limit=settings.TILE_CACHE_LIMIT
            if tile_cache_limit is None
            else tile_cache_limit,
        )

    def process(
        self,
        source: np.ndarray,
        scale_factor: float,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> UpscaleResult:
        """Upscale a source image by ``scale_factor``.

        Outputs within the surface limits are materialized (`Direct`). Larger outputs, and
        outputs whose direct scaling runs out of memory, are returned as a `ChunkedImage`
        (`Chunked`). A bounded preview is attached in both cases.

        Args:
            source: RGBA8 buffer of shape (H, W, 4).
            scale_factor: Positive, finite scale factor.
            on_progress: Called with ``(percent, message)``. Advisory only.
            cancel_token: Checked between stages and tiles.

        Raises:
            InvalidInputError: If the source or the scale factor is unusable.
            ProcessingFailedError: If the chunked strategy fails too, or the preview cannot
                be allocated.
            ProcessingCancelledError: If cancellation was requested.
        """
        start_time = time.perf_counter()
        _validate_input(source, scale_factor)

        source_w, source_h = image_processing.dimensions(source)
        target_w = _scaled_dimension(source_w, scale_factor)
        target_h = _scaled_dimension(source_h, scale_factor)
        logger.info(
            f"Upscaling {source_w}x{source_h} -> {target_w}x{target_h} "
            f"({scale_factor}x, {target_w * target_h / 1_000_000:.1f}MP)"
        )
        _report(on_progress, 0.0, "Starting progressive upscaling...")

        if not self.limits.exceeds_limits(target_w, target_h):
            try:
                output = self._process_direct(
                    source, target_w, target_h, on_progress, cancel_token
                )
            except errors.AllocationError as e:
                logger.warning(f"Direct scaling failed ({e}), falling back to chunked output")
                output = self._process_chunked(
                    source, target_w, target_h, on_progress, cancel_token
                )
        else:
            logger.info(
                f"Output {target_w}x{target_h} exceeds surface limits, using chunked output"
            )
            output = self._process_chunked(source, target_w, target_h, on_progress, cancel_token)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled("before preview")
        _report(on_progress, _SCALING_PROGRESS, "Optimizing result for display...")
        try:
            if isinstance(output, Chunked):
                preview = self.preview_generator.from_chunked(output.image, source)
            else:
                preview = self.preview_generator.from_buffer(output.buffer)
        except (errors.AllocationError, MemoryError) as e:
            raise errors.ProcessingFailedError(
                f"Could not build the preview of the {target_w}x{target_h} output."
            ) from e

        processing_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Upscaling complete: {type(output).__name__.lower()} "
            f"{target_w}x{target_h} in {processing_time_ms:.0f}ms"
        )
        _report(on_progress, 100.0, f"Complete! Processed in {processing_time_ms:.0f}ms")

        return UpscaleResult(
            output=output,
            requested_width=target_w,
            requested_height=target_h,
            scale_factor=scale_factor,
            processing_time_ms=processing_time_ms,
            preview=preview,
        )

    def _process_direct(
        self,
        source: np.ndarray,
        target_w: int,
        target_h: int,
        on_progress: Optional[ProgressCallback],
        cancel_token: Optional[CancellationToken],
    ) -> UpscaleOutput:
        source_w, source_h = image_processing.dimensions(source)
        plan = self.scaler.plan(source_w, source_h, target_w, target_h)
        logger.info(f"Direct scaling in {len(plan)} stages")

        def stage_progress(fraction: float, stage_index: int, total_stages: int) -> None:
            _report(
                on_progress,
                fraction * _SCALING_PROGRESS,
                f"Progressive step {stage_index + 1}/{total_stages}",
            )

        buffer = self.scaler.run(
            source,
            plan,
            stage_progress,
            cancel_token=cancel_token,
            target=(target_w, target_h),
        )
        return Direct(buffer)

    def _process_chunked(
        self,
        source: np.ndarray,
        target_w: int,
        target_h: int,
        on_progress: Optional[ProgressCallback],
        cancel_token: Optional[CancellationToken],
    ) -> UpscaleOutput:
        def tile_progress(tiles_done: int, total_tiles: int) -> None:
            _report(
                on_progress,
                tiles_done / total_tiles * _SCALING_PROGRESS,
                f"Tile {tiles_done}/{total_tiles}",
            )

        try:
            image = self.chunk_builder.build(
                source, target_w, target_h, tile_progress, cancel_token
            )
        except (errors.AllocationError, MemoryError) as e:
            raise errors.ProcessingFailedError(
                f"Could not process {target_w}x{target_h} output, "
                "try reducing the scale factor."
            ) from e
        return Chunked(image)


def upscale_image(
    image: np.ndarray,
    scale_factor: float,
    on_progress: Optional[ProgressCallback] = None,
) -> UpscaleResult:
    """Upscale an image with the configured defaults."""
    return UpscaleOrchestrator().process(image, scale_factor, on_progress)


def _validate_input(source, scale_factor) -> None:
    if not image_processing.is_rgba8(source):
        raise errors.InvalidInputError(
            "Source should be a non-empty uint8 numpy array of shape (H, W, 4)."
        )
    if (
        isinstance(scale_factor, bool)
        or not isinstance(scale_factor, numbers.Real)
        or not math.isfinite(scale_factor)
        or scale_factor <= 0
    ):
        raise errors.InvalidInputError(
            f"Scale factor must be a positive finite number, got {scale_factor!r}."
        )


def _scaled_dimension(size: int, scale_factor: float) -> int:
    # Half-up rounding, clamped to at least one pixel
    return max(1, int(math.floor(size * scale_factor + 0.5)))


def _report(on_progress: Optional[ProgressCallback], percent: float, message: str) -> None:
    if on_progress is not None:
        on_progress(percent, message)
