from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Callable, Literal, Optional

import numpy as np
from loguru import logger

from upscaler.core.cancellation import CancellationToken
from upscaler.core.scaling import ProgressiveScaler
from upscaler.core.surface_limits import SurfaceLimits
from upscaler.core.utils import image_processing

from ._chunked_image import ChunkedImage
from ._tiling import TileGrid, plan_tiles

TileProgressCallback = Callable[[int, int], None]

ChunkStrategy = Literal["lazy", "eager"]
CHUNK_STRATEGIES = ("lazy", "eager")

# Current and next stage buffers are alive while a tile renders
_BUFFERS_PER_TILE = 2


class ChunkedImageBuilder:
    def __init__(
        self,
        scaler: ProgressiveScaler,
        limits: SurfaceLimits,
        strategy: ChunkStrategy = "lazy",
        tile_size: int = 2048,
        overlap: int = 64,
        max_workers: int = 4,
        memory_ceiling_mb: int = 1024,
        cache_limit: Optional[int] = None,
    ):
        """Builds `ChunkedImage` instances for outputs above the surface limits.

        Args:
            scaler: Scaler used to render every tile.
            limits: Surface limits each tile must respect.
            strategy: "eager" renders every tile during `build` (tile at source, then scale);
                "lazy" only stores tile recipes and renders tiles on `get_chunk`. Defaults to
                "lazy".
            tile_size: Preferred output tile edge in pixels. Defaults to 2048.
            overlap: Context margin in output pixels around each tile. Defaults to 64.
            max_workers: Upper bound of threads rendering tiles in eager mode. Defaults to 4.
            memory_ceiling_mb: Memory allowed for tiles being rendered concurrently. Lowers the
                effective worker count when tiles are large. Defaults to 1024.
            cache_limit: Passed to `ChunkedImage`. Defaults to None.
        """
        if strategy not in CHUNK_STRATEGIES:
            raise ValueError(f"strategy must be one of {CHUNK_STRATEGIES}, got {strategy!r}.")
        if max_workers <= 0:
            raise ValueError("max_workers must be a positive integer.")
        if memory_ceiling_mb <= 0:
            raise ValueError("memory_ceiling_mb must be a positive integer.")

        self.scaler = scaler
        self.limits = limits
        self.strategy = strategy
        self.tile_size = tile_size
        self.overlap = overlap
        self.max_workers = max_workers
        self.memory_ceiling_mb = memory_ceiling_mb
        self.cache_limit = cache_limit

    def build(
        self,
        source: np.ndarray,
        target_width: int,
        target_height: int,
        on_progress: Optional[TileProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ChunkedImage:
        """Describe the source scaled to ``target_width`` x ``target_height`` as tiles.

        Args:
            source: RGBA8 source buffer.
            target_width: Logical output width.
            target_height: Logical output height.
            on_progress: Called with ``(tiles_done, total_tiles)``; from worker threads and
                possibly out of order in eager mode.
            cancel_token: Checked between tiles.
        """
        source_width, source_height = image_processing.dimensions(source)
        grid = plan_tiles(
            source_width,
            source_height,
            target_width,
            target_height,
            self.tile_size,
            self.overlap,
            self.limits,
        )
        logger.info(
            f"Tile grid for {target_width}x{target_height}: {grid.columns}x{grid.rows} = "
            f"{len(grid.tiles)} tiles ({self.strategy})"
        )

        if self.strategy == "eager":
            grid = self._render_all(source, grid, on_progress, cancel_token)
        else:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled("before tiling")
            if on_progress is not None:
                on_progress(len(grid.tiles), len(grid.tiles))

        return ChunkedImage(
            grid,
            source,
            self.scaler,
            exceeds_limits=self.limits.exceeds_limits(target_width, target_height),
            cache_limit=self.cache_limit,
        )

    def worker_count(self, grid: TileGrid) -> int:
        peak_tile_bytes = (
            image_processing.buffer_nbytes(grid.peak_tile_pixels, 1) * _BUFFERS_PER_TILE
        )
        by_memory = (self.memory_ceiling_mb * 1024 * 1024) // max(1, peak_tile_bytes)
        return max(1, min(self.max_workers, by_memory, len(grid.tiles)))

    def _render_all(
        self,
        source: np.ndarray,
        grid: TileGrid,
        on_progress: Optional[TileProgressCallback],
        cancel_token: Optional[CancellationToken],
    ) -> TileGrid:
        total = len(grid.tiles)
        workers = self.worker_count(grid)
        logger.info(f"Rendering {total} tiles with {workers} workers")

        buffers: dict[int, np.ndarray] = {}

        def render(tile):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(f"before tile {tile.index}")
            pixels = tile.render(source, self.scaler, cancel_token)
            pixels.setflags(write=False)
            return tile.index, pixels

        with ThreadPoolExecutor(max_workers=workers) as executor:
            pending = {executor.submit(render, tile) for tile in grid.tiles}
            while pending:
                done, pending = wait(pending, return_when=FIRST_EXCEPTION)
                for future in done:
                    error = future.exception()
                    if error is not None:
                        for remaining in pending:
                            remaining.cancel()
                        buffers.clear()
                        raise error
                    index, pixels = future.result()
                    buffers[index] = pixels
                    logger.debug(f"Tile {index + 1}/{total} rendered")
                    if on_progress is not None:
                        on_progress(len(buffers), total)

        return grid.with_buffers(buffers)
