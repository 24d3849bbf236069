import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
from loguru import logger

from upscaler.core.scaling import ProgressiveScaler
from upscaler.core.utils import errors, image_processing

from ._tiling import Tile, TileGrid


@dataclass
class ChunkStats:
    materializations: int = 0
    cache_hits: int = 0
    evictions: int = 0


class ChunkedImage:
    """
    Logical image too large to materialize in a single buffer.

    The image is described by its dimensions and a grid of non-overlapping tiles. Tiles either
    own their pixels (eager construction) or carry a recipe that regenerates them from the
    source image on demand (lazy construction). Sub-regions are assembled with `get_chunk`
    without ever allocating a buffer of the full logical size.

    Thread Safety:
        Lazy tiles are materialized at most once while cached: a single lock guards the cache
        dict and a per-tile lock makes concurrent requesters of the same tile wait for the
        first one instead of rendering it again.
    """

    def __init__(
        self,
        grid: TileGrid,
        source: np.ndarray,
        scaler: ProgressiveScaler,
        exceeds_limits: bool = True,
        cache_limit: Optional[int] = None,
    ):
        """
        Args:
            grid: Tile layout of the logical image.
            source: Source image used to render lazy tiles. A read-only copy is kept.
            scaler: Scaler used to render lazy tiles.
            exceeds_limits: Whether the logical size exceeds the surface limits.
            cache_limit: Maximum number of lazily rendered tiles kept in memory. Least recently
                used tiles are evicted beyond it and rendered again when requested. Defaults
                to None (unbounded).
        """
        if cache_limit is not None and cache_limit <= 0:
            raise ValueError("cache_limit must be a positive integer.")

        self._grid = grid
        self._source = np.array(source, dtype=np.uint8, copy=True)
        self._source.setflags(write=False)
        self._scaler = scaler
        self._exceeds_limits = exceeds_limits
        self._cache_limit = cache_limit

        self._cache: OrderedDict = OrderedDict()
        self._lock = threading.Lock()
        self._tile_locks: dict[int, threading.Lock] = {}
        self._stats = ChunkStats()

    @property
    def width(self) -> int:
        return self._grid.width

    @property
    def height(self) -> int:
        return self._grid.height

    @property
    def tiles(self) -> tuple[Tile, ...]:
        return self._grid.tiles

    @property
    def grid(self) -> TileGrid:
        return self._grid

    @property
    def exceeds_limits(self) -> bool:
        return self._exceeds_limits

    @property
    def source(self) -> np.ndarray:
        return self._source

    @property
    def stats(self) -> ChunkStats:
        with self._lock:
            return ChunkStats(**vars(self._stats))

    def tile_at(self, x: int, y: int) -> Optional[Tile]:
        return self._grid.tile_at(x, y)

    def tiles_in(self, x: int, y: int, width: int, height: int) -> list[Tile]:
        return self._grid.tiles_in(x, y, width, height)

    def is_materialized(self, index: int) -> bool:
        if self._grid.tiles[index].is_materialized:
            return True
        with self._lock:
            return index in self._cache

    def materialize_tile(self, index: int) -> np.ndarray:
        """Return the pixels of a tile, rendering and caching them on first use.

        The returned buffer is read-only.
        """
        tile = self._grid.tiles[index]
        if tile.buffer is not None:
            return tile.buffer

        cached = self._cache_lookup(index)
        if cached is not None:
            return cached

        with self._lock:
            tile_lock = self._tile_locks.setdefault(index, threading.Lock())

        with tile_lock:
            # Another thread may have rendered the tile while we waited
            cached = self._cache_lookup(index)
            if cached is not None:
                return cached

            logger.debug(
                f"Materializing tile {index} at ({tile.origin_x}, {tile.origin_y}) "
                f"{tile.width}x{tile.height}"
            )
            pixels = tile.render(self._source, self._scaler)
            pixels.setflags(write=False)

            with self._lock:
                self._cache[index] = pixels
                self._stats.materializations += 1
                self._evict_locked()
            return pixels

    def get_chunk(self, x: int, y: int, width: int, height: int) -> np.ndarray:
        """Assemble the region ``[x, x + width) x [y, y + height)`` of the logical image.

        The region may extend past the image or lie fully outside it: the result always has
        the requested size and pixels outside the image are left transparent (zero).

        Raises:
            RegionOutOfRangeError: If ``width`` or ``height`` is not positive.
        """
        if width <= 0 or height <= 0:
            raise errors.RegionOutOfRangeError(
                f"Chunk size must be positive, got {width}x{height}."
            )

        chunk = image_processing.allocate(width, height)
        for tile in self.tiles_in(x, y, width, height):
            pixels = self.materialize_tile(tile.index)
            x0, y0 = max(x, tile.origin_x), max(y, tile.origin_y)
            x1, y1 = min(x + width, tile.right), min(y + height, tile.bottom)
            chunk[y0 - y : y1 - y, x0 - x : x1 - x] = pixels[
                y0 - tile.origin_y : y1 - tile.origin_y,
                x0 - tile.origin_x : x1 - tile.origin_x,
            ]
        return chunk

    def iter_chunks(
        self, chunk_width: int, chunk_height: int
    ) -> Iterator[tuple[int, int, np.ndarray]]:
        """Yield ``(x, y, chunk)`` windows covering the image in row-major order.

        Chunks on the right and bottom edges are clipped to the image.
        """
        if chunk_width <= 0 or chunk_height <= 0:
            raise errors.RegionOutOfRangeError(
                f"Chunk size must be positive, got {chunk_width}x{chunk_height}."
            )
        for y in range(0, self.height, chunk_height):
            for x in range(0, self.width, chunk_width):
                yield x, y, self.get_chunk(
                    x, y, min(chunk_width, self.width - x), min(chunk_height, self.height - y)
                )

    def release(self) -> int:
        """Drop every lazily rendered tile from memory. Returns the number of tiles dropped."""
        with self._lock:
            released = len(self._cache)
            self._cache.clear()
        if released:
            logger.debug(f"Released {released} cached tiles")
        return released

    def _cache_lookup(self, index: int) -> Optional[np.ndarray]:
        with self._lock:
            cached = self._cache.get(index)
            if cached is not None:
                self._cache.move_to_end(index)
                self._stats.cache_hits += 1
            return cached

    def _evict_locked(self) -> None:
        if self._cache_limit is None:
            return
        while len(self._cache) > self._cache_limit:
            evicted, _ = self._cache.popitem(last=False)
            self._stats.evictions += 1
            logger.debug(f"Evicted tile {evicted} from chunk cache")

    def __repr__(self):
        return (
            f"ChunkedImage({self.width}x{self.height}, tiles={len(self.tiles)}, "
            f"exceeds_limits={self.exceeds_limits})"
        )
