"""Partition of a scaled output into non-overlapping tiles.

The grid is laid out on the source image: source columns and rows of ``step`` pixels map to
output columns and rows whose boundaries are the source boundaries scaled and rounded half-up.
The last boundary is always the full output size, so the tiles exactly cover the logical image
for any (also fractional) scale factor.
"""

import math
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from upscaler.core.cancellation import CancellationToken
from upscaler.core.scaling import ProgressiveScaler
from upscaler.core.surface_limits import SurfaceLimits
from upscaler.core.utils import errors, image_processing


@dataclass(frozen=True)
class TileRecipe:
    """Everything needed to regenerate a tile from the source image.

    ``source_box`` is the source rectangle ``(x0, y0, x1, y1)`` including the context margin.
    It is scaled to ``scaled_width`` x ``scaled_height`` and the tile is cropped out at
    ``(crop_x, crop_y)``.
    """

    source_box: tuple[int, int, int, int]
    scaled_width: int
    scaled_height: int
    crop_x: int
    crop_y: int

    @property
    def peak_pixels(self) -> int:
        return self.scaled_width * self.scaled_height


@dataclass(frozen=True)
class Tile:
    index: int
    origin_x: int
    origin_y: int
    width: int
    height: int
    recipe: TileRecipe
    buffer: Optional[np.ndarray] = field(default=None, compare=False, repr=False)

    @property
    def right(self) -> int:
        return self.origin_x + self.width

    @property
    def bottom(self) -> int:
        return self.origin_y + self.height

    @property
    def is_materialized(self) -> bool:
        return self.buffer is not None

    def intersects(self, x: int, y: int, width: int, height: int) -> bool:
        return not (
            self.right <= x
            or self.origin_x >= x + width
            or self.bottom <= y
            or self.origin_y >= y + height
        )

    def render(
        self,
        source: np.ndarray,
        scaler: ProgressiveScaler,
        cancel_token: Optional[CancellationToken] = None,
    ) -> np.ndarray:
        """Regenerate the tile pixels from the source image."""
        x0, y0, x1, y1 = self.recipe.source_box
        region = image_processing.crop(source, x0, y0, x1 - x0, y1 - y0)
        scaled = scaler.scale(
            region,
            self.recipe.scaled_width,
            self.recipe.scaled_height,
            cancel_token=cancel_token,
        )
        return image_processing.crop(
            scaled, self.recipe.crop_x, self.recipe.crop_y, self.width, self.height
        )


@dataclass(frozen=True)
class TileGrid:
    width: int
    height: int
    x_edges: tuple[int, ...]
    y_edges: tuple[int, ...]
    tiles: tuple[Tile, ...]

    @property
    def columns(self) -> int:
        return len(self.x_edges) - 1

    @property
    def rows(self) -> int:
        return len(self.y_edges) - 1

    @property
    def peak_tile_pixels(self) -> int:
        return max(tile.recipe.peak_pixels for tile in self.tiles)

    def fits(self, limits: SurfaceLimits) -> bool:
        """Whether every tile, scaled with its context padding, fits within ``limits``."""
        return all(
            tile.recipe.scaled_width <= limits.max_dimension
            and tile.recipe.scaled_height <= limits.max_dimension
            and tile.recipe.peak_pixels <= limits.max_safe_pixel_count
            for tile in self.tiles
        )

    def tile_at(self, x: int, y: int) -> Optional[Tile]:
        if not (0 <= x < self.width and 0 <= y < self.height):
            return None
        column = bisect_right(self.x_edges, x) - 1
        row = bisect_right(self.y_edges, y) - 1
        return self.tiles[row * self.columns + column]

    def tiles_in(self, x: int, y: int, width: int, height: int) -> list[Tile]:
        """Tiles intersecting ``[x, x + width) x [y, y + height)``, in row-major order."""
        x0, y0 = max(x, 0), max(y, 0)
        x1, y1 = min(x + width, self.width), min(y + height, self.height)
        if x0 >= x1 or y0 >= y1:
            return []

        first_column = bisect_right(self.x_edges, x0) - 1
        last_column = bisect_right(self.x_edges, x1 - 1) - 1
        first_row = bisect_right(self.y_edges, y0) - 1
        last_row = bisect_right(self.y_edges, y1 - 1) - 1
        return [
            self.tiles[row * self.columns + column]
            for row in range(first_row, last_row + 1)
            for column in range(first_column, last_column + 1)
        ]

    def with_buffers(self, buffers: dict[int, np.ndarray]) -> "TileGrid":
        tiles = tuple(
            Tile(
                tile.index,
                tile.origin_x,
                tile.origin_y,
                tile.width,
                tile.height,
                tile.recipe,
                buffers.get(tile.index, tile.buffer),
            )
            for tile in self.tiles
        )
        return TileGrid(self.width, self.height, self.x_edges, self.y_edges, tiles)


def to_output_coordinate(source_coordinate: int, source_size: int, output_size: int) -> int:
    """Map a source boundary to the output, rounding half-up with integer arithmetic."""
    return (2 * source_coordinate * output_size + source_size) // (2 * source_size)


def source_padding(overlap: int, scale: float) -> int:
    """Source pixels covering ``overlap`` output pixels of context at ``scale``."""
    if overlap == 0:
        return 0
    return max(1, math.ceil(overlap / scale))


def plan_tiles(
    source_width: int,
    source_height: int,
    target_width: int,
    target_height: int,
    tile_size: int,
    overlap: int,
    limits: SurfaceLimits,
) -> TileGrid:
    """Lay out the tile grid for scaling a source to ``target_width`` x ``target_height``.

    The grid is shrunk until every padded tile, once scaled, fits within ``limits``: first the
    tile size is halved down to one source pixel per tile, then the context padding is halved
    down to nothing.

    Args:
        source_width: Source width.
        source_height: Source height.
        target_width: Logical output width.
        target_height: Logical output height.
        tile_size: Preferred edge of an output tile.
        overlap: Output pixels of context rendered around each tile and cropped away
            afterwards, so that resampling filters see across tile borders.
        limits: Surface limits that every rendered tile must respect.

    Returns:
        The tile grid, tiles in row-major order.

    Raises:
        AllocationError: If a single source pixel scaled to the target exceeds ``limits``.
    """
    if tile_size <= 0:
        raise ValueError("tile_size must be a positive integer.")
    if overlap < 0:
        raise ValueError("overlap must be zero or a positive integer.")

    scale_x = target_width / source_width
    scale_y = target_height / source_height
    padding_x = source_padding(overlap, scale_x)
    padding_y = source_padding(overlap, scale_y)

    while True:
        step_x = max(1, int(tile_size / scale_x))
        step_y = max(1, int(tile_size / scale_y))
        grid = _layout(
            source_width,
            source_height,
            target_width,
            target_height,
            step_x,
            step_y,
            padding_x,
            padding_y,
        )
        if grid.fits(limits):
            return grid
        if step_x > 1 or step_y > 1:
            tile_size //= 2
        elif padding_x or padding_y:
            padding_x //= 2
            padding_y //= 2
        else:
            raise errors.AllocationError(
                f"A single source pixel scaled to {target_width}x{target_height} exceeds the "
                f"surface limits ({limits.max_dimension}px, {limits.max_safe_pixel_count} pixels)."
            )


def _layout(
    source_width: int,
    source_height: int,
    target_width: int,
    target_height: int,
    step_x: int,
    step_y: int,
    padding_x: int,
    padding_y: int,
) -> TileGrid:
    x_axis = _axis_edges(source_width, target_width, step_x)
    y_axis = _axis_edges(source_height, target_height, step_y)

    tiles = []
    for (sy0, oy0), (sy1, oy1) in zip(y_axis, y_axis[1:]):
        py0, py1, scaled_y0, scaled_h = _padded_span(
            sy0, sy1, padding_y, source_height, target_height
        )
        for (sx0, ox0), (sx1, ox1) in zip(x_axis, x_axis[1:]):
            px0, px1, scaled_x0, scaled_w = _padded_span(
                sx0, sx1, padding_x, source_width, target_width
            )
            recipe = TileRecipe(
                source_box=(px0, py0, px1, py1),
                scaled_width=scaled_w,
                scaled_height=scaled_h,
                crop_x=ox0 - scaled_x0,
                crop_y=oy0 - scaled_y0,
            )
            tiles.append(Tile(len(tiles), ox0, oy0, ox1 - ox0, oy1 - oy0, recipe))

    return TileGrid(
        target_width,
        target_height,
        tuple(edge for _, edge in x_axis),
        tuple(edge for _, edge in y_axis),
        tuple(tiles),
    )


def _axis_edges(source_size: int, output_size: int, step: int) -> list[tuple[int, int]]:
    # (source boundary, output boundary) pairs with strictly increasing output boundaries
    edges = [(0, 0)]
    for source_edge in list(range(step, source_size, step)) + [source_size]:
        output_edge = to_output_coordinate(source_edge, source_size, output_size)
        if output_edge > edges[-1][1]:
            edges.append((source_edge, output_edge))
        elif source_edge == source_size:
            edges[-1] = (source_size, output_size)
    return edges


def _padded_span(
    start: int, end: int, padding: int, source_size: int, output_size: int
) -> tuple[int, int, int, int]:
    padded_start = max(0, start - padding)
    padded_end = min(source_size, end + padding)
    scaled_start = to_output_coordinate(padded_start, source_size, output_size)
    scaled_end = to_output_coordinate(padded_end, source_size, output_size)
    return padded_start, padded_end, scaled_start, scaled_end - scaled_start
