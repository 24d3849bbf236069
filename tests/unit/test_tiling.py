import numpy as np
import pytest

from upscaler.core.chunking import plan_tiles
from upscaler.core.chunking._tiling import source_padding, to_output_coordinate
from upscaler.core.surface_limits import SurfaceLimits
from upscaler.core.utils import errors

LIMITS = SurfaceLimits(max_dimension=4096, max_safe_pixel_count=1_000_000)


@pytest.mark.parametrize(
    "src_w, src_h, dst_w, dst_h, tile_size",
    [
        (50, 40, 200, 160, 64),
        (37, 23, 111, 69, 50),
        (37, 23, 93, 58, 40),  # 2.5x, rounded
        (10, 10, 173, 29, 32),  # non-uniform
        (64, 48, 64, 48, 16),
        (200, 100, 100, 50, 30),  # downscale
    ],
)
def test_tiles_cover_output_exactly_once(src_w, src_h, dst_w, dst_h, tile_size):
    grid = plan_tiles(src_w, src_h, dst_w, dst_h, tile_size, 4, LIMITS)
    coverage = np.zeros((dst_h, dst_w), dtype=np.int32)

    for tile in grid.tiles:
        assert tile.width > 0 and tile.height > 0
        coverage[tile.origin_y : tile.bottom, tile.origin_x : tile.right] += 1

    assert np.all(coverage == 1)
    assert grid.x_edges[0] == 0 and grid.x_edges[-1] == dst_w
    assert grid.y_edges[0] == 0 and grid.y_edges[-1] == dst_h


def test_tiles_are_in_row_major_order_with_indices():
    grid = plan_tiles(40, 40, 160, 160, 64, 0, LIMITS)

    assert [tile.index for tile in grid.tiles] == list(range(len(grid.tiles)))
    origins = [(tile.origin_y, tile.origin_x) for tile in grid.tiles]
    assert origins == sorted(origins)
    assert grid.columns * grid.rows == len(grid.tiles)


def test_recipe_crop_lies_inside_scaled_region():
    grid = plan_tiles(37, 23, 93, 58, 40, 6, LIMITS)

    for tile in grid.tiles:
        recipe = tile.recipe
        x0, y0, x1, y1 = recipe.source_box
        assert 0 <= x0 < x1 <= 37 and 0 <= y0 < y1 <= 23
        assert recipe.crop_x >= 0 and recipe.crop_y >= 0
        assert recipe.crop_x + tile.width <= recipe.scaled_width
        assert recipe.crop_y + tile.height <= recipe.scaled_height


def test_tile_at_and_tiles_in():
    grid = plan_tiles(40, 40, 160, 160, 64, 0, LIMITS)

    tile = grid.tile_at(70, 10)
    assert tile.origin_x <= 70 < tile.right
    assert tile.origin_y <= 10 < tile.bottom
    assert grid.tile_at(160, 0) is None
    assert grid.tile_at(-1, 0) is None

    found = grid.tiles_in(50, 50, 30, 30)
    expected = [t for t in grid.tiles if t.intersects(50, 50, 30, 30)]
    assert found == expected

    assert grid.tiles_in(-100, -100, 50, 50) == []
    assert grid.tiles_in(-10, -10, 1000, 1000) == list(grid.tiles)


def test_context_padding_is_measured_in_output_pixels():
    assert source_padding(64, 4.0) == 16
    assert source_padding(64, 20.0) == 4
    assert source_padding(64, 1000.0) == 1
    assert source_padding(8, 0.5) == 16
    assert source_padding(0, 4.0) == 0


def test_tiles_respect_surface_limits():
    limits = SurfaceLimits(max_dimension=512, max_safe_pixel_count=40_000)

    grid = plan_tiles(100, 80, 1000, 800, 2048, 2, limits)

    assert len(grid.tiles) > 1
    assert grid.peak_tile_pixels <= limits.max_safe_pixel_count


def test_to_output_coordinate_rounds_half_up():
    assert to_output_coordinate(0, 10, 25) == 0
    assert to_output_coordinate(1, 2, 3) == 2  # 1.5
    assert to_output_coordinate(10, 10, 25) == 25
    assert to_output_coordinate(3, 10, 25) == 8  # 7.5


def test_invalid_arguments():
    with pytest.raises(ValueError):
        plan_tiles(10, 10, 20, 20, 0, 0, LIMITS)
    with pytest.raises(ValueError):
        plan_tiles(10, 10, 20, 20, 16, -1, LIMITS)


@pytest.mark.parametrize("scale_factor", [100, 1000])
def test_extreme_scale_factors_keep_tiles_within_limits(scale_factor):
    limits = SurfaceLimits()
    target = 10 * scale_factor

    grid = plan_tiles(10, 10, target, target, 2048, 64, limits)

    assert grid.fits(limits)
    assert grid.peak_tile_pixels <= limits.max_safe_pixel_count
    assert grid.x_edges[-1] == target and grid.y_edges[-1] == target


def test_padding_is_dropped_before_giving_up():
    # one source pixel is 150x150 output pixels; with padding it would be 450x450
    limits = SurfaceLimits(max_dimension=512, max_safe_pixel_count=40_000)

    grid = plan_tiles(10, 10, 1500, 1500, 2048, 64, limits)

    assert grid.fits(limits)
    assert len(grid.tiles) == 100
    assert all(tile.recipe.source_box[2] - tile.recipe.source_box[0] == 1 for tile in grid.tiles)


def test_single_source_pixel_above_limits_is_rejected():
    limits = SurfaceLimits(max_dimension=512, max_safe_pixel_count=40_000)

    with pytest.raises(errors.AllocationError):
        plan_tiles(10, 10, 3000, 3000, 2048, 64, limits)
