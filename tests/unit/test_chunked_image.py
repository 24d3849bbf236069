import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from upscaler.core.cancellation import CancellationToken
from upscaler.core.chunking import ChunkedImage, ChunkedImageBuilder, Tile
from upscaler.core.scaling import ProgressiveScaler
from upscaler.core.utils import errors


@pytest.fixture
def builder(small_limits):
    return ChunkedImageBuilder(ProgressiveScaler(), small_limits, tile_size=64, overlap=4)


@pytest.fixture
def lazy_image(builder, make_image):
    # 60x45 source at 4x -> 240x180 logical image
    return builder.build(make_image(60, 45), 240, 180)


def test_lazy_build_renders_nothing(lazy_image):
    assert (lazy_image.width, lazy_image.height) == (240, 180)
    assert len(lazy_image.tiles) > 1
    assert not any(lazy_image.is_materialized(tile.index) for tile in lazy_image.tiles)
    assert lazy_image.stats.materializations == 0


@pytest.mark.parametrize(
    "region",
    [(0, 0, 64, 64), (10, 20, 100, 37), (200, 150, 100, 100), (-30, -5, 50, 40), (0, 0, 240, 180)],
)
def test_get_chunk_has_requested_size(lazy_image, region):
    chunk = lazy_image.get_chunk(*region)

    assert chunk.shape == (region[3], region[2], 4)
    assert chunk.dtype == np.uint8


def test_get_chunk_only_renders_intersecting_tiles(lazy_image):
    lazy_image.get_chunk(0, 0, 10, 10)

    assert lazy_image.stats.materializations == 1
    assert lazy_image.is_materialized(lazy_image.tile_at(0, 0).index)


def test_overlapping_chunks_agree(lazy_image):
    first = lazy_image.get_chunk(20, 30, 120, 90)
    second = lazy_image.get_chunk(60, 50, 150, 100)

    # overlap is [60, 140) x [50, 120)
    np.testing.assert_array_equal(first[20:90, 40:120], second[0:70, 0:80])


def test_get_chunk_is_idempotent(lazy_image):
    first = lazy_image.get_chunk(5, 5, 200, 150)
    second = lazy_image.get_chunk(5, 5, 200, 150)

    np.testing.assert_array_equal(first, second)
    assert (lazy_image.width, lazy_image.height) == (240, 180)


def test_out_of_bounds_pixels_are_transparent(lazy_image):
    chunk = lazy_image.get_chunk(220, 170, 40, 20)

    assert np.all(chunk[10:, :] == 0)
    assert np.all(chunk[:, 20:] == 0)
    assert np.all(chunk[:10, :20, 3] == 255)


def test_region_fully_outside_is_blank(lazy_image):
    chunk = lazy_image.get_chunk(1000, 1000, 16, 8)

    assert chunk.shape == (8, 16, 4)
    assert not chunk.any()
    assert lazy_image.stats.materializations == 0


@pytest.mark.parametrize("size", [(0, 10), (10, 0), (-5, 5)])
def test_non_positive_region_is_rejected(lazy_image, size):
    with pytest.raises(errors.RegionOutOfRangeError):
        lazy_image.get_chunk(0, 0, *size)


def test_cached_tiles_are_read_only(lazy_image):
    pixels = lazy_image.materialize_tile(0)

    with pytest.raises(ValueError):
        pixels[0, 0, 0] = 1


def test_tile_is_materialized_at_most_once_under_concurrency(lazy_image, monkeypatch):
    render = Tile.render
    calls = []
    calls_lock = threading.Lock()

    def counting_render(self, *args, **kwargs):
        with calls_lock:
            calls.append(self.index)
        return render(self, *args, **kwargs)

    monkeypatch.setattr(Tile, "render", counting_render)

    with ThreadPoolExecutor(max_workers=8) as executor:
        chunks = list(executor.map(lambda _: lazy_image.get_chunk(0, 0, 240, 180), range(16)))

    assert sorted(calls) == [tile.index for tile in lazy_image.tiles]
    for chunk in chunks[1:]:
        np.testing.assert_array_equal(chunk, chunks[0])


def test_cache_limit_evicts_least_recently_used(builder, make_image):
    builder.cache_limit = 2
    image = builder.build(make_image(60, 45), 240, 180)

    for tile in image.tiles[:3]:
        image.materialize_tile(tile.index)

    assert not image.is_materialized(0)
    assert image.is_materialized(1) and image.is_materialized(2)
    assert image.stats.evictions == 1


def test_release_drops_cached_tiles(lazy_image):
    lazy_image.get_chunk(0, 0, 240, 180)

    released = lazy_image.release()

    assert released == len(lazy_image.tiles)
    assert not lazy_image.is_materialized(0)
    assert lazy_image.get_chunk(0, 0, 8, 8).shape == (8, 8, 4)


def test_iter_chunks_covers_image(lazy_image):
    windows = list(lazy_image.iter_chunks(100, 100))

    assert [(x, y) for x, y, _ in windows] == [
        (0, 0), (100, 0), (200, 0), (0, 100), (100, 100), (200, 100)
    ]
    assert windows[2][2].shape == (100, 40, 4)
    assert windows[5][2].shape == (80, 40, 4)

    full = lazy_image.get_chunk(0, 0, 240, 180)
    x, y, chunk = windows[4]
    np.testing.assert_array_equal(chunk, full[y : y + 80, x : x + 100])


def test_eager_and_lazy_strategies_agree(small_limits, make_image):
    source = make_image(60, 45, seed=7)
    lazy = ChunkedImageBuilder(ProgressiveScaler(), small_limits, tile_size=64).build(
        source, 240, 180
    )
    progress = []
    eager = ChunkedImageBuilder(
        ProgressiveScaler(), small_limits, strategy="eager", tile_size=64, max_workers=3
    ).build(source, 240, 180, on_progress=lambda done, total: progress.append((done, total)))

    assert all(tile.is_materialized for tile in eager.tiles)
    assert len(progress) == len(eager.tiles)
    assert progress[-1] == (len(eager.tiles), len(eager.tiles))
    np.testing.assert_array_equal(
        eager.get_chunk(0, 0, 240, 180), lazy.get_chunk(0, 0, 240, 180)
    )
    assert eager.stats.materializations == 0


def test_tiles_blend_like_a_direct_resize(small_limits, make_image):
    source = make_image(60, 45, seed=11)
    chunked = ChunkedImageBuilder(ProgressiveScaler(), small_limits, tile_size=64, overlap=32).build(
        source, 240, 180
    )

    direct = ProgressiveScaler().scale(source, 240, 180)
    assembled = chunked.get_chunk(0, 0, 240, 180)

    difference = np.abs(direct.astype(np.int16) - assembled.astype(np.int16))
    assert difference.mean() < 1.0


def test_eager_build_can_be_cancelled(small_limits, make_image):
    token = CancellationToken()
    token.cancel()
    builder = ChunkedImageBuilder(ProgressiveScaler(), small_limits, strategy="eager")

    with pytest.raises(errors.ProcessingCancelledError):
        builder.build(make_image(60, 45), 240, 180, cancel_token=token)


def test_worker_count_is_bounded_by_memory_ceiling(small_limits, make_image):
    builder = ChunkedImageBuilder(
        ProgressiveScaler(), small_limits, strategy="eager", max_workers=8, memory_ceiling_mb=1
    )
    image = builder.build(make_image(60, 45), 240, 180)

    peak_bytes = image.grid.peak_tile_pixels * 4 * 2
    assert builder.worker_count(image.grid) == max(1, min(8, (1024 * 1024) // peak_bytes))


def test_source_is_copied(builder, make_image):
    source = make_image(60, 45)
    image = builder.build(source, 240, 180)
    before = image.get_chunk(0, 0, 240, 180)
    image.release()

    source[:] = 0

    np.testing.assert_array_equal(image.get_chunk(0, 0, 240, 180), before)


def test_invalid_builder_arguments(small_limits):
    with pytest.raises(ValueError):
        ChunkedImageBuilder(ProgressiveScaler(), small_limits, strategy="greedy")
    with pytest.raises(ValueError):
        ChunkedImageBuilder(ProgressiveScaler(), small_limits, max_workers=0)
    with pytest.raises(ValueError):
        ChunkedImage(None, np.zeros((1, 1, 4), np.uint8), ProgressiveScaler(), cache_limit=0)
