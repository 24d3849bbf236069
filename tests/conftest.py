import numpy as np
import pytest

from upscaler.core.surface_limits import SurfaceLimits
from upscaler.core.utils import image_processing


@pytest.fixture
def make_image():
    """Factory of deterministic RGBA8 test images: gradients plus seeded noise."""

    def _make(width: int, height: int, seed: int = 0) -> np.ndarray:
        rng = np.random.default_rng(seed)
        ys, xs = np.mgrid[0:height, 0:width]
        image = np.empty((height, width, 4), dtype=np.uint8)
        image[..., 0] = xs * 255 // max(1, width - 1)
        image[..., 1] = ys * 255 // max(1, height - 1)
        image[..., 2] = rng.integers(0, 256, size=(height, width))
        image[..., 3] = 255
        return image

    return _make


@pytest.fixture
def small_limits():
    """Limits small enough to push modest test images onto the chunked path."""
    return SurfaceLimits(max_dimension=512, max_safe_pixel_count=40_000)


@pytest.fixture
def allocation_tracker(monkeypatch):
    """Record the size in bytes of every buffer the engine allocates or resamples."""
    sizes = []
    allocate = image_processing.allocate
    resize = image_processing.resize

    def tracked_allocate(width, height):
        sizes.append(image_processing.buffer_nbytes(width, height))
        return allocate(width, height)

    def tracked_resize(buffer, width, height, *args, **kwargs):
        sizes.append(image_processing.buffer_nbytes(width, height))
        return resize(buffer, width, height, *args, **kwargs)

    monkeypatch.setattr(image_processing, "allocate", tracked_allocate)
    monkeypatch.setattr(image_processing, "resize", tracked_resize)
    return sizes
