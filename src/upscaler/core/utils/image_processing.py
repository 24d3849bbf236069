"""Helpers for RGBA8 pixel buffers.

A pixel buffer is a C-contiguous ``numpy`` array of shape ``(height, width, 4)`` and dtype
``uint8``: row-major, 4 bytes per pixel, no padding. Every buffer the engine creates goes
through :func:`allocate` or :func:`resize`, so memory usage can be observed in one place.
"""

import numpy as np
from PIL import Image

from . import errors

CHANNELS = 4
BYTES_PER_PIXEL = 4


def allocate(width: int, height: int) -> np.ndarray:
    """Allocate a fully transparent (zeroed) RGBA8 buffer.

    Raises:
        AllocationError: If the buffer cannot be allocated.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Buffer dimensions must be positive, got {width}x{height}.")
    try:
        return np.zeros((height, width, CHANNELS), dtype=np.uint8)
    except MemoryError as e:
        raise errors.AllocationError(
            f"Could not allocate {width}x{height} buffer ({buffer_nbytes(width, height)} bytes)."
        ) from e


def resize(
    buffer: np.ndarray,
    width: int,
    height: int,
    resample: Image.Resampling = Image.Resampling.LANCZOS,
) -> np.ndarray:
    """Resample an RGBA8 buffer to ``width`` x ``height`` in a single pass.

    Args:
        buffer: Source pixel buffer.
        width: Output width.
        height: Output height.
        resample: Pillow resampling filter. Defaults to LANCZOS.

    Returns:
        A new contiguous RGBA8 buffer.

    Raises:
        AllocationError: If the output buffer cannot be allocated.
    """
    try:
        image = to_image(buffer)
        resized = image.resize((width, height), resample)
        return np.array(resized, dtype=np.uint8)
    except MemoryError as e:
        raise errors.AllocationError(
            f"Could not allocate {width}x{height} resampling buffer "
            f"({buffer_nbytes(width, height)} bytes)."
        ) from e


def crop(buffer: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
    """Return a contiguous copy of a sub-rectangle. Coordinates must lie inside the buffer."""
    return np.ascontiguousarray(buffer[y : y + height, x : x + width])


def dimensions(buffer: np.ndarray) -> tuple[int, int]:
    """Return ``(width, height)`` of a buffer."""
    return buffer.shape[1], buffer.shape[0]


def buffer_nbytes(width: int, height: int) -> int:
    return width * height * BYTES_PER_PIXEL


def is_rgba8(buffer) -> bool:
    return (
        isinstance(buffer, np.ndarray)
        and buffer.dtype == np.uint8
        and buffer.ndim == 3
        and buffer.shape[2] == CHANNELS
        and buffer.shape[0] > 0
        and buffer.shape[1] > 0
    )


def to_image(buffer: np.ndarray) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(buffer))

