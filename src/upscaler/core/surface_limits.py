"""Limits of materialized 2D surfaces.

``max_dimension`` is the largest width or height a single buffer may have. ``max_safe_pixel_count``
is the largest total pixel count that is considered safe to hold in memory at once, independent
of (and usually much smaller than) ``max_dimension ** 2``.
"""

from dataclasses import dataclass

from upscaler.core.config import settings


@dataclass(frozen=True)
class SurfaceLimits:
    max_dimension: int = settings.MAX_DIMENSION
    max_safe_pixel_count: int = settings.MAX_SAFE_PIXEL_COUNT

    def __post_init__(self):
        if self.max_dimension <= 0 or self.max_safe_pixel_count <= 0:
            raise ValueError("Surface limits must be positive integers.")

    def exceeds_limits(self, width: int, height: int) -> bool:
        return (
            width > self.max_dimension
            or height > self.max_dimension
            or width * height > self.max_safe_pixel_count
        )


DEFAULT_LIMITS = SurfaceLimits()


def max_dimension() -> int:
    return DEFAULT_LIMITS.max_dimension


def max_safe_pixel_count() -> int:
    return DEFAULT_LIMITS.max_safe_pixel_count


def exceeds_limits(width: int, height: int) -> bool:
    return DEFAULT_LIMITS.exceeds_limits(width, height)
