from dataclasses import dataclass, field
from typing import Union

import numpy as np

from upscaler.core.chunking import ChunkedImage
from upscaler.core.preview import PreviewDescriptor


@dataclass(frozen=True)
class Direct:
    """Fully materialized output."""

    buffer: np.ndarray = field(compare=False, repr=False)

    @property
    def width(self) -> int:
        return self.buffer.shape[1]

    @property
    def height(self) -> int:
        return self.buffer.shape[0]


@dataclass(frozen=True)
class Chunked:
    """Logical output described by tiles; never materialized as a whole."""

    image: ChunkedImage

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def exceeds_limits(self) -> bool:
        return self.image.exceeds_limits


UpscaleOutput = Union[Direct, Chunked]


@dataclass(frozen=True)
class UpscaleResult:
    output: UpscaleOutput
    requested_width: int
    requested_height: int
    scale_factor: float
    processing_time_ms: float
    preview: PreviewDescriptor

    @property
    def mode(self) -> str:
        return "chunked" if isinstance(self.output, Chunked) else "direct"

    @property
    def is_chunked(self) -> bool:
        return isinstance(self.output, Chunked)

    @property
    def megapixels(self) -> float:
        return self.requested_width * self.requested_height / 1_000_000
