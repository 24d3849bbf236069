"""Custom errors for upscaler package."""


class UpscalerError(Exception):
    """Base class for every error raised by the upscaling engine."""


class AllocationError(UpscalerError):
    """Error raised when a pixel buffer cannot be materialized."""


class InvalidPlanError(UpscalerError):
    """Error raised when a scale plan breaks its contract."""


class RegionOutOfRangeError(UpscalerError):
    """Error raised when a chunk request has a non-positive width or height."""


class ProcessingFailedError(UpscalerError):
    """Error raised when both the direct and the chunked strategies failed."""


class ProcessingCancelledError(UpscalerError):
    """Error raised when a cancellation request is observed between stages or tiles."""


class InvalidInputError(UpscalerError, ValueError):
    """Error raised when the source image or the scale factor is unusable."""
