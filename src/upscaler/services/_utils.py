"""Codec and serialization helpers for the HTTP layer."""

import base64

import cv2
import numpy as np

from upscaler.core.result import UpscaleResult
from upscaler.core.utils import errors


def decode_image(contents: bytes) -> np.ndarray:
    """Decode encoded image bytes into an RGBA8 buffer.

    Args:
        contents: Encoded image (any format supported by OpenCV).

    Returns:
        RGBA8 buffer of shape (H, W, 4).
    """
    nparr = np.frombuffer(contents, np.uint8)
    image = cv2.imdecode(nparr, cv2.IMREAD_UNCHANGED) if nparr.size else None
    if image is None:
        raise errors.InvalidInputError("Uploaded file is not a decodable image.")
    return cv2_to_rgba(image)


def cv2_to_rgba(image: np.ndarray) -> np.ndarray:
    """Convert an image decoded by OpenCV (gray, BGR or BGRA) to RGBA8.

    **Note**: 16 bit images are reduced to 8 bits.
    """
    if image.dtype == np.uint16:
        image = (image >> 8).astype(np.uint8)
    elif image.dtype != np.uint8:
        raise errors.InvalidInputError(f"Unsupported image dtype {image.dtype}.")

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    if image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
    raise errors.InvalidInputError(f"Unsupported number of channels: {image.shape[2]}.")


def encode_png(buffer: np.ndarray) -> bytes:
    success, encoded = cv2.imencode(".png", cv2.cvtColor(buffer, cv2.COLOR_RGBA2BGRA))
    if not success:
        raise ValueError("PNG encoding failed.")
    return encoded.tobytes()


def summarize_result(result_id: str, result: UpscaleResult, include_preview: bool = True) -> dict:
    """JSON-serializable description of an upscale result."""
    summary = {
        "id": result_id,
        "mode": result.mode,
        "width": result.requested_width,
        "height": result.requested_height,
        "scale_factor": result.scale_factor,
        "megapixels": round(result.megapixels, 1),
        "processing_time_ms": round(result.processing_time_ms, 2),
        "preview": {
            "width": result.preview.width,
            "height": result.preview.height,
            "approximate": result.preview.approximate,
        },
    }
    if result.is_chunked:
        image = result.output.image
        summary["tiles"] = len(image.tiles)
        summary["exceeds_limits"] = image.exceeds_limits
    if include_preview:
        summary["preview"]["png_base64"] = base64.b64encode(
            encode_png(result.preview.buffer)
        ).decode("ascii")
    return summary
