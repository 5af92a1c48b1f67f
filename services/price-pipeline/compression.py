"""JPEG re-encoding for menu photos.

Uploads to the extraction service are kept under a byte budget by lowering
JPEG quality in fixed steps until the encoded image fits or the quality floor
is reached. Images are handled in memory only.
"""

import logging

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class ImageDecodeError(ValueError):
    """Bytes could not be decoded as an image, or re-encoding failed."""


def compress_for_upload(
    image_bytes: bytes,
    max_bytes: int = 2_000_000,
    start_quality: int = 80,
    quality_step: int = 10,
    min_quality: int = 10,
) -> bytes:
    """Re-encode as JPEG, stepping quality down until under ``max_bytes``.

    The result may still exceed the budget when the floor is reached.
    Raises ImageDecodeError if the input is not a decodable image.
    """
    img = _decode(image_bytes)
    if img is None:
        raise ImageDecodeError("could not decode image")

    quality = start_quality
    data = _encode(img, quality)
    while len(data) > max_bytes and quality > min_quality:
        quality = max(quality - quality_step, min_quality)
        data = _encode(img, quality)

    logger.info(
        "Compressed image: %d bytes -> %d bytes (quality=%d)",
        len(image_bytes), len(data), quality,
    )
    return data


def reencode_jpeg(image_bytes: bytes, quality: int, fallback: bytes | None = None) -> bytes:
    """Re-encode at a fixed quality, returning ``fallback`` (or the input) on failure."""
    fallback = image_bytes if fallback is None else fallback

    img = _decode(image_bytes)
    if img is None:
        logger.warning("compression: could not decode image, returning original")
        return fallback

    try:
        return _encode(img, quality)
    except ImageDecodeError as e:
        logger.warning("compression: JPEG encode failed: %s", e)
        return fallback


def _decode(image_bytes: bytes) -> np.ndarray | None:
    """Decode raw bytes into an OpenCV BGR array."""
    if not image_bytes:
        return None
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)


def _encode(img: np.ndarray, quality: int) -> bytes:
    """Encode image as JPEG bytes at the given quality."""
    try:
        success, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    except cv2.error as e:
        raise ImageDecodeError(f"JPEG encode failed: {e}") from e
    if not success:
        raise ImageDecodeError("JPEG encode failed")
    return buf.tobytes()
