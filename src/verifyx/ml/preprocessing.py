"""Image decoding and tensor preparation for model input.

Images are handled as HxWx3 RGB uint8 numpy arrays throughout VerifyX.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

from verifyx.errors import InvalidImageError, ShapeMismatchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from verifyx.config import Triplet


def decode_image(image_bytes: bytes, max_pixels: int, max_file_size: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format OpenCV can read).
        max_pixels: Upper bound on width * height.
        max_file_size: Upper bound on the encoded size in bytes.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        InvalidImageError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise InvalidImageError("Empty image payload")
    if len(image_bytes) > max_file_size:
        raise InvalidImageError(f"Image file too large ({len(image_bytes)} > {max_file_size} bytes)")

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    bgr = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if bgr is None:
        raise InvalidImageError("Could not decode image")

    height, width = bgr.shape[:2]
    if height * width > max_pixels:
        raise InvalidImageError(f"Image too large ({width}x{height} > {max_pixels} pixels)")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def encode_jpeg(image: NDArray[np.uint8], quality: int = 95) -> bytes:
    """Encode an RGB image as JPEG bytes."""
    ok, buffer = cv2.imencode(".jpg", cv2.cvtColor(image, cv2.COLOR_RGB2BGR), [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise InvalidImageError("Could not encode image as JPEG")
    return buffer.tobytes()


def check_image(image: NDArray[np.uint8]) -> tuple[int, int]:
    """Validate an HxWx3 image and return ``(height, width)``."""
    if image.ndim != 3 or image.shape[2] != 3:
        raise ShapeMismatchError(f"Expected an HxWx3 image, got shape {image.shape}")
    return int(image.shape[0]), int(image.shape[1])


def to_chw(image: NDArray[np.uint8], mean: Triplet, scale: Triplet) -> NDArray[np.float32]:
    """Normalise ``(pixel - mean) * scale`` per channel and move channels first."""
    data = (image.astype(np.float32) - np.asarray(mean, dtype=np.float32)) * np.asarray(scale, dtype=np.float32)
    return np.ascontiguousarray(data.transpose(2, 0, 1))


def resize_square(image: NDArray[np.uint8], size: int) -> NDArray[np.uint8]:
    """Resize to ``size`` x ``size`` with bilinear interpolation (no-op if already there)."""
    if image.shape[0] == size and image.shape[1] == size:
        return image
    return cv2.resize(image, (size, size), interpolation=cv2.INTER_LINEAR)


def letterbox(image: NDArray[np.uint8], height: int, width: int) -> tuple[NDArray[np.uint8], float]:
    """Fit ``image`` into a zero-filled ``height`` x ``width`` canvas, top-left aligned.

    Returns:
        The canvas and the resize ratio applied to the image.
    """
    img_h, img_w = image.shape[:2]
    if img_w / img_h > width / height:
        new_w = width
        new_h = int(new_w / (img_w / img_h))
    else:
        new_h = height
        new_w = int(new_h * (img_w / img_h))
    new_w, new_h = max(new_w, 1), max(new_h, 1)

    canvas = np.zeros((height, width, 3), dtype=np.uint8)
    canvas[:new_h, :new_w] = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    return canvas, min(width / img_w, height / img_h)


def pad_image(image: NDArray[np.uint8], ratio: float) -> tuple[NDArray[np.uint8], int, int]:
    """Add a zero border of ``ratio`` * width / height on every side.

    Returns:
        The padded image and the ``(off_x, off_y)`` border sizes.
    """
    img_h, img_w = image.shape[:2]
    off_x = int(ratio * img_w)
    off_y = int(ratio * img_h)
    padded = cv2.copyMakeBorder(image, off_y, off_y, off_x, off_x, cv2.BORDER_CONSTANT, value=(0, 0, 0))
    return padded, off_x, off_y
