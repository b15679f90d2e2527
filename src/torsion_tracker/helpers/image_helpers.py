from __future__ import annotations

import cv2
import numpy as np


def ensure_uint8(image: np.ndarray, bit_depth: int | None = None) -> np.ndarray:
    """
    Bring a grayscale frame to uint8 so 0..255 thresholds apply.

    - uint8 images are returned unchanged (no copy).
    - bool masks become {0, 255}.
    - wider integer images are scaled from 0..2**bit_depth - 1, or from their full
      dtype range when bit_depth is None (a 12-bit camera in a uint16 buffer needs
      bit_depth=12, otherwise every pixel comes out nearly black).
    - float images in [0, 1] are scaled by 255, other floats are clipped to 0..255.
    """
    if image is None:
        raise ValueError("Input image is None")

    if image.dtype == np.uint8 and bit_depth in (None, 8):
        return image

    if image.dtype == bool:
        return image.astype(np.uint8) * 255

    if np.issubdtype(image.dtype, np.integer):
        info = np.iinfo(image.dtype)
        top = info.max if bit_depth is None else (1 << bit_depth) - 1
        scaled = (image.astype(np.float64) - max(info.min, 0)) * (255.0 / top)
        return np.clip(scaled, 0, 255).astype(np.uint8)

    img = image.astype(np.float64)
    if img.size and np.nanmax(img) <= 1.0:
        img = img * 255.0
    return np.clip(np.nan_to_num(img), 0, 255).astype(np.uint8)


def resize_to_width(image: np.ndarray, max_width: int = 200, interpolation=cv2.INTER_AREA) -> tuple[np.ndarray, float]:
    """
    Downscale so the width is at most `max_width`, preserving aspect ratio.
    Returns (image, scale) with scale = new / old (1.0 when no resize happened).
    """
    h, w = image.shape[:2]
    if w <= max_width:
        return image, 1.0
    new_w = int(max_width)
    scale = new_w / float(w)
    new_h = max(1, int(round(h * scale)))
    return cv2.resize(image, (new_w, new_h), interpolation=interpolation), scale


def scale_to_size(image: np.ndarray, size: int, interpolation=cv2.INTER_CUBIC) -> tuple[np.ndarray, float]:
    """Resize a (roughly square) ROI so its longer side equals `size`. Returns (image, scale)."""
    h, w = image.shape[:2]
    scale = size / float(max(h, w))
    new_w, new_h = max(1, int(round(w * scale))), max(1, int(round(h * scale)))
    return cv2.resize(image, (new_w, new_h), interpolation=interpolation), scale
