"""
Polar resampling of the iris annulus.

Strip layout: row k holds polar angle (k - M) / res degrees, where
M = round(max_torsion * res), so rows [M, M + 360 * res) cover one full turn
and the M rows on either side repeat the wrapped-around pattern for the
shifted comparisons. Angles grow from the image +x axis towards +y.
Column j holds radius r_inner + j * (r_outer - r_inner) / (cols - 1).
"""
from __future__ import annotations
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from torsion_tracker.calibration.eye_calibration import EyePhysicalModel
from torsion_tracker.config.tracking_settings import EyeTrackingSettings
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.helpers.buffer_pool import BufferPool
from torsion_tracker.helpers.image_helpers import ensure_uint8

CLIP_LEVEL = 100.0
FULL_WEIGHT = 0.999


@dataclass
class PolarStrip:
    pattern: np.ndarray     # float32 (rows, cols), high-passed
    valid: np.ndarray       # uint8 (rows, cols), 1 = sample usable for matching
    margin_rows: int        # M
    turn_rows: int          # rows per 360 degrees

    @property
    def valid_fraction(self) -> float:
        return float(np.count_nonzero(self.valid)) / max(self.valid.size, 1)


def strip_rows(settings: EyeTrackingSettings) -> tuple[int, int]:
    """(M, N): margin rows on each side and rows per full turn."""
    res = settings.torsion_angular_resolution
    return int(round(settings.max_torsion_deg * res)), int(round(360.0 * res))


def sobel_aperture(settings: EyeTrackingSettings) -> int:
    k = int(min(31, settings.torsion_highpass_size * settings.torsion_angular_resolution + 1))
    return k if k % 2 == 1 else k + 1


def annulus_radii(pupil: Ellipse2D, iris: Ellipse2D, settings: EyeTrackingSettings) -> tuple[float, float]:
    r_inner = settings.torsion_pupil_margin * pupil.major
    r_outer = min(iris.radius, settings.max_iris_radius_pix)
    return r_inner, r_outer


def polar_maps(pupil: Ellipse2D, iris: Ellipse2D, eye_model: EyePhysicalModel, settings: EyeTrackingSettings,
               pad_rows: int = 0) -> tuple[np.ndarray, np.ndarray]:
    """
    cv2.remap maps (rows + 2 * pad_rows, cols) for the strip layout.

    Without geometric correction the annulus is centred on the iris. With it, sample
    points are laid out around the globe centre in primary position, lifted onto
    the globe sphere, rotated to the current gaze (the pupil direction) and projected
    back to the image.
    """
    res = settings.torsion_angular_resolution
    M, N = strip_rows(settings)
    rows = N + 2 * M + 2 * pad_rows
    cols = settings.torsion_image_iris_width
    r_inner, r_outer = annulus_radii(pupil, iris, settings)

    angles = np.radians((np.arange(rows, dtype=np.float64) - M - pad_rows) / res)
    radii = np.linspace(r_inner, r_outer, cols)
    x = np.cos(angles)[:, None] * radii[None, :]
    y = np.sin(angles)[:, None] * radii[None, :]

    if settings.use_geometric_correction and not eye_model.is_empty:
        er = eye_model.radius
        xc, yc = iris.cx - eye_model.cx, iris.cy - eye_model.cy
        ecc = np.arcsin(np.clip(np.hypot(xc, yc) / er, 0.0, 1.0))
        direction = np.arctan2(yc, xc)
        axis = np.array([-np.sin(direction), np.cos(direction), 0.0])
        rot = Rotation.from_rotvec(axis * ecc)

        rr = np.hypot(x, y) / er
        on_globe = rr <= 1.0
        z = np.sqrt(np.clip(1.0 - rr * rr, 0.0, None)) * er
        rotated = rot.apply(np.column_stack([x.ravel(), y.ravel(), z.ravel()]))
        x = np.where(on_globe, rotated[:, 0].reshape(x.shape), x)
        y = np.where(on_globe, rotated[:, 1].reshape(y.shape), y)
        cx, cy = eye_model.center
    else:
        cx, cy = iris.center

    return (x + cx).astype(np.float32), (y + cy).astype(np.float32)


def get_torsion_image(image: np.ndarray, eye_model: EyePhysicalModel, mask: np.ndarray | None,
                      pupil: Ellipse2D, iris: Ellipse2D, settings: EyeTrackingSettings,
                      pool: BufferPool | None = None) -> PolarStrip:
    """
    High-passed polar strip of the iris and its validity.

    Masked pixels are zeroed before resampling and a sample is valid only when all
    pixels it interpolates are valid, so the values of masked pixels never reach the
    strip. Invalid samples are replaced by the mean of the valid ones before filtering
    and the validity is eroded by the filter support.
    """
    pool = pool or BufferPool()
    M, N = strip_rows(settings)
    k_ang = sobel_aperture(settings)
    hp = settings.torsion_highpass_size
    pad = k_ang // 2 + 1

    img = ensure_uint8(image)
    h, w = img.shape
    src = pool.get("torsion_src", (h, w), np.float32)
    weight = pool.get("torsion_weight", (h, w), np.float32)
    np.copyto(src, img, casting="unsafe")
    if mask is None:
        weight.fill(1.0)
    else:
        np.copyto(weight, mask, casting="unsafe")
        src *= weight

    map_x, map_y = polar_maps(pupil, iris, eye_model, settings, pad_rows=pad)
    polar = cv2.remap(src, map_x, map_y, cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0)
    polar_w = cv2.remap(weight, map_x, map_y, cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0)
    valid = polar_w >= FULL_WEIGHT

    r_inner, r_outer = annulus_radii(pupil, iris, settings)
    if r_outer <= r_inner or not np.any(valid):
        rows = N + 2 * M
        return PolarStrip(np.zeros((rows, map_x.shape[1]), np.float32),
                          np.zeros((rows, map_x.shape[1]), np.uint8), M, N)

    polar[~valid] = float(polar[valid].mean())

    # smooth along the radius, differentiate along the angle
    polar = cv2.blur(polar, (2 * hp, 1))
    polar = cv2.Sobel(polar, cv2.CV_32F, 0, 1, ksize=k_ang)
    np.clip(polar, -CLIP_LEVEL, CLIP_LEVEL, out=polar)

    kernel = np.ones((k_ang, 2 * hp + 1), np.uint8)
    valid_u8 = cv2.erode(valid.astype(np.uint8), kernel)

    return PolarStrip(
        pattern=polar[pad:-pad].copy(),
        valid=valid_u8[pad:-pad].copy(),
        margin_rows=M,
        turn_rows=N,
    )
