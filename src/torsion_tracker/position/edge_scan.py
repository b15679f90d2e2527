# ----------------------------------------------------------------------
# Radial edge scanning with sub-sample peak localisation
# ----------------------------------------------------------------------
from __future__ import annotations
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import map_coordinates, gaussian_filter1d


@dataclass(frozen=True)
class EdgeScanParams:
    """
    step : radial sampling step (pixels)
    sigma : smoothing of each profile (pixels)
    polarity : +1 for dark-inside / bright-outside edges
    min_strength : minimum derivative at the edge (grey levels per pixel)
    max_radius_deviation : points farther than this fraction from the median radius are dropped
    mask_offset : the mask is read this many pixels beyond the edge (negative = before it)
    """
    step: float = 0.25
    sigma: float = 1.0
    polarity: int = 1
    min_strength: float = 2.0
    max_radius_deviation: float = 0.3
    mask_offset: float = 2.0


def scan_angles(n: int, sectors: tuple[tuple[float, float], ...] | None = None) -> np.ndarray:
    """n evenly spaced ray angles (radians), optionally restricted to (start_deg, end_deg) sectors."""
    angles = np.linspace(0.0, 2.0 * np.pi, n, endpoint=False)
    if not sectors:
        return angles
    deg = np.degrees(angles)
    keep = np.zeros(n, dtype=bool)
    for lo, hi in sectors:
        keep |= ((deg - lo) % 360.0) <= ((hi - lo) % 360.0)
    return angles[keep]


def radial_edge_points(gray: np.ndarray, center: tuple[float, float], r_min: float, r_max: float,
                       angles: np.ndarray, mask: np.ndarray | None = None,
                       params: EdgeScanParams = EdgeScanParams()) -> np.ndarray:
    """
    Strongest edge along each ray from `center`, in the coordinates of `gray`.

    Profiles are sampled with bilinear interpolation, smoothed, differentiated, and
    the derivative maximum is refined with a 3-point parabola. Returns (k, 2) (x, y).
    """
    if r_max - r_min < 4 * params.step or len(angles) == 0:
        return np.zeros((0, 2))

    cx, cy = center
    radii = np.arange(r_min, r_max, params.step)
    cos_a, sin_a = np.cos(angles)[:, None], np.sin(angles)[:, None]
    xs = cx + cos_a * radii[None, :]
    ys = cy + sin_a * radii[None, :]

    profiles = map_coordinates(gray.astype(np.float32, copy=False), [ys.ravel(), xs.ravel()],
                               order=1, mode="nearest").reshape(xs.shape)
    profiles = gaussian_filter1d(profiles, params.sigma / params.step, axis=1, mode="nearest")
    deriv = params.polarity * np.gradient(profiles, params.step, axis=1)

    idx = np.argmax(deriv, axis=1)
    rows = np.arange(len(angles))
    strength = deriv[rows, idx]
    interior = (idx > 0) & (idx < len(radii) - 1)
    keep = interior & (strength >= params.min_strength)

    i = np.clip(idx, 1, len(radii) - 2)
    d_m, d_0, d_p = deriv[rows, i - 1], deriv[rows, i], deriv[rows, i + 1]
    denom = d_m - 2.0 * d_0 + d_p
    with np.errstate(divide="ignore", invalid="ignore"):
        delta = np.where(denom < 0, 0.5 * (d_m - d_p) / denom, 0.0)
    delta = np.clip(delta, -0.5, 0.5)
    r_edge = radii[idx] + delta * params.step

    if mask is not None:
        mask_r = r_edge + params.mask_offset
        px = np.round(cx + cos_a[:, 0] * mask_r).astype(int)
        py = np.round(cy + sin_a[:, 0] * mask_r).astype(int)
        h, w = mask.shape
        inside = (px >= 0) & (px < w) & (py >= 0) & (py < h)
        valid = np.zeros(len(angles), dtype=bool)
        valid[inside] = mask[py[inside], px[inside]] > 0
        keep &= valid

    if not np.any(keep):
        return np.zeros((0, 2))

    r_med = np.median(r_edge[keep])
    keep &= np.abs(r_edge - r_med) <= params.max_radius_deviation * r_med

    r = r_edge[keep]
    return np.column_stack([cx + cos_a[keep, 0] * r, cy + sin_a[keep, 0] * r])
