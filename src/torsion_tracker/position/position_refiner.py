"""
Sub-pixel refinement of the coarse pupil ellipse.

All strategies are deterministic: the same frame, coarse ellipse and mask
always give the same ellipse.
"""
from __future__ import annotations
from abc import ABC, abstractmethod

import cv2
import numpy as np

from torsion_tracker.config.tracking_settings import EyeTrackingSettings, PositionMethod
from torsion_tracker.data.eye_data import ImageFrame
from torsion_tracker.geometry.conics import fit_ellipse_direct, refine_ellipse_geometric
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Mask, Rect
from torsion_tracker.helpers.image_helpers import scale_to_size
from torsion_tracker.logging_utils.logging_setup import get_logger
from torsion_tracker.position.edge_scan import radial_edge_points, scan_angles, EdgeScanParams

log = get_logger(__name__)

N_RAYS = 64
MIN_FIT_POINTS = 8
CENTROID_WORKING_SIZE = 200


class PositionRefiner(ABC):
    """Refine(frame, coarse ellipse, mask, settings) -> ellipse."""

    method: PositionMethod

    def refine(self, frame: ImageFrame, coarse: Ellipse2D, mask: Mask | None,
               settings: EyeTrackingSettings) -> Ellipse2D:
        if coarse.is_empty:
            return coarse
        refined = self._refine(frame, coarse, mask, settings)
        if refined is None:
            return coarse
        if not self._plausible(coarse, refined):
            log.debug("Frame %d: %s refinement rejected (%s -> %s)", frame.frame_number,
                      self.method.value, coarse, refined)
            return coarse
        return refined

    @abstractmethod
    def _refine(self, frame: ImageFrame, coarse: Ellipse2D, mask: Mask | None,
                settings: EyeTrackingSettings) -> Ellipse2D | None:
        ...

    @staticmethod
    def _plausible(coarse: Ellipse2D, refined: Ellipse2D) -> bool:
        if refined.is_empty or not np.all(np.isfinite([refined.cx, refined.cy, refined.major, refined.minor])):
            return False
        shift = np.hypot(refined.cx - coarse.cx, refined.cy - coarse.cy)
        ratio = refined.radius / max(coarse.radius, 1e-9)
        return shift <= coarse.radius and 0.5 <= ratio <= 2.0 and refined.axis_ratio <= 3.0


class NoPositionRefiner(PositionRefiner):
    method = PositionMethod.NONE

    def _refine(self, frame, coarse, mask, settings):
        return coarse


class CentroidRefiner(PositionRefiner):
    """
    Centroid of the thresholded pupil in an upsampled, blurred square ROI around
    the coarse ellipse (25 % padding). Keeps the coarse axes.
    """
    method = PositionMethod.CENTROID

    def _refine(self, frame, coarse, mask, settings):
        side = 2.0 * coarse.major
        half = side / 2.0 + side / 4.0
        roi = Rect.around(coarse.cx, coarse.cy, half, half).intersect(Rect(0, 0, frame.width, frame.height))
        if roi.is_empty:
            return None

        patch = frame.as_uint8()[roi.slices]
        big, scale = scale_to_size(patch, CENTROID_WORKING_SIZE)
        big = cv2.GaussianBlur(big, (5, 5), 0)
        _, bw = cv2.threshold(big, settings.dark_threshold(frame.eye), 255, cv2.THRESH_BINARY_INV)
        m = cv2.moments(bw, binaryImage=True)
        if m["m00"] <= 0:
            return None
        cx = (m["m10"] / m["m00"] + 0.5) / scale - 0.5 + roi.x
        cy = (m["m01"] / m["m00"] + 0.5) / scale - 0.5 + roi.y
        return Ellipse2D(cx, cy, coarse.major, coarse.minor, coarse.angle_deg)


class _EdgeRefiner(PositionRefiner):
    """Shared radial edge scan from the coarse centre (dark pupil, brighter iris)."""

    scan = EdgeScanParams(polarity=1, mask_offset=2.0)

    def edge_points(self, frame: ImageFrame, coarse: Ellipse2D, mask: Mask | None) -> np.ndarray:
        r = coarse.radius
        half = 1.8 * r + 2
        roi = Rect.around(coarse.cx, coarse.cy, half, half).intersect(Rect(0, 0, frame.width, frame.height))
        if roi.is_empty:
            return np.zeros((0, 2))
        gray = frame.as_uint8()[roi.slices]
        sub_mask = mask[roi.slices] if mask is not None else None
        pts = radial_edge_points(gray, (coarse.cx - roi.x, coarse.cy - roi.y), 0.5 * r, 1.6 * r,
                                 scan_angles(N_RAYS), sub_mask, self.scan)
        if len(pts):
            pts = pts + np.array([roi.x, roi.y], dtype=np.float64)
        return pts


class ConvexHullRefiner(_EdgeRefiner):
    """Convex hull of the radial edge points, least-squares ellipse on the hull vertices."""
    method = PositionMethod.CONVEX_HULL

    def _refine(self, frame, coarse, mask, settings):
        pts = self.edge_points(frame, coarse, mask)
        if len(pts) < 5:
            return None
        hull = cv2.convexHull(pts.astype(np.float32))
        if len(hull) < 5:
            return None
        return Ellipse2D.from_opencv(cv2.fitEllipse(hull))


class EllipseFittingRefiner(_EdgeRefiner):
    """
    Direct algebraic ellipse fit to the radial edge points, then geometric
    (radial distance) least-squares refinement. Most accurate, most expensive.
    """
    method = PositionMethod.ELLIPSE_FITTING

    def _refine(self, frame, coarse, mask, settings):
        pts = self.edge_points(frame, coarse, mask)
        if len(pts) < MIN_FIT_POINTS:
            log.debug("Frame %d: only %d pupil edge points", frame.frame_number, len(pts))
            return None
        algebraic = fit_ellipse_direct(pts)
        return refine_ellipse_geometric(pts, algebraic)


def make_position_refiner(method: PositionMethod) -> PositionRefiner:
    if method == PositionMethod.NONE:
        return NoPositionRefiner()
    if method == PositionMethod.CENTROID:
        return CentroidRefiner()
    if method == PositionMethod.CONVEX_HULL:
        return ConvexHullRefiner()
    if method == PositionMethod.ELLIPSE_FITTING:
        return EllipseFittingRefiner()
    raise ValueError(f"Unknown position method: {method}")
