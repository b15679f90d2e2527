r"""
Eyelid boundaries as two 4-point polylines (upper, lower), left to right.

The Hough detector searches four boxes around the iris (top-left, top-right,
bottom-left, bottom-right) for the eyelid edge and falls back, box by box, to
the Fixed segment when no line gets enough votes.

      _____     _ . - = - . _
     |top  | .  \  \   /  /  " .
     |left |  _,.--~=~"~=~--..   top eyelid
     |_____|/ ,` .---. `, \     ". \
            |   /:pupil:\   + globe center
      _____ \ `, `~~~' ,` /     ,' /
     |bottom\ / !     ! \ /  _.-"  .
     |left |  "=~~..__..~~=`"  bottom eyelid
     |_____|
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from enum import Enum, auto
import math

import cv2
import numpy as np

from torsion_tracker.calibration.eye_calibration import EyePhysicalModel
from torsion_tracker.config.tracking_settings import EyeTrackingSettings, EyelidMethod
from torsion_tracker.data.eye_data import ImageFrame, EyelidBoundary
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Rect
from torsion_tracker.logging_utils.logging_setup import get_logger

log = get_logger(__name__)

PIXELS_PER_EYE_RADIUS = 80
HOUGH_RHO_RESOLUTION = 2
HOUGH_THETA_RESOLUTION_DEG = 5
HOUGH_MAX_LINES = 30
EDGE_THRESHOLD = 230


class EyelidCorner(Enum):
    TOP_LEFT = auto()
    TOP_RIGHT = auto()
    BOTTOM_LEFT = auto()
    BOTTOM_RIGHT = auto()

    @property
    def is_top(self) -> bool:
        return self in (EyelidCorner.TOP_LEFT, EyelidCorner.TOP_RIGHT)


# Allowed range of cos(theta) of the Hough line normal; wider for the top lids
COS_RANGES = {
    EyelidCorner.TOP_LEFT: (-0.2, 0.7),
    EyelidCorner.TOP_RIGHT: (-0.7, 0.2),
    EyelidCorner.BOTTOM_LEFT: (-0.4, 0.2),
    EyelidCorner.BOTTOM_RIGHT: (-0.2, 0.4),
}

Segment = tuple[tuple[float, float], tuple[float, float]]


class EyelidDetector(ABC):
    method: EyelidMethod

    @abstractmethod
    def find_eyelids(self, frame: ImageFrame, pupil: Ellipse2D, eye_model: EyePhysicalModel,
                     settings: EyeTrackingSettings) -> EyelidBoundary:
        ...


class NoEyelidDetector(EyelidDetector):
    method = EyelidMethod.NONE

    def find_eyelids(self, frame, pupil, eye_model, settings):
        return EyelidBoundary.open_frame()


def fixed_eyelids(pupil: Ellipse2D, eye_model: EyePhysicalModel, settings: EyeTrackingSettings) -> EyelidBoundary:
    """Straight lids above and below the pupil at fixed_eyelid_pupil_ratio pupil radii."""
    offset = settings.fixed_eyelid_pupil_ratio * pupil.radius
    y_top = pupil.cy - offset
    y_bottom = pupil.cy + offset
    half_r = eye_model.radius / 2.0
    xs = [pupil.cx - half_r * 1.5, pupil.cx - half_r, pupil.cx + half_r, pupil.cx + half_r * 1.5]
    return EyelidBoundary.from_points(
        upper=[(x, y_top) for x in xs],
        lower=[(x, y_bottom) for x in xs],
    )


class FixedEyelidDetector(EyelidDetector):
    method = EyelidMethod.FIXED

    def find_eyelids(self, frame, pupil, eye_model, settings):
        return fixed_eyelids(pupil, eye_model, settings)


class HoughEyelidDetector(EyelidDetector):
    method = EyelidMethod.HOUGH_LINES

    def find_eyelids(self, frame, pupil, eye_model, settings):
        fallback = fixed_eyelids(pupil, eye_model, settings)

        scale = PIXELS_PER_EYE_RADIUS / eye_model.radius if eye_model.radius > 0 else 1.0
        img = frame.as_uint8()
        h, w = img.shape
        small_w, small_h = max(1, int(round(w * scale))), max(1, int(round(h * scale)))
        sx, sy = small_w / float(w), small_h / float(h)
        small = cv2.resize(img, (small_w, small_h), interpolation=cv2.INTER_CUBIC)
        _, pupil_mask = cv2.threshold(small, settings.dark_threshold(frame.eye), 255, cv2.THRESH_BINARY_INV)
        image_rect = Rect(0, 0, small_w, small_h)

        # iris approximated from the globe
        iris_x, iris_y, iris_r = pupil.cx * sx, pupil.cy * sy, eye_model.radius / 2.0 * sx
        globe_x, globe_y, globe_r = eye_model.cx * sx, eye_model.cy * sy, eye_model.radius * sx

        box_w = int(iris_r * 0.8)
        center_gap = int(iris_r * 0.3)
        top_y = int(max(iris_y - iris_r * 1.1, globe_y - iris_r * 1.1))
        top_h = int(iris_r)
        bottom_y = int(globe_y + iris_r / 2.0)
        bottom_h = int(iris_r * 1.3)
        x_left = int(max(globe_x - globe_r, min(globe_x - iris_r / 2, iris_x - box_w - center_gap)))
        x_right = int(min(globe_x + globe_r - box_w, max(globe_x + iris_r / 2, iris_x + center_gap)))
        x_right = int(min(small_w - box_w, x_right))

        def default(p0, p1) -> Segment:
            return (p0[0] * sx, p0[1] * sy), (p1[0] * sx, p1[1] * sy)

        # bottom lids first, they move less
        bl_roi = Rect(x_left, bottom_y, box_w, bottom_h).intersect(image_rect)
        br_roi = Rect(x_right, bottom_y, box_w, bottom_h).intersect(image_rect)
        bl, bl_found = self._find_segment(small, pupil_mask, EyelidCorner.BOTTOM_LEFT, bl_roi,
                                          default(fallback.lower[0], fallback.lower[1]), settings)
        br, br_found = self._find_segment(small, pupil_mask, EyelidCorner.BOTTOM_RIGHT, br_roi,
                                          default(fallback.lower[2], fallback.lower[3]), settings)

        # top search box reaches down towards the bottom lid
        bottom_lid_y = max(bl[0][1], br[1][1])
        top_h = int(max(top_h, bottom_lid_y - 0.5 * iris_r - top_y))
        tl_roi = Rect(x_left, top_y, box_w, top_h).intersect(image_rect)
        tr_roi = Rect(x_right, top_y, box_w, top_h).intersect(image_rect)
        tl, tl_found = self._find_segment(small, pupil_mask, EyelidCorner.TOP_LEFT, tl_roi,
                                          default(fallback.upper[0], fallback.upper[1]), settings)
        tr, tr_found = self._find_segment(small, pupil_mask, EyelidCorner.TOP_RIGHT, tr_roi,
                                          default(fallback.upper[2], fallback.upper[3]), settings)

        if not any((bl_found, br_found, tl_found, tr_found)):
            log.warning("Frame %d: no eyelid line above the vote threshold, using fixed eyelids",
                        frame.frame_number)
            return fallback

        def to_frame(seg: Segment):
            return [(seg[0][0] / sx, seg[0][1] / sy), (seg[1][0] / sx, seg[1][1] / sy)]

        return EyelidBoundary.from_points(
            upper=to_frame(tl) + to_frame(tr),
            lower=to_frame(bl) + to_frame(br),
        )

    @staticmethod
    def _find_segment(image: np.ndarray, pupil_mask: np.ndarray, corner: EyelidCorner, roi: Rect,
                      default: Segment, settings: EyeTrackingSettings) -> tuple[Segment, bool]:
        if roi.width < 2 or roi.height < 2:
            return default, False

        cos_lo, cos_hi = COS_RANGES[corner]
        patch = cv2.blur(image[roi.slices], (4, 4)).astype(np.float32)

        # low pass along the lid, second derivative across it
        sob_y = np.clip(cv2.Sobel(patch, cv2.CV_32F, 0, 2, ksize=5), 0, 255)
        sob_x = np.clip(cv2.Sobel(patch, cv2.CV_32F, 2, 0, ksize=5), 0, 255)
        angle = math.asin((cos_lo + cos_hi) / 2.0)
        edges = np.clip(sob_y * math.cos(angle) + sob_x * math.sin(angle), 0, 255).astype(np.uint8)
        edges = cv2.equalizeHist(edges)
        _, edges = cv2.threshold(edges, EDGE_THRESHOLD, 255, cv2.THRESH_BINARY)
        edges[pupil_mask[roi.slices] > 0] = 0

        lines = cv2.HoughLines(edges, HOUGH_RHO_RESOLUTION, math.radians(HOUGH_THETA_RESOLUTION_DEG),
                               settings.hough_vote_threshold)
        if lines is None:
            return default, False

        best, found = default, False
        # top lids keep the lowest line (largest y), bottom lids the highest
        best_y = 0.0 if corner.is_top else float(roi.height)
        for rho, theta in lines[:HOUGH_MAX_LINES, 0]:
            c, s = math.cos(theta), math.sin(theta)
            if not (cos_lo <= c <= cos_hi) or s <= 0.1:
                continue
            y1 = rho / s                      # at x = 0 of the box
            y2 = -(c / s) * roi.width + y1    # at x = box width
            y_key = {
                EyelidCorner.TOP_LEFT: y2,
                EyelidCorner.TOP_RIGHT: y1,
                EyelidCorner.BOTTOM_LEFT: y1,
                EyelidCorner.BOTTOM_RIGHT: y2,
            }[corner]
            better = y_key > best_y if corner.is_top else y_key < best_y
            if better:
                best_y = y_key
                best = (roi.x, roi.y + y1), (roi.x + roi.width, roi.y + y2)
                found = True
        return best, found


def make_eyelid_detector(method: EyelidMethod) -> EyelidDetector:
    if method == EyelidMethod.NONE:
        return NoEyelidDetector()
    if method == EyelidMethod.FIXED:
        return FixedEyelidDetector()
    if method == EyelidMethod.HOUGH_LINES:
        return HoughEyelidDetector()
    raise ValueError(f"Unknown eyelid method: {method}")
