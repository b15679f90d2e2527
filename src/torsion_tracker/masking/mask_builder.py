from __future__ import annotations

import cv2
import numpy as np

from torsion_tracker.calibration.eye_calibration import EyePhysicalModel
from torsion_tracker.config.tracking_settings import EyeTrackingSettings
from torsion_tracker.data.eye_data import ImageFrame, EyelidBoundary
from torsion_tracker.geometry.conics import points_inside_ellipse
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Mask, full_mask

PARABOLA_SAMPLES = 21


def fit_lid_parabola(points: np.ndarray, eye_model: EyePhysicalModel, n: int = PARABOLA_SAMPLES) -> np.ndarray:
    """Least-squares parabola y(x) through the points, sampled across the globe width. (n, 2) array."""
    pts = np.asarray(points, dtype=np.float64)
    a, b, c = np.polyfit(pts[:, 0], pts[:, 1], 2)
    xs = np.linspace(eye_model.cx - eye_model.radius, eye_model.cx + eye_model.radius, n)
    return np.column_stack([xs, a * xs * xs + b * xs + c])


def eyelid_polygon(eyelids: EyelidBoundary, eye_model: EyePhysicalModel, margin: float) -> np.ndarray:
    """
    Closed polygon of the open eye: upper parabola left to right, lower parabola right to left.
    Lid points are pulled `margin` pixels towards the eye; the globe's left/right
    extremes anchor both parabolas (counted twice).
    """
    up = eyelids.upper.copy()
    lo = eyelids.lower.copy()
    up[:, 1] += margin
    lo[:, 1] -= margin

    u, l = eyelids.upper, eyelids.lower
    c1 = (eye_model.cx - eye_model.radius, (u[0, 1] + u[1, 1] + 1.5 * l[0, 1] + 1.5 * l[1, 1]) / 5.0)
    c2 = (eye_model.cx + eye_model.radius, (u[3, 1] + u[2, 1] + 1.5 * l[3, 1] + 1.5 * l[2, 1]) / 5.0)
    anchors = np.array([c1, c2, c1, c2])

    top = fit_lid_parabola(np.vstack([anchors, up]), eye_model)
    bottom = fit_lid_parabola(np.vstack([anchors, lo]), eye_model)
    return np.vstack([top, bottom[::-1]])


class MaskBuilder:
    """
    GetMask(frame, eyelids, eye model, settings) -> uint8 mask, 1 = usable for torsion.

    A pixel is valid when it is inside the eyelid polygon, not brighter than the
    bright threshold (specular reflections) and inside the annulus between the
    pupil and max_iris_radius_pix around the pupil (or globe) centre.
    """

    def get_mask(self, frame: ImageFrame, eyelids: EyelidBoundary, eye_model: EyePhysicalModel,
                 settings: EyeTrackingSettings, pupil: Ellipse2D | None = None,
                 out: np.ndarray | None = None) -> Mask:
        img = frame.as_uint8()
        h, w = img.shape
        mask = out if out is not None and out.shape == (h, w) and out.dtype == np.uint8 else np.empty((h, w), np.uint8)

        # reflections
        np.less_equal(img, settings.bright_threshold(frame.eye), out=mask.view(bool))

        if not eyelids.full_frame and eye_model is not None and not eye_model.is_empty:
            lid_mask = np.zeros((h, w), dtype=np.uint8)
            poly = np.round(eyelid_polygon(eyelids, eye_model, settings.eyelid_mask_margin_pix)).astype(np.int32)
            cv2.fillPoly(lid_mask, [poly], 1)
            mask &= lid_mask

        self._apply_annulus(mask, eye_model, settings, pupil)
        return mask

    @staticmethod
    def _apply_annulus(mask: np.ndarray, eye_model: EyePhysicalModel | None, settings: EyeTrackingSettings,
                       pupil: Ellipse2D | None):
        if pupil is not None and not pupil.is_empty:
            cx, cy = pupil.center
        elif eye_model is not None and not eye_model.is_empty:
            cx, cy = eye_model.center
        else:
            return
        h, w = mask.shape
        ys, xs = np.ogrid[0:h, 0:w]
        r_max = settings.max_iris_radius_pix
        outside = (xs - cx) ** 2 + (ys - cy) ** 2 > r_max * r_max
        mask[outside] = 0
        if pupil is not None and not pupil.is_empty:
            mask[points_inside_ellipse(pupil, xs, ys)] = 0

    @staticmethod
    def get_full_mask(frame: ImageFrame) -> Mask:
        """All-valid mask: the "whole iris" torsion path."""
        return full_mask(frame.shape)
