"""
Coarse pupil localisation.

Both strategies work on the cropped region of the frame and report a
degenerate ellipse with ``PUPIL_NOT_FOUND`` instead of raising when nothing
dark enough and plausibly sized is visible.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
import math

import cv2
import numpy as np

from torsion_tracker.config.tracking_settings import EyeTrackingSettings, PupilMethod, MIN_CROPPED_SIZE
from torsion_tracker.data.eye_data import ImageFrame, ProcessFrameResult
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Rect
from torsion_tracker.helpers.image_helpers import resize_to_width
from torsion_tracker.logging_utils.logging_setup import get_logger

log = get_logger(__name__)

PupilEstimate = tuple[Ellipse2D, ProcessFrameResult]

BLOB_WORKING_WIDTH = 200
MIN_BLOB_SCORE = 0.1
EDGE_MARGIN_PIX = 2


def search_region(frame: ImageFrame, settings: EyeTrackingSettings) -> Rect:
    """Frame minus the eye's cropping margins."""
    return Rect.from_margins(frame.shape, settings.cropping(frame.eye))


def _not_found() -> PupilEstimate:
    return Ellipse2D.empty(), ProcessFrameResult.PUPIL_NOT_FOUND


class PupilLocator(ABC):
    """Locate(frame, settings) -> (pupil ellipse, status)."""

    method: PupilMethod

    def locate(self, frame: ImageFrame, settings: EyeTrackingSettings) -> PupilEstimate:
        roi_rect = search_region(frame, settings)
        if roi_rect.width < MIN_CROPPED_SIZE or roi_rect.height < MIN_CROPPED_SIZE:
            log.debug("Frame %d: cropped region %s too small", frame.frame_number, roi_rect)
            return _not_found()

        roi = frame.as_uint8()[roi_rect.slices]
        ellipse = self._locate_in_roi(roi, settings.dark_threshold(frame.eye), settings)
        if ellipse is None or ellipse.is_empty:
            return _not_found()
        return ellipse.translated(roi_rect.x, roi_rect.y), ProcessFrameResult.GOOD

    @abstractmethod
    def _locate_in_roi(self, roi: np.ndarray, threshold: int, settings: EyeTrackingSettings) -> Ellipse2D | None:
        """Ellipse in ROI coordinates, or None."""


class BlobPupilLocator(PupilLocator):
    """
    Threshold the downscaled ROI, clean it morphologically and keep the most
    compact dark connected component within the size bounds. The ellipse is
    fitted to that component's contour, refound at full resolution in a box
    around the chosen blob so large frames keep sub-pixel accuracy.
    """
    method = PupilMethod.BLOB

    def __init__(self, working_width: int = BLOB_WORKING_WIDTH):
        self.working_width = working_width
        self._kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))

    def _binarize(self, gray: np.ndarray, threshold: int) -> np.ndarray:
        # pupil dark -> white
        _, bw = cv2.threshold(gray, threshold, 255, cv2.THRESH_BINARY_INV)
        bw = cv2.morphologyEx(bw, cv2.MORPH_OPEN, self._kernel)
        return cv2.morphologyEx(bw, cv2.MORPH_CLOSE, self._kernel)

    def _locate_in_roi(self, roi, threshold, settings):
        small, scale = resize_to_width(roi, self.working_width)
        bw = self._binarize(small, threshold)

        num_labels, labels, stats, centroids = cv2.connectedComponentsWithStats(bw, connectivity=8,
                                                                                ltype=cv2.CV_32S)
        if num_labels <= 1:
            return None

        h, w = bw.shape
        min_area = settings.min_pupil_area_pix * scale * scale
        max_extent = 2.0 * settings.max_iris_radius_pix * scale

        best_label, best_score = -1, MIN_BLOB_SCORE
        for label in range(1, num_labels):
            x, y, bw_w, bw_h, area = stats[label]
            if area < min_area or max(bw_w, bw_h) > max_extent:
                continue
            score = area / float(bw_w * bw_h)
            touches_edge = (x <= EDGE_MARGIN_PIX or y <= EDGE_MARGIN_PIX
                            or x + bw_w >= w - EDGE_MARGIN_PIX or y + bw_h >= h - EDGE_MARGIN_PIX)
            if touches_edge:
                score *= 0.5
            if score > best_score:
                best_label, best_score = label, score

        if best_label < 0:
            log.debug("No blob passed the size/compactness bounds (%d candidates)", num_labels - 1)
            return None

        if scale < 1.0:
            refit = self._refit_full_resolution(roi, threshold, stats[best_label], centroids[best_label], scale)
            if refit is not None:
                return refit

        component = np.where(labels == best_label, 255, 0).astype(np.uint8)
        return _fit_blob(component).scaled(scale)

    def _refit_full_resolution(self, roi: np.ndarray, threshold: int, stat: np.ndarray,
                               centroid: np.ndarray, scale: float) -> Ellipse2D | None:
        """Same blob, thresholded again in a full-resolution box around its downscaled bounds."""
        x, y, w, h = (int(v) for v in stat[:4])
        pad = int(math.ceil(1.0 / scale)) + EDGE_MARGIN_PIX
        box = Rect(int(math.floor(x / scale)) - pad, int(math.floor(y / scale)) - pad,
                   int(math.ceil(w / scale)) + 2 * pad, int(math.ceil(h / scale)) + 2 * pad)
        box = box.intersect(Rect(0, 0, roi.shape[1], roi.shape[0]))
        if box.is_empty:
            return None

        bw = self._binarize(roi[box.slices], threshold)
        num_labels, labels = cv2.connectedComponents(bw, connectivity=8, ltype=cv2.CV_32S)
        if num_labels <= 1:
            return None

        # component under the downscaled blob centre, else the largest one in the box
        px = int(round((centroid[0] + 0.5) / scale - 0.5)) - box.x
        py = int(round((centroid[1] + 0.5) / scale - 0.5)) - box.y
        label = int(labels[py, px]) if 0 <= px < box.width and 0 <= py < box.height else 0
        if label == 0:
            counts = np.bincount(labels.ravel())
            counts[0] = 0
            label = int(np.argmax(counts))

        component = np.where(labels == label, 255, 0).astype(np.uint8)
        return _fit_blob(component).translated(box.x, box.y)


def _fit_blob(component: np.ndarray) -> Ellipse2D:
    """Ellipse of a binary blob: contour fit, or an equal-area circle for tiny blobs."""
    contours, _ = cv2.findContours(component, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    cnt = max(contours, key=cv2.contourArea)
    if len(cnt) >= 5:
        e = Ellipse2D.from_opencv(cv2.fitEllipse(cnt))
        # the contour runs through boundary pixel centres, half a pixel inside the edge
        return Ellipse2D(e.cx, e.cy, e.major + 0.5, e.minor + 0.5, e.angle_deg)
    m = cv2.moments(component, binaryImage=True)
    r = math.sqrt(m["m00"] / math.pi)
    return Ellipse2D.circle(m["m10"] / m["m00"], m["m01"] / m["m00"], r)


class CentroidPupilLocator(PupilLocator):
    """
    Darkness-weighted centroid and second moments of the thresholded ROI.
    No contour extraction; fast but sensitive to other dark structures in the ROI.
    """
    method = PupilMethod.CENTROID

    def _locate_in_roi(self, roi, threshold, settings):
        dark = roi <= threshold
        count = int(np.count_nonzero(dark))
        if count < max(settings.min_pupil_area_pix, 1.0):
            return None
        if math.sqrt(count / math.pi) > settings.max_iris_radius_pix:
            return None

        # weight 1 for pixels at 0, falling to 1/(threshold+1) at the threshold
        weights = np.where(dark, (threshold + 1.0 - roi.astype(np.float32)) / (threshold + 1.0), 0.0)
        m = cv2.moments(weights.astype(np.float32))
        if m["m00"] <= 0:
            return None

        cx, cy = m["m10"] / m["m00"], m["m01"] / m["m00"]
        cov = np.array([[m["mu20"], m["mu11"]],
                        [m["mu11"], m["mu02"]]]) / m["m00"]
        lam, vec = np.linalg.eigh(cov)
        lam = np.clip(lam, 0.0, None)
        # uniform ellipse: variance along an axis = radius^2 / 4
        major, minor = 2.0 * math.sqrt(lam[1]), 2.0 * math.sqrt(lam[0])
        angle = math.degrees(math.atan2(vec[1, 1], vec[0, 1]))
        return Ellipse2D(cx, cy, major, minor, angle)


def make_pupil_locator(method: PupilMethod) -> PupilLocator:
    if method == PupilMethod.BLOB:
        return BlobPupilLocator()
    if method == PupilMethod.CENTROID:
        return CentroidPupilLocator()
    raise ValueError(f"Unknown pupil method: {method}")
