"""
Corneal reflections: small saturated blobs around the coarse pupil.

The search box spans three pupil diameters horizontally and one and a half
vertically, centred on the pupil. Reflections are reported as ellipses
(centroid, half the blob's bounding box), nearest to the pupil first.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
import math

import cv2
import numpy as np

from torsion_tracker.config.tracking_settings import CornealReflectionMethod, EyeTrackingSettings
from torsion_tracker.data.eye_data import ImageFrame
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Rect
from torsion_tracker.logging_utils.logging_setup import get_logger

log = get_logger(__name__)

MIN_BLOB_SCORE = 0.1


class CornealReflectionLocator(ABC):
    method: CornealReflectionMethod

    @abstractmethod
    def find_reflections(self, frame: ImageFrame, pupil: Ellipse2D,
                         settings: EyeTrackingSettings) -> tuple[Ellipse2D, ...]:
        ...


class NoCornealReflectionLocator(CornealReflectionLocator):
    method = CornealReflectionMethod.NONE

    def find_reflections(self, frame, pupil, settings):
        return ()


class BlobCornealReflectionLocator(CornealReflectionLocator):
    """
    Median-filter the search region, keep pixels brighter than the eye's bright
    threshold and accept connected components whose area lies between the
    minimum and maximum reflection disc and whose bounding box is filled
    well enough.
    """
    method = CornealReflectionMethod.BLOB

    def find_reflections(self, frame, pupil, settings):
        if pupil.is_empty:
            return ()
        diameter = 2.0 * pupil.major
        roi = Rect.around(pupil.cx, pupil.cy, 1.5 * diameter, 0.75 * diameter)
        roi = roi.intersect(Rect(0, 0, frame.width, frame.height))
        if roi.is_empty:
            return ()

        # odd kernel, centroids do not shift
        ksize = 2 * int(settings.min_cr_radius_pix // 2) + 1
        patch = cv2.medianBlur(np.ascontiguousarray(frame.as_uint8()[roi.slices]), ksize)
        _, bw = cv2.threshold(patch, settings.bright_threshold(frame.eye), 255, cv2.THRESH_BINARY)

        num_labels, _, stats, centroids = cv2.connectedComponentsWithStats(bw, connectivity=8, ltype=cv2.CV_32S)
        min_area = math.pi * settings.min_cr_radius_pix ** 2
        max_area = math.pi * settings.max_cr_radius_pix ** 2

        found = []
        for label in range(1, num_labels):
            _, _, w, h, area = stats[label]
            if not min_area <= area <= max_area:
                continue
            if area / float(w * h) <= MIN_BLOB_SCORE:
                continue
            cx, cy = centroids[label]
            found.append(Ellipse2D(float(cx) + roi.x, float(cy) + roi.y, w / 2.0, h / 2.0, 0.0))

        found.sort(key=lambda cr: math.hypot(cr.cx - pupil.cx, cr.cy - pupil.cy))
        if len(found) > settings.max_corneal_reflections:
            log.debug("Frame %d: %d reflection candidates, keeping the nearest %d", frame.frame_number,
                      len(found), settings.max_corneal_reflections)
        return tuple(found[:settings.max_corneal_reflections])


def make_corneal_reflection_locator(method: CornealReflectionMethod) -> CornealReflectionLocator:
    if method == CornealReflectionMethod.NONE:
        return NoCornealReflectionLocator()
    if method == CornealReflectionMethod.BLOB:
        return BlobCornealReflectionLocator()
    raise ValueError(f"Unknown corneal reflection method: {method}")
