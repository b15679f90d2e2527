from __future__ import annotations

import numpy as np

from torsion_tracker.config.tracking_settings import EyeTrackingSettings, IrisMethod
from torsion_tracker.data.eye_data import ImageFrame
from torsion_tracker.geometry.conics import fit_circle
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Mask
from torsion_tracker.logging_utils.logging_setup import get_logger
from torsion_tracker.position.edge_scan import radial_edge_points, scan_angles, EdgeScanParams

log = get_logger(__name__)

# lids usually cover the top and bottom of the limbus; scan left and right only
LATERAL_SECTORS = ((-40.0, 40.0), (140.0, 220.0))
N_RAYS = 180
MIN_IRIS_POINTS = 6


class IrisFinder:
    """
    Iris as a circle around the pupil.

    FIXED_RADIUS: the configured iris radius of the eye.
    EDGE_FITTING: limbus edge points from lateral radial scans, least-squares circle;
    falls back to the fixed radius when too few edges are found.
    """

    scan = EdgeScanParams(polarity=1, mask_offset=-2.0, min_strength=1.0)

    def __init__(self, method: IrisMethod = IrisMethod.FIXED_RADIUS):
        self.method = method

    def find_iris(self, frame: ImageFrame, pupil: Ellipse2D, mask: Mask | None,
                  settings: EyeTrackingSettings) -> Ellipse2D:
        if pupil.is_empty:
            return Ellipse2D.empty()
        fixed = Ellipse2D.circle(pupil.cx, pupil.cy, settings.iris_radius_pix(frame.eye))
        if self.method == IrisMethod.FIXED_RADIUS:
            return fixed

        r_min = 1.3 * pupil.radius
        r_max = settings.max_iris_radius_pix
        pts = radial_edge_points(frame.as_uint8(), pupil.center, r_min, r_max,
                                 scan_angles(N_RAYS, LATERAL_SECTORS), mask, self.scan)
        if len(pts) < MIN_IRIS_POINTS:
            log.debug("Frame %d: %d limbus points, using fixed iris radius", frame.frame_number, len(pts))
            return fixed

        circle = fit_circle(pts)
        if np.hypot(circle.cx - pupil.cx, circle.cy - pupil.cy) > pupil.radius:
            # lateral arcs only constrain the radius well; keep the iris concentric
            r = float(np.median(np.hypot(pts[:, 0] - pupil.cx, pts[:, 1] - pupil.cy)))
            return Ellipse2D.circle(pupil.cx, pupil.cy, r)
        return circle
