"""
Torsion by masked normalised cross-correlation of polar iris strips.

The current strip's central turn is compared with the reference strip at every
integer row shift in [-M, M]; each comparison is a Pearson correlation over the
samples valid in both strips. The best shift is refined with a 3-point parabola.
"""
from __future__ import annotations

import numpy as np

from torsion_tracker.calibration.eye_calibration import EyePhysicalModel, TorsionReference
from torsion_tracker.config.tracking_settings import EyeTrackingSettings
from torsion_tracker.data.eye_data import ImageFrame, TorsionResult
from torsion_tracker.errors import CalibrationStateError
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Mask
from torsion_tracker.helpers.buffer_pool import BufferPool
from torsion_tracker.logging_utils.logging_setup import get_logger
from torsion_tracker.torsion.polar_strip import PolarStrip, get_torsion_image, strip_rows

log = get_logger(__name__)

# shifts this close to the peak belong to the peak, not the sidelobes
PEAK_HALF_WIDTH = 2


def masked_correlation(current: PolarStrip, reference_pattern: np.ndarray, reference_valid: np.ndarray,
                       min_valid_fraction: float) -> np.ndarray:
    """
    Correlation for each shift s in [-M, M] (index s + M). NaN where fewer than
    `min_valid_fraction` of the compared samples are valid in both strips or the
    overlap has no contrast.
    """
    M, N = current.margin_rows, current.turn_rows
    template = current.pattern[M:M + N]
    template_valid = current.valid[M:M + N] > 0
    n_total = template.size

    scores = np.full(2 * M + 1, np.nan)
    for i, s in enumerate(range(-M, M + 1)):
        ref = reference_pattern[M + s:M + s + N]
        both = template_valid & (reference_valid[M + s:M + s + N] > 0)
        n = np.count_nonzero(both)
        if n < 2 or n < min_valid_fraction * n_total:
            continue
        a = template[both].astype(np.float64)
        b = ref[both].astype(np.float64)
        a -= a.mean()
        b -= b.mean()
        denom = np.sqrt(np.dot(a, a) * np.dot(b, b))
        if denom > 0:
            scores[i] = np.dot(a, b) / denom
    return scores


def refine_peak(scores: np.ndarray, idx: int) -> float:
    """Sub-shift offset in [-0.5, 0.5] of the parabola through the peak and its neighbours."""
    if idx <= 0 or idx >= len(scores) - 1:
        return 0.0
    c_m, c_0, c_p = scores[idx - 1], scores[idx], scores[idx + 1]
    if not (np.isfinite(c_m) and np.isfinite(c_p)):
        return 0.0
    denom = c_m - 2.0 * c_0 + c_p
    if denom >= 0:
        return 0.0
    return float(np.clip(0.5 * (c_m - c_p) / denom, -0.5, 0.5))


def peak_quality(scores: np.ndarray, idx: int) -> float:
    """100 * (peak - mean sidelobe), clipped to [0, 100]."""
    peak = scores[idx]
    offsets = np.abs(np.arange(len(scores)) - idx)
    side = scores[(offsets > PEAK_HALF_WIDTH) & np.isfinite(scores)]
    sidelobe = max(float(side.mean()), 0.0) if side.size else 0.0
    return 100.0 * float(np.clip(peak - sidelobe, 0.0, 1.0))


class TorsionEstimator:
    """
    Polar strips and torsion angles for one pipeline. Owns the scratch buffers
    used for resampling, so an estimator must not be shared between threads.
    """

    def __init__(self, pool: BufferPool | None = None):
        self.pool = pool or BufferPool()

    def get_torsion_image(self, frame: ImageFrame, eye_model: EyePhysicalModel, mask: Mask | None,
                          pupil: Ellipse2D, iris: Ellipse2D, settings: EyeTrackingSettings) -> PolarStrip:
        return get_torsion_image(frame.as_uint8(), eye_model, mask, pupil, iris, settings, self.pool)

    def make_reference(self, frame: ImageFrame, eye_model: EyePhysicalModel, mask: Mask | None,
                       pupil: Ellipse2D, iris: Ellipse2D, settings: EyeTrackingSettings) -> TorsionReference:
        """Reference strip from this frame. Raises PreconditionError when nothing of the iris is usable."""
        strip = self.get_torsion_image(frame, eye_model, mask, pupil, iris, settings)
        log.debug("Frame %d: reference strip %s, %.0f%% valid", frame.frame_number,
                  strip.pattern.shape, 100.0 * strip.valid_fraction)
        return TorsionReference(
            pattern=strip.pattern,
            valid=strip.valid,
            frame_number=frame.frame_number,
            timestamp=frame.timestamp,
            pupil=pupil,
            iris=iris,
            angular_resolution=settings.torsion_angular_resolution,
            max_torsion_deg=settings.max_torsion_deg,
            iris_width=settings.torsion_image_iris_width,
        )

    def calculate_torsion_angle(self, frame: ImageFrame, eye_model: EyePhysicalModel,
                                reference: TorsionReference | None, mask: Mask | None,
                                pupil: Ellipse2D, iris: Ellipse2D,
                                settings: EyeTrackingSettings) -> TorsionResult:
        """
        Torsion of `frame` relative to `reference` in degrees, positive counter-clockwise.

        Masked pixels never influence the result. When too little of the iris is
        valid the result is angle 0, quality 0, valid=False.
        """
        if reference is None:
            raise CalibrationStateError("torsion needs a reference pattern; capture one first")
        if not reference.matches(settings.torsion_angular_resolution, settings.max_torsion_deg,
                                 settings.torsion_image_iris_width):
            raise CalibrationStateError("torsion reference was captured with different strip settings; "
                                        "capture a new reference")

        strip = self.get_torsion_image(frame, eye_model, mask, pupil, iris, settings)
        M, _ = strip_rows(settings)
        scores = masked_correlation(strip, reference.pattern, reference.valid,
                                    settings.torsion_min_valid_fraction)
        if not np.any(np.isfinite(scores)):
            log.debug("Frame %d: no usable overlap with the reference", frame.frame_number)
            return TorsionResult(angle_deg=0.0, torsion_image=strip.pattern, quality=0.0, valid=False)

        idx = int(np.nanargmax(scores))
        shift = idx - M + refine_peak(scores, idx)
        return TorsionResult(
            angle_deg=shift / settings.torsion_angular_resolution,
            torsion_image=strip.pattern,
            quality=peak_quality(scores, idx),
            valid=True,
        )
