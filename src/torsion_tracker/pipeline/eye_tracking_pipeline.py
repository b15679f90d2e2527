"""
Per-eye processing: pupil -> eyelids -> corneal reflections -> mask ->
sub-pixel position -> iris -> torsion.

One pipeline serves one eye and one thread. Strategies are fixed when the
pipeline is built; a different selection needs a new pipeline.
"""
from __future__ import annotations

import cv2
import numpy as np

from torsion_tracker.calibration.eye_calibration import (
    CalibrationSnapshot, EyeCalibration, EyePhysicalModel, TorsionReference,
)
from torsion_tracker.config.tracking_settings import EyeTrackingSettings
from torsion_tracker.corneal_reflection.reflection_locator import make_corneal_reflection_locator
from torsion_tracker.data.eye_data import EyeData, EyelidBoundary, ImageFrame, ProcessFrameResult, TorsionResult
from torsion_tracker.errors import CalibrationStateError, FrameError, PreconditionError, SettingsError
from torsion_tracker.eyelids.eyelid_detector import make_eyelid_detector
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.geometry.primitives import Mask
from torsion_tracker.helpers.buffer_pool import BufferPool
from torsion_tracker.logging_utils.logging_setup import get_logger
from torsion_tracker.masking.mask_builder import MaskBuilder
from torsion_tracker.position.iris_finder import IrisFinder
from torsion_tracker.position.position_refiner import make_position_refiner
from torsion_tracker.pupil.pupil_locator import make_pupil_locator
from torsion_tracker.torsion.torsion_estimator import TorsionEstimator

log = get_logger(__name__)

# numeric failures of a single frame; reported as ERROR, never raised
NUMERIC_ERRORS = (cv2.error, np.linalg.LinAlgError, FloatingPointError, ArithmeticError, ValueError)


class _Geometry:
    """Everything a frame yields before the torsion stage."""
    __slots__ = ("pupil", "iris", "eyelids", "reflections", "mask", "eye_model")

    def __init__(self, pupil: Ellipse2D, iris: Ellipse2D, eyelids: EyelidBoundary,
                 reflections: tuple[Ellipse2D, ...], mask: Mask, eye_model: EyePhysicalModel):
        self.pupil = pupil
        self.iris = iris
        self.eyelids = eyelids
        self.reflections = reflections
        self.mask = mask
        self.eye_model = eye_model


class EyeTrackingPipeline:
    def __init__(self, settings: EyeTrackingSettings):
        if not isinstance(settings, EyeTrackingSettings):
            raise SettingsError(f"expected EyeTrackingSettings, got {type(settings).__name__}")
        self.settings = settings
        self.pupil_locator = make_pupil_locator(settings.pupil_method)
        self.eyelid_detector = make_eyelid_detector(settings.eyelid_method)
        self.reflection_locator = make_corneal_reflection_locator(settings.corneal_reflection_method)
        self.mask_builder = MaskBuilder()
        self.position_refiner = make_position_refiner(settings.position_method)
        self.iris_finder = IrisFinder(settings.iris_method)
        self.pool = BufferPool()
        self.torsion_estimator = TorsionEstimator(self.pool)
        log.debug("Pipeline built: pupil=%s eyelids=%s position=%s iris=%s reflections=%s",
                  *(m.value for m in settings.strategy_key))

    def _resolve_settings(self, settings: EyeTrackingSettings | None) -> EyeTrackingSettings:
        if settings is None:
            return self.settings
        if not isinstance(settings, EyeTrackingSettings):
            raise SettingsError(f"expected EyeTrackingSettings, got {type(settings).__name__}")
        if settings.strategy_key != self.settings.strategy_key:
            raise SettingsError("settings select different strategies than this pipeline was built for")
        return settings

    @staticmethod
    def _check_frame(frame: ImageFrame) -> None:
        if not isinstance(frame, ImageFrame):
            raise FrameError(f"expected an ImageFrame, got {type(frame).__name__}")

    # ---------- stages ----------
    def _find_geometry(self, frame: ImageFrame, snapshot: CalibrationSnapshot,
                       settings: EyeTrackingSettings) -> _Geometry | None:
        coarse, status = self.pupil_locator.locate(frame, settings)
        if status != ProcessFrameResult.GOOD:
            return None

        eye_model = snapshot.eye_model
        if eye_model is None:
            eye_model = EyePhysicalModel.provisional(coarse, settings.iris_radius_pix(frame.eye))

        eyelids = self.eyelid_detector.find_eyelids(frame, coarse, eye_model, settings)
        reflections = self.reflection_locator.find_reflections(frame, coarse, settings)
        if settings.use_torsion_mask:
            mask = self.mask_builder.get_mask(frame, eyelids, eye_model, settings, pupil=coarse,
                                              out=self.pool.get("mask", frame.shape, np.uint8))
        else:
            mask = self.mask_builder.get_full_mask(frame)

        pupil = self.position_refiner.refine(frame, coarse, mask, settings)
        iris = self.iris_finder.find_iris(frame, pupil, mask, settings)
        return _Geometry(pupil, iris, eyelids, reflections, mask, eye_model)

    @staticmethod
    def _eye_data(frame: ImageFrame, geo: _Geometry, torsion: TorsionResult | None,
                  settings: EyeTrackingSettings) -> EyeData:
        if torsion is None:
            angle, quality, status = float("nan"), 100.0, ProcessFrameResult.GOOD
        else:
            angle, quality = torsion.angle_deg, torsion.quality
            low = not torsion.valid or quality < settings.min_torsion_quality
            status = ProcessFrameResult.LOW_QUALITY if low else ProcessFrameResult.GOOD
        return EyeData(
            frame_number=frame.frame_number,
            timestamp=frame.timestamp,
            eye=frame.eye,
            pupil=geo.pupil,
            iris=geo.iris,
            eyelids=geo.eyelids,
            torsion_angle_deg=angle,
            torsion_quality=quality,
            status=status,
            corneal_reflections=geo.reflections,
        )

    # ---------- public ----------
    def process(self, frame: ImageFrame, calibration: EyeCalibration,
                settings: EyeTrackingSettings | None = None) -> EyeData:
        """
        Process one frame. Never writes to `calibration`.

        Raises FrameError/SettingsError for malformed input and CalibrationStateError
        when torsion is requested from a calibration that is not READY. Segmentation
        misses and numeric failures come back as the EyeData status.
        """
        self._check_frame(frame)
        settings = self._resolve_settings(settings)
        snapshot = calibration.snapshot()
        if settings.calculate_torsion and not snapshot.is_ready:
            raise CalibrationStateError(
                f"{snapshot.eye.name}: torsion requested but calibration is {snapshot.state.name}")

        try:
            geo = self._find_geometry(frame, snapshot, settings)
            if geo is None:
                return EyeData.not_found(frame)

            torsion = None
            if settings.calculate_torsion:
                torsion = self.torsion_estimator.calculate_torsion_angle(
                    frame, geo.eye_model, snapshot.reference, geo.mask, geo.pupil, geo.iris, settings)
                if not torsion.valid:
                    log.warning("Frame %d (%s): iris fully masked, no torsion", frame.frame_number, frame.eye.name)
            return self._eye_data(frame, geo, torsion, settings)

        except PreconditionError:
            raise
        except NUMERIC_ERRORS as e:
            log.exception("Frame %d (%s): processing failed", frame.frame_number, frame.eye.name)
            return EyeData.not_found(frame, ProcessFrameResult.ERROR, f"{type(e).__name__}: {e}")

    def capture_reference(self, frame: ImageFrame, calibration: EyeCalibration,
                          settings: EyeTrackingSettings | None = None) -> tuple[EyeData, TorsionReference]:
        """
        Torsion reference from this frame, without correlating. The caller stores it
        with `calibration.set_reference`. Needs an eye model and a frame with a pupil.
        """
        self._check_frame(frame)
        settings = self._resolve_settings(settings)
        snapshot = calibration.snapshot()
        if not snapshot.has_eye_model:
            raise CalibrationStateError(f"{snapshot.eye.name}: set the eye model before capturing a reference")

        geo = self._find_geometry(frame, snapshot, settings)
        if geo is None:
            raise CalibrationStateError(f"frame {frame.frame_number}: no pupil found, cannot capture a reference")
        reference = self.torsion_estimator.make_reference(frame, geo.eye_model, geo.mask, geo.pupil, geo.iris,
                                                          settings)
        return self._eye_data(frame, geo, None, settings), reference
