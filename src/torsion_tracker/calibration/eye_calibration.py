"""
Per-eye calibration: the physical eye-globe model and the torsion reference.

State machine::

    UNCALIBRATED --set_eye_model--> MODEL_SET --set_reference--> READY
         ^                              ^  |                       |
         |                              |  +---set_eye_model-------+  (reference dropped)
         +----------reset---------------+<---reset_reference-------+

A stored reference is validated when it is set, so the "reference stored" and
"ready" stages are one state. Writers swap an immutable CalibrationSnapshot under
a lock; pipeline threads read one snapshot per frame and never write.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum, auto
import threading

import numpy as np

from torsion_tracker.data.eye_data import Eye, EyeData
from torsion_tracker.errors import CalibrationStateError, PreconditionError
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.logging_utils.logging_setup import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class EyePhysicalModel:
    """Idealised eye globe in image coordinates. radius == 0 means no model."""
    cx: float = 0.0
    cy: float = 0.0
    radius: float = 0.0

    def __post_init__(self):
        if self.radius < 0:
            raise PreconditionError(f"eye globe radius must be >= 0, got {self.radius}")

    @property
    def center(self) -> tuple[float, float]: return (self.cx, self.cy)

    @property
    def is_empty(self) -> bool:
        return self.radius <= 0

    @staticmethod
    def provisional(pupil: Ellipse2D, iris_radius_pix: float) -> "EyePhysicalModel":
        """Globe centred on the pupil with twice the iris radius; used until a model is set."""
        return EyePhysicalModel(pupil.cx, pupil.cy, 2.0 * float(iris_radius_pix))


@dataclass(frozen=True, eq=False)
class TorsionReference:
    """
    High-passed polar iris strip of the reference frame.

    pattern/valid are (rows, cols) with rows = angle samples over
    [-max_torsion_deg, 360 + max_torsion_deg) and cols = radial samples.
    """
    pattern: np.ndarray
    valid: np.ndarray
    frame_number: int
    timestamp: float
    pupil: Ellipse2D
    iris: Ellipse2D
    angular_resolution: float
    max_torsion_deg: float
    iris_width: int

    def __post_init__(self):
        if self.pattern.shape != self.valid.shape:
            raise PreconditionError("reference pattern and validity strip differ in shape")
        if not np.any(self.valid):
            raise PreconditionError("reference pattern has no valid samples")
        self.pattern.setflags(write=False)
        self.valid.setflags(write=False)

    def matches(self, angular_resolution: float, max_torsion_deg: float, iris_width: int) -> bool:
        return (self.angular_resolution == angular_resolution
                and self.max_torsion_deg == max_torsion_deg
                and self.iris_width == iris_width)


class CalibrationState(Enum):
    UNCALIBRATED = auto()
    MODEL_SET = auto()
    READY = auto()


@dataclass(frozen=True)
class CalibrationSnapshot:
    eye: Eye
    eye_model: EyePhysicalModel | None = None
    reference: TorsionReference | None = None

    @property
    def state(self) -> CalibrationState:
        if self.eye_model is None:
            return CalibrationState.UNCALIBRATED
        if self.reference is None:
            return CalibrationState.MODEL_SET
        return CalibrationState.READY

    @property
    def is_ready(self) -> bool:
        return self.state == CalibrationState.READY

    @property
    def has_eye_model(self) -> bool:
        return self.eye_model is not None


class EyeCalibration:
    """Thread-safe calibration context for one eye."""

    def __init__(self, eye: Eye = Eye.LEFT):
        self._lock = threading.Lock()
        self._snapshot = CalibrationSnapshot(eye=eye)

    # ---------- readers ----------
    def snapshot(self) -> CalibrationSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def eye(self) -> Eye:
        return self.snapshot().eye

    @property
    def state(self) -> CalibrationState:
        return self.snapshot().state

    @property
    def eye_model(self) -> EyePhysicalModel | None:
        return self.snapshot().eye_model

    @property
    def reference(self) -> TorsionReference | None:
        return self.snapshot().reference

    @property
    def is_ready(self) -> bool:
        return self.snapshot().is_ready

    # ---------- writers ----------
    def set_eye_model(self, model: EyePhysicalModel) -> None:
        """Allowed in any state; drops a stored reference, which is tied to the old globe geometry."""
        if model is None or model.is_empty:
            raise PreconditionError("set_eye_model needs a non-empty EyePhysicalModel")
        with self._lock:
            had_reference = self._snapshot.reference is not None
            self._snapshot = replace(self._snapshot, eye_model=model, reference=None)
            eye = self._snapshot.eye
        log.info("%s eye model set to center=(%.1f, %.1f) radius=%.1f%s", eye.name, model.cx, model.cy,
                 model.radius, " (reference discarded)" if had_reference else "")

    def set_reference(self, reference: TorsionReference) -> None:
        if reference is None:
            raise PreconditionError("set_reference needs a TorsionReference")
        with self._lock:
            if self._snapshot.eye_model is None:
                raise CalibrationStateError(
                    f"{self._snapshot.eye.name}: cannot set a torsion reference before the eye model")
            self._snapshot = replace(self._snapshot, reference=reference)
            eye = self._snapshot.eye
        log.info("%s torsion reference set from frame %d", eye.name, reference.frame_number)

    def reset_reference(self) -> bool:
        """
        Drop the stored reference (READY -> MODEL_SET).
        Without a stored reference this is a no-op and returns False.
        """
        with self._lock:
            if self._snapshot.reference is None:
                log.debug("%s reset_reference without a reference: ignored", self._snapshot.eye.name)
                return False
            self._snapshot = replace(self._snapshot, reference=None)
            eye = self._snapshot.eye
        log.info("%s torsion reference reset", eye.name)
        return True

    def reset(self) -> None:
        """Back to UNCALIBRATED."""
        with self._lock:
            self._snapshot = CalibrationSnapshot(eye=self._snapshot.eye)

    def restore(self, snapshot: CalibrationSnapshot) -> None:
        """Replace the whole state, e.g. with one loaded from a calibration file."""
        if snapshot.reference is not None and snapshot.eye_model is None:
            raise CalibrationStateError("a calibration with a reference must also hold an eye model")
        with self._lock:
            self._snapshot = replace(snapshot, eye=self._snapshot.eye)


def estimate_eye_model(eye_data: EyeData) -> EyePhysicalModel | None:
    """Eye model from a GOOD frame: globe centred on the pupil, radius twice the iris radius."""
    if eye_data is None or not eye_data.is_good or eye_data.iris.is_empty:
        return None
    return EyePhysicalModel(eye_data.pupil.cx, eye_data.pupil.cy, 2.0 * eye_data.iris.radius)
