from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum, auto

import numpy as np

from torsion_tracker.errors import FrameError
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.helpers.image_helpers import ensure_uint8


class Eye(Enum):
    LEFT = auto()
    RIGHT = auto()
    BOTH = auto()


class ProcessFrameResult(Enum):
    GOOD = auto()
    PUPIL_NOT_FOUND = auto()
    LOW_QUALITY = auto()
    ERROR = auto()


@dataclass(frozen=True)
class ImageFrame:
    """
    One grayscale eye image. The pipeline never writes into `image`;
    operations that need a modified buffer work on copies.

    Integer images wider than uint8 are scaled to 0..255 from their full dtype
    range. Cameras that pack fewer bits into a wider buffer (12-bit in uint16)
    must say so with `bit_depth`, otherwise the eye comes out nearly black.
    """
    image: np.ndarray
    frame_number: int
    timestamp: float
    eye: Eye = Eye.LEFT
    bit_depth: int | None = None

    def __post_init__(self):
        img = self.image
        if img is None:
            raise FrameError("frame has no pixel buffer")
        if not isinstance(img, np.ndarray):
            raise FrameError(f"frame pixels must be a numpy array, got {type(img).__name__}")
        if img.ndim != 2:
            raise FrameError(f"frame must be a 2-D grayscale image, got shape {img.shape}")
        if img.size == 0:
            raise FrameError("frame is empty")
        if self.bit_depth is not None:
            if not np.issubdtype(img.dtype, np.integer):
                raise FrameError(f"bit_depth only applies to integer images, got {img.dtype}")
            bits = np.iinfo(img.dtype).bits
            if not 1 <= self.bit_depth <= bits:
                raise FrameError(f"bit_depth must be in 1..{bits} for {img.dtype}, got {self.bit_depth}")

    @property
    def shape(self) -> tuple[int, int]:
        return self.image.shape

    @property
    def width(self) -> int: return self.image.shape[1]

    @property
    def height(self) -> int: return self.image.shape[0]

    def as_uint8(self) -> np.ndarray:
        """Pixels on the 0..255 scale every threshold is expressed in."""
        return ensure_uint8(self.image, self.bit_depth)


@dataclass(frozen=True, eq=False)
class EyelidBoundary:
    """
    Upper and lower eyelid as (4, 2) polylines of (x, y) image points, ordered left to right.
    `full_frame` means no eyelid was tracked and the whole frame counts as open.
    """
    upper: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    lower: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    full_frame: bool = True

    @staticmethod
    def open_frame() -> "EyelidBoundary":
        return EyelidBoundary()

    @staticmethod
    def from_points(upper, lower) -> "EyelidBoundary":
        up = np.asarray(upper, dtype=np.float64).reshape(-1, 2)
        lo = np.asarray(lower, dtype=np.float64).reshape(-1, 2)
        return EyelidBoundary(upper=up, lower=lo, full_frame=False)


@dataclass
class TorsionResult:
    """
    angle_deg : torsion in degrees, positive = counter-clockwise in image coordinates.
    torsion_image : the high-passed polar strip of the current frame (rows = angle, cols = radius).
    quality : 0..100, derived from the correlation peak.
    valid : False when too little of the iris survived the mask to correlate.
    """
    angle_deg: float
    torsion_image: np.ndarray | None
    quality: float
    valid: bool = True


@dataclass
class EyeData:
    frame_number: int
    timestamp: float
    eye: Eye
    pupil: Ellipse2D
    iris: Ellipse2D
    eyelids: EyelidBoundary
    torsion_angle_deg: float
    torsion_quality: float
    status: ProcessFrameResult
    error_message: str = ""
    corneal_reflections: tuple[Ellipse2D, ...] = ()

    @property
    def is_good(self) -> bool:
        return self.status == ProcessFrameResult.GOOD

    @staticmethod
    def not_found(frame: ImageFrame, status: ProcessFrameResult = ProcessFrameResult.PUPIL_NOT_FOUND,
                  error_message: str = "") -> "EyeData":
        """Structurally valid record with degenerate geometry."""
        return EyeData(
            frame_number=frame.frame_number,
            timestamp=frame.timestamp,
            eye=frame.eye,
            pupil=Ellipse2D.empty(),
            iris=Ellipse2D.empty(),
            eyelids=EyelidBoundary.open_frame(),
            torsion_angle_deg=float("nan"),
            torsion_quality=0.0,
            status=status,
            error_message=error_message,
        )
