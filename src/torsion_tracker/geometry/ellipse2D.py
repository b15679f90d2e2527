from __future__ import annotations
from dataclasses import dataclass
import math

import numpy as np


@dataclass(frozen=True)
class Ellipse2D:
    """
    An ellipse in full-frame image pixel coordinates.

    Attributes
    ---------
    cx, cy : float
        Center of the ellipse (pixels, sub-pixel precision).
    major, minor : float
        Major/minor *radii* (semi-axis lengths, pixels). major >= minor >= 0.
    angle_deg : float
        Direction of the major axis in degrees, measured from the image x axis
        towards +y, normalised to [0, 180).

    A radius of 0 marks a degenerate ellipse, which stands for "not found".
    """
    cx: float
    cy: float
    major: float
    minor: float
    angle_deg: float = 0.0

    def __post_init__(self):
        if self.major < 0 or self.minor < 0:
            raise ValueError(f"Ellipse radii must be >= 0, got ({self.major}, {self.minor})")
        if self.minor > self.major:
            # keep major as the larger radius, rotating the axis by 90 deg
            major, minor = self.minor, self.major
            object.__setattr__(self, "major", float(major))
            object.__setattr__(self, "minor", float(minor))
            object.__setattr__(self, "angle_deg", self.angle_deg + 90.0)
        object.__setattr__(self, "angle_deg", float(self.angle_deg % 180.0))

    @property
    def center(self) -> tuple[float, float]: return (self.cx, self.cy)

    @property
    def axes(self) -> tuple[float, float]: return (self.major, self.minor)

    @property
    def axis_ratio(self) -> float: return self.major / max(self.minor, 1e-9)

    @property
    def radius(self) -> float:
        """Mean radius, the value used wherever a circular size is needed."""
        return 0.5 * (self.major + self.minor)

    @property
    def area(self) -> float:
        return float(np.pi * self.major * self.minor)

    @property
    def is_empty(self) -> bool:
        return self.major <= 0 or self.minor <= 0

    @staticmethod
    def empty() -> "Ellipse2D":
        return Ellipse2D(0.0, 0.0, 0.0, 0.0, 0.0)

    @staticmethod
    def circle(cx: float, cy: float, r: float) -> "Ellipse2D":
        return Ellipse2D(float(cx), float(cy), float(r), float(r), 0.0)

    def to_opencv(self) -> tuple[tuple[float, float], tuple[float, float], float]:
        """Return OpenCV-style RotatedRect tuple (full axis lengths)."""
        return ((self.cx, self.cy), (2.0 * self.major, 2.0 * self.minor), self.angle_deg)

    @staticmethod
    def from_opencv(e) -> "Ellipse2D":
        (cx, cy), (w, h), ang = e
        return Ellipse2D(float(cx), float(cy), float(w) * 0.5, float(h) * 0.5, float(ang))

    def scaled(self, factor: float, offset: tuple[float, float] = (0.0, 0.0)) -> "Ellipse2D":
        """
        Map from an ROI resized by `factor` (cv2.resize pixel-centre convention) back to
        frame coordinates, `offset` being the ROI origin in the frame.
        """
        if self.is_empty:
            return self
        ox, oy = offset
        return Ellipse2D((self.cx + 0.5) / factor - 0.5 + ox, (self.cy + 0.5) / factor - 0.5 + oy,
                         self.major / factor, self.minor / factor, self.angle_deg)

    def translated(self, dx: float, dy: float) -> "Ellipse2D":
        if self.is_empty:
            return self
        return Ellipse2D(self.cx + dx, self.cy + dy, self.major, self.minor, self.angle_deg)

    def boundary_points(self, n: int = 64) -> np.ndarray:
        """(n, 2) points on the boundary, evenly spaced in the parametric angle."""
        t = np.linspace(0.0, 2.0 * np.pi, n, endpoint=False)
        c, s = math.cos(math.radians(self.angle_deg)), math.sin(math.radians(self.angle_deg))
        u, v = self.major * np.cos(t), self.minor * np.sin(t)
        return np.column_stack([self.cx + c * u - s * v, self.cy + s * u + c * v])
