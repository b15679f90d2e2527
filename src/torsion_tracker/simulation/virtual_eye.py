"""
Deterministic synthetic eye images.

A dark pupil inside a textured iris on a bright sclera, with optional eyelid
bands and a specular reflection. The iris texture is a sum of angular
harmonics, so rotating it by `torsion_deg` (counter-clockwise in image
coordinates) is exact at every pixel.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Iterator

import numpy as np

from torsion_tracker.data.eye_data import Eye, ImageFrame

PUPIL_LEVEL = 20.0
IRIS_LEVEL = 120.0
SCLERA_LEVEL = 190.0
LID_LEVEL = 140.0
REFLECTION_LEVEL = 255.0

# (angular frequency, amplitude)
IRIS_HARMONICS = ((7, 9.0), (12, 8.0), (19, 8.0), (26, 7.0), (33, 6.0))


@dataclass(frozen=True)
class VirtualEye:
    width: int = 320
    height: int = 240
    pupil_cx: float = 160.0
    pupil_cy: float = 120.0
    pupil_radius: float = 25.0
    iris_radius: float = 80.0
    torsion_deg: float = 0.0
    upper_lid_y: float | None = None      # rows above are covered by the upper lid
    lower_lid_y: float | None = None      # rows below are covered by the lower lid
    reflection: tuple[float, float, float] | None = None   # (x, y, radius)
    texture_contrast: float = 1.0       # 0 gives a uniform iris
    seed: int = 0

    def rotated(self, torsion_deg: float) -> "VirtualEye":
        return replace(self, torsion_deg=torsion_deg)

    def moved(self, cx: float, cy: float) -> "VirtualEye":
        return replace(self, pupil_cx=cx, pupil_cy=cy)

    def iris_texture(self, r: np.ndarray, phi: np.ndarray) -> np.ndarray:
        rng = np.random.default_rng(self.seed)
        theta = np.radians(self.torsion_deg)
        tex = np.full(np.broadcast(r, phi).shape, IRIS_LEVEL)
        for k, amp in IRIS_HARMONICS:
            phase, radial_phase = rng.uniform(0.0, 2.0 * np.pi, 2)
            wavelength = rng.uniform(12.0, 30.0)
            radial = 0.6 + 0.4 * np.cos(2.0 * np.pi * r / wavelength + radial_phase)
            tex += self.texture_contrast * amp * np.cos(k * (phi + theta) + phase) * radial
        return tex

    def render(self) -> np.ndarray:
        """uint8 (height, width) image."""
        ys, xs = np.mgrid[0:self.height, 0:self.width].astype(np.float64)
        dx, dy = xs - self.pupil_cx, ys - self.pupil_cy
        r = np.hypot(dx, dy)
        phi = np.arctan2(dy, dx)

        # one-pixel linear ramps at every boundary
        iris_cover = np.clip(self.iris_radius + 0.5 - r, 0.0, 1.0)
        pupil_cover = np.clip(self.pupil_radius + 0.5 - r, 0.0, 1.0)

        img = SCLERA_LEVEL * (1.0 - iris_cover) + self.iris_texture(r, phi) * iris_cover
        img = img * (1.0 - pupil_cover) + PUPIL_LEVEL * pupil_cover

        if self.reflection is not None:
            rx, ry, rr = self.reflection
            cover = np.clip(rr + 0.5 - np.hypot(xs - rx, ys - ry), 0.0, 1.0)
            img = img * (1.0 - cover) + REFLECTION_LEVEL * cover
        if self.upper_lid_y is not None:
            cover = np.clip(self.upper_lid_y + 0.5 - ys, 0.0, 1.0)
            img = img * (1.0 - cover) + LID_LEVEL * cover
        if self.lower_lid_y is not None:
            cover = np.clip(ys - self.lower_lid_y + 0.5, 0.0, 1.0)
            img = img * (1.0 - cover) + LID_LEVEL * cover

        return np.clip(np.round(img), 0, 255).astype(np.uint8)

    def frame(self, frame_number: int = 0, timestamp: float | None = None, eye: Eye = Eye.LEFT) -> ImageFrame:
        ts = frame_number / 100.0 if timestamp is None else timestamp
        return ImageFrame(self.render(), frame_number, ts, eye)

    def frames(self, n: int, torsion_step_deg: float = 0.0, eye: Eye = Eye.LEFT,
               fps: float = 100.0) -> Iterator[ImageFrame]:
        """n frames; frame i is rotated by torsion_deg + i * torsion_step_deg."""
        for i in range(n):
            eye_i = self.rotated(self.torsion_deg + i * torsion_step_deg)
            yield eye_i.frame(i, i / fps, eye)
