from __future__ import annotations
from dataclasses import dataclass

import numpy as np

# Validity masks are uint8 images of the frame's shape holding 0 (excluded) or 1 (valid).
Mask = np.ndarray


@dataclass(frozen=True)
class Rect:
    """Axis-aligned integer rectangle: x, y of the top-left corner, width, height."""
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int: return self.x + self.width

    @property
    def bottom(self) -> int: return self.y + self.height

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def slices(self) -> tuple[slice, slice]:
        """Row/column slices for indexing a numpy image."""
        return slice(self.y, self.bottom), slice(self.x, self.right)

    def intersect(self, other: "Rect") -> "Rect":
        x0, y0 = max(self.x, other.x), max(self.y, other.y)
        x1, y1 = min(self.right, other.right), min(self.bottom, other.bottom)
        return Rect(x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    @staticmethod
    def from_margins(shape: tuple[int, ...], margins: tuple[int, int, int, int]) -> "Rect":
        """Frame of `shape` (h, w) minus (left, top, right, bottom) margins."""
        h, w = shape[:2]
        left, top, right, bottom = (int(m) for m in margins)
        return Rect(left, top, max(0, w - left - right), max(0, h - top - bottom))

    @staticmethod
    def around(cx: float, cy: float, half_w: float, half_h: float) -> "Rect":
        x0, y0 = int(np.floor(cx - half_w)), int(np.floor(cy - half_h))
        x1, y1 = int(np.ceil(cx + half_w)), int(np.ceil(cy + half_h))
        return Rect(x0, y0, x1 - x0, y1 - y0)


def full_mask(shape: tuple[int, ...]) -> Mask:
    """All-valid mask for a frame of `shape`."""
    return np.ones(shape[:2], dtype=np.uint8)
