# config/tracking_settings.py
from __future__ import annotations
from dataclasses import dataclass, asdict, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any
import math

import tomli
import tomli_w

from torsion_tracker.data.eye_data import Eye
from torsion_tracker.errors import SettingsError


class PupilMethod(Enum):
    BLOB = "blob"
    CENTROID = "centroid"


class EyelidMethod(Enum):
    NONE = "none"
    FIXED = "fixed"
    HOUGH_LINES = "hough_lines"


class PositionMethod(Enum):
    NONE = "none"
    CENTROID = "centroid"
    CONVEX_HULL = "convex_hull"
    ELLIPSE_FITTING = "ellipse_fitting"


class IrisMethod(Enum):
    FIXED_RADIUS = "fixed_radius"
    EDGE_FITTING = "edge_fitting"


class CornealReflectionMethod(Enum):
    NONE = "none"
    BLOB = "blob"


_ENUM_FIELDS = {
    "pupil_method": PupilMethod,
    "eyelid_method": EyelidMethod,
    "position_method": PositionMethod,
    "iris_method": IrisMethod,
    "corneal_reflection_method": CornealReflectionMethod,
}

MIN_CROPPED_SIZE = 20


@dataclass(frozen=True)
class EyeTrackingSettings:
    """
    Immutable tracking configuration, passed by value into every pipeline call.
    Build a new value with `dataclasses.replace` (or ThreadSafeConfig.update) to change it.

    Geometric bounds are given in millimetres and converted with `mm_per_pixel`.
    Cropping margins are (left, top, right, bottom) in pixels.
    """
    # Strategy selection
    pupil_method: PupilMethod = PupilMethod.BLOB
    eyelid_method: EyelidMethod = EyelidMethod.NONE
    position_method: PositionMethod = PositionMethod.ELLIPSE_FITTING
    iris_method: IrisMethod = IrisMethod.FIXED_RADIUS
    corneal_reflection_method: CornealReflectionMethod = CornealReflectionMethod.BLOB

    # Per-eye intensity thresholds
    dark_threshold_left: int = 60
    dark_threshold_right: int = 60
    bright_threshold_left: int = 250
    bright_threshold_right: int = 250

    # Geometry
    mm_per_pixel: float = 0.1
    min_pupil_radius_mm: float = 1.0
    max_iris_radius_mm: float = 15.0
    iris_radius_pix_left: float = 80.0
    iris_radius_pix_right: float = 80.0
    min_cr_radius_mm: float = 0.3
    max_cr_radius_mm: float = 5.0
    max_corneal_reflections: int = 5

    # Per-eye cropping margins
    cropping_left: tuple[int, int, int, int] = (0, 0, 0, 0)
    cropping_right: tuple[int, int, int, int] = (0, 0, 0, 0)

    # Torsion
    calculate_torsion: bool = True
    use_torsion_mask: bool = True
    max_torsion_deg: float = 25.0
    torsion_angular_resolution: float = 1.0     # samples per degree
    torsion_image_iris_width: int = 80          # radial samples
    torsion_pupil_margin: float = 1.1           # inner radius = margin * pupil radius
    torsion_highpass_size: int = 4
    torsion_min_valid_fraction: float = 0.1
    min_torsion_quality: float = 50.0
    use_geometric_correction: bool = False

    # Eyelids
    eyelid_mask_margin_pix: int = 10
    fixed_eyelid_pupil_ratio: float = 2.0       # lid offset from the pupil centre, in pupil radii
    hough_vote_threshold: int = 20

    def __post_init__(self):
        for name, enum_cls in _ENUM_FIELDS.items():
            value = getattr(self, name)
            if not isinstance(value, enum_cls):
                object.__setattr__(self, name, _coerce_enum(enum_cls, value, name))
        for name in ("cropping_left", "cropping_right"):
            value = tuple(int(v) for v in getattr(self, name))
            if len(value) != 4 or min(value) < 0:
                raise SettingsError(f"{name} must be four non-negative margins, got {value}")
            object.__setattr__(self, name, value)
        self.validate()

    def validate(self) -> None:
        for name in ("dark_threshold_left", "dark_threshold_right",
                     "bright_threshold_left", "bright_threshold_right"):
            v = getattr(self, name)
            if not 0 <= v <= 255:
                raise SettingsError(f"{name} must be within 0..255, got {v}")
        if not self.mm_per_pixel > 0:
            raise SettingsError(f"mm_per_pixel must be > 0, got {self.mm_per_pixel}")
        if self.min_pupil_radius_mm < 0:
            raise SettingsError(f"min_pupil_radius_mm must be >= 0, got {self.min_pupil_radius_mm}")
        if not self.max_iris_radius_mm > self.min_pupil_radius_mm:
            raise SettingsError("max_iris_radius_mm must be larger than min_pupil_radius_mm")
        if self.iris_radius_pix_left <= 0 or self.iris_radius_pix_right <= 0:
            raise SettingsError("iris radii must be > 0")
        if not 0 < self.min_cr_radius_mm < self.max_cr_radius_mm:
            raise SettingsError("corneal reflection radii must satisfy 0 < min_cr_radius_mm < max_cr_radius_mm")
        if self.max_corneal_reflections < 1:
            raise SettingsError("max_corneal_reflections must be >= 1")
        if not 0 < self.max_torsion_deg <= 90:
            raise SettingsError(f"max_torsion_deg must be within (0, 90], got {self.max_torsion_deg}")
        if not self.torsion_angular_resolution > 0:
            raise SettingsError("torsion_angular_resolution must be > 0")
        if self.torsion_image_iris_width < 2:
            raise SettingsError("torsion_image_iris_width must be >= 2")
        if self.torsion_pupil_margin <= 0:
            raise SettingsError("torsion_pupil_margin must be > 0")
        if self.torsion_highpass_size < 1:
            raise SettingsError("torsion_highpass_size must be >= 1")
        if not 0 < self.torsion_min_valid_fraction <= 1:
            raise SettingsError("torsion_min_valid_fraction must be within (0, 1]")
        if not 0 <= self.min_torsion_quality <= 100:
            raise SettingsError("min_torsion_quality must be within 0..100")
        if self.eyelid_mask_margin_pix < 0 or self.hough_vote_threshold < 1:
            raise SettingsError("eyelid_mask_margin_pix must be >= 0 and hough_vote_threshold >= 1")
        if self.fixed_eyelid_pupil_ratio <= 0:
            raise SettingsError("fixed_eyelid_pupil_ratio must be > 0")

    # ---------- per-eye accessors ----------
    def dark_threshold(self, eye: Eye) -> int:
        return self.dark_threshold_right if eye == Eye.RIGHT else self.dark_threshold_left

    def bright_threshold(self, eye: Eye) -> int:
        return self.bright_threshold_right if eye == Eye.RIGHT else self.bright_threshold_left

    def cropping(self, eye: Eye) -> tuple[int, int, int, int]:
        return self.cropping_right if eye == Eye.RIGHT else self.cropping_left

    def iris_radius_pix(self, eye: Eye) -> float:
        return self.iris_radius_pix_right if eye == Eye.RIGHT else self.iris_radius_pix_left

    # ---------- derived pixel bounds ----------
    @property
    def min_pupil_radius_pix(self) -> float:
        return self.min_pupil_radius_mm / self.mm_per_pixel

    @property
    def max_iris_radius_pix(self) -> float:
        return self.max_iris_radius_mm / self.mm_per_pixel

    @property
    def min_cr_radius_pix(self) -> float:
        return self.min_cr_radius_mm / self.mm_per_pixel

    @property
    def max_cr_radius_pix(self) -> float:
        return self.max_cr_radius_mm / self.mm_per_pixel

    @property
    def min_pupil_area_pix(self) -> float:
        return math.pi * self.min_pupil_radius_pix ** 2

    @property
    def strategy_key(self) -> tuple[Enum, ...]:
        """The selections a pipeline is built for."""
        return (self.pupil_method, self.eyelid_method, self.position_method, self.iris_method,
                self.corneal_reflection_method)


def _coerce_enum(enum_cls, value, name: str):
    if isinstance(value, str):
        for member in enum_cls:
            if value.lower() in (member.value, member.name.lower()):
                return member
    raise SettingsError(f"{name}: unknown value {value!r}; expected one of {[m.value for m in enum_cls]}")


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "tracking_settings.toml"


def _toml_to_kwargs(raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only known keys; enums (by value) and tuples are coerced in __post_init__."""
    known = {f.name for f in fields(EyeTrackingSettings)}
    unknown = set(raw) - known
    if unknown:
        raise SettingsError(f"unknown settings keys: {sorted(unknown)}")
    return dict(raw)


def _dataclass_to_toml_dict(settings: EyeTrackingSettings) -> dict[str, Any]:
    data = asdict(settings)
    for name in _ENUM_FIELDS:
        data[name] = data[name].value
    for name in ("cropping_left", "cropping_right"):
        data[name] = list(data[name])
    return data


def load_tracking_settings(path: Path = DEFAULT_SETTINGS_PATH, section: str = "tracking") -> EyeTrackingSettings:
    with Path(path).open("rb") as f:
        data = tomli.load(f)
    raw = data.get(section, {})
    return EyeTrackingSettings(**_toml_to_kwargs(raw))


def save_tracking_settings(path: Path, section: str, settings: EyeTrackingSettings) -> None:
    """Write one settings section, keeping the other sections of the file."""
    path = Path(path)
    try:
        with path.open("rb") as f:
            data = tomli.load(f)
    except FileNotFoundError:
        data = {}

    data[section] = _dataclass_to_toml_dict(settings)

    with path.open("wb") as f:
        tomli_w.dump(data, f)


def with_changes(settings: EyeTrackingSettings, **changes) -> EyeTrackingSettings:
    """New validated settings value; unknown field names raise SettingsError."""
    try:
        return replace(settings, **changes)
    except TypeError as e:
        raise SettingsError(str(e)) from e
