"""
Calibration files: one HDF5 file holding the snapshot of every calibrated eye.
"""
from __future__ import annotations
from pathlib import Path

from torsion_tracker.calibration.eye_calibration import (
    CalibrationSnapshot, EyeCalibration, EyePhysicalModel, TorsionReference,
)
from torsion_tracker.data.eye_data import Eye
from torsion_tracker.errors import CalibrationStateError
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.logging_utils.logging_setup import get_logger
from torsion_tracker.saving_and_loading.hdf5_tree import read_hdf5, register_type, write_hdf5

log = get_logger(__name__)

FILE_KIND = "torsion_tracker.calibration"

for _cls in (CalibrationSnapshot, EyePhysicalModel, TorsionReference, Ellipse2D, Eye):
    register_type(_cls)


def to_dict(calibrations: dict[Eye, EyeCalibration]) -> dict:
    return {
        "kind": FILE_KIND,
        "eyes": {eye.name: cal.snapshot() for eye, cal in calibrations.items()},
    }


def from_dict(data: dict) -> dict[Eye, CalibrationSnapshot]:
    if data.get("kind") != FILE_KIND:
        raise CalibrationStateError(f"not a calibration file (kind={data.get('kind')!r})")
    snapshots = {}
    for name, snapshot in data.get("eyes", {}).items():
        if not isinstance(snapshot, CalibrationSnapshot):
            raise CalibrationStateError(f"calibration entry {name!r} is not a calibration snapshot")
        if name not in Eye.__members__:
            raise CalibrationStateError(f"calibration entry for unknown eye {name!r}")
        snapshots[Eye[name]] = snapshot
    return snapshots


def save_calibration_file(path, calibrations: dict[Eye, EyeCalibration]) -> None:
    write_hdf5(str(path), to_dict(calibrations))
    log.info("Calibration saved to %s (%s)", path,
             ", ".join(f"{eye.name}: {cal.state.name}" for eye, cal in calibrations.items()))


def load_calibration_file(path) -> dict[Eye, CalibrationSnapshot]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"calibration file not found: {path}")
    snapshots = from_dict(read_hdf5(str(path)))
    log.info("Calibration loaded from %s (%s)", path,
             ", ".join(f"{eye.name}: {snap.state.name}" for eye, snap in snapshots.items()))
    return snapshots
