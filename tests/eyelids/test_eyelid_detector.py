import logging
import warnings
from pathlib import Path

import numpy as np
import pytest

from torsion_tracker.calibration.eye_calibration import EyePhysicalModel
from torsion_tracker.config.tracking_settings import EyeTrackingSettings, EyelidMethod
from torsion_tracker.data.eye_data import ImageFrame
import torsion_tracker.eyelids.eyelid_detector as eyelid_detector
from torsion_tracker.eyelids.eyelid_detector import (
    FixedEyelidDetector, HoughEyelidDetector, NoEyelidDetector, fixed_eyelids, make_eyelid_detector,
)
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.simulation.virtual_eye import VirtualEye

SETTINGS = EyeTrackingSettings()
PUPIL = Ellipse2D.circle(160.0, 120.0, 25.0)
MODEL = EyePhysicalModel(160.0, 120.0, 160.0)


def test_factory():
    assert isinstance(make_eyelid_detector(EyelidMethod.NONE), NoEyelidDetector)
    assert isinstance(make_eyelid_detector(EyelidMethod.FIXED), FixedEyelidDetector)
    assert isinstance(make_eyelid_detector(EyelidMethod.HOUGH_LINES), HoughEyelidDetector)


def test_none_spans_the_whole_frame():
    frame = VirtualEye().frame()
    lids = NoEyelidDetector().find_eyelids(frame, PUPIL, MODEL, SETTINGS)
    assert lids.full_frame


def test_fixed_lids_sit_at_configured_pupil_ratio():
    lids = FixedEyelidDetector().find_eyelids(VirtualEye().frame(), PUPIL, MODEL, SETTINGS)
    assert not lids.full_frame
    assert lids.upper.shape == (4, 2) and lids.lower.shape == (4, 2)
    np.testing.assert_allclose(lids.upper[:, 1], 120.0 - 50.0)
    np.testing.assert_allclose(lids.lower[:, 1], 120.0 + 50.0)
    np.testing.assert_allclose(lids.upper[:, 0], [40.0, 80.0, 240.0, 280.0])
    assert np.all(np.diff(lids.upper[:, 0]) > 0)


def test_fixed_ratio_is_configurable():
    settings = EyeTrackingSettings(fixed_eyelid_pupil_ratio=1.5)
    lids = fixed_eyelids(PUPIL, MODEL, settings)
    np.testing.assert_allclose(lids.upper[:, 1], 120.0 - 37.5)


def test_hough_falls_back_to_fixed_without_edges(caplog):
    frame = ImageFrame(np.full((240, 320), 150, np.uint8), 0, 0.0)
    with caplog.at_level(logging.WARNING, logger="torsion_tracker"):
        lids = HoughEyelidDetector().find_eyelids(frame, PUPIL, MODEL, SETTINGS)
    assert any(r.levelno == logging.WARNING and "fixed eyelids" in r.getMessage() for r in caplog.records)
    expected = fixed_eyelids(PUPIL, MODEL, SETTINGS)
    np.testing.assert_allclose(lids.upper, expected.upper)
    np.testing.assert_allclose(lids.lower, expected.lower)


def test_hough_falls_back_when_no_line_reaches_the_vote_threshold():
    frame = VirtualEye(upper_lid_y=60.0, lower_lid_y=185.0).frame()
    settings = EyeTrackingSettings(hough_vote_threshold=100000)
    lids = HoughEyelidDetector().find_eyelids(frame, PUPIL, MODEL, settings)
    expected = fixed_eyelids(PUPIL, MODEL, settings)
    np.testing.assert_allclose(lids.upper, expected.upper)


def test_hough_lids_bracket_the_pupil():
    frame = VirtualEye(upper_lid_y=60.0, lower_lid_y=185.0, texture_contrast=0.0).frame()
    lids = HoughEyelidDetector().find_eyelids(frame, PUPIL, MODEL, SETTINGS)
    assert not lids.full_frame
    assert lids.upper.shape == (4, 2) and lids.lower.shape == (4, 2)
    assert lids.upper[:, 1].mean() < PUPIL.cy < lids.lower[:, 1].mean()


@pytest.mark.parametrize("dy", [0.0, 10.0])
def test_hough_lids_follow_the_rendered_lids(dy):
    # lids 70 px above and 80 px below the pupil; the fixed fallback sits at 50 px
    upper_y, lower_y = 50.0 + dy, 200.0 + dy
    eye = VirtualEye(pupil_cy=120.0 + dy, upper_lid_y=upper_y, lower_lid_y=lower_y, texture_contrast=0.0)
    pupil = Ellipse2D.circle(160.0, 120.0 + dy, 25.0)
    model = EyePhysicalModel(160.0, 120.0 + dy, 160.0)

    lids = HoughEyelidDetector().find_eyelids(eye.frame(), pupil, model, SETTINGS)
    fallback = fixed_eyelids(pupil, model, SETTINGS)

    assert np.all(np.abs(lids.upper[:, 1] - upper_y) <= 12.0)
    assert np.all(np.abs(lids.lower[:, 1] - lower_y) <= 12.0)
    assert abs(lids.upper[:, 1].mean() - upper_y) <= 8.0
    assert abs(lids.lower[:, 1].mean() - lower_y) <= 8.0
    assert np.all(np.abs(lids.upper[:, 1] - fallback.upper[:, 1]) > 8.0)
    assert np.all(np.abs(lids.lower[:, 1] - fallback.lower[:, 1]) > 8.0)


@pytest.mark.parametrize("method", list(EyelidMethod))
def test_detectors_are_deterministic(method):
    frame = VirtualEye(upper_lid_y=60.0, lower_lid_y=185.0).frame()
    detector = make_eyelid_detector(method)
    a = detector.find_eyelids(frame, PUPIL, MODEL, SETTINGS)
    b = detector.find_eyelids(frame, PUPIL, MODEL, SETTINGS)
    np.testing.assert_array_equal(a.upper, b.upper)
    np.testing.assert_array_equal(a.lower, b.lower)


def test_module_source_has_no_invalid_escapes():
    path = Path(eyelid_detector.__file__)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(encoding="utf-8"), str(path), "exec")
