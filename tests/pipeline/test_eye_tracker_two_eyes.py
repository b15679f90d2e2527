import time

import numpy as np
import pytest

from torsion_tracker.calibration.eye_calibration import CalibrationState
from torsion_tracker.config.tracking_settings import EyeTrackingSettings, EyelidMethod
from torsion_tracker.data.eye_data import Eye, ImageFrame, ProcessFrameResult
from torsion_tracker.errors import CalibrationStateError, FrameError, SettingsError
from torsion_tracker.eye_tracker import EyeTracker
from torsion_tracker.simulation.virtual_eye import VirtualEye

LEFT_EYE = VirtualEye(pupil_cx=150.0, pupil_cy=118.0, reflection=(185.0, 95.0, 4.0), seed=1)
RIGHT_EYE = VirtualEye(pupil_cx=168.0, pupil_cy=123.0, reflection=(200.0, 100.0, 4.0), seed=2)


def pair(frame_number=0, left_deg=0.0, right_deg=0.0):
    return (LEFT_EYE.rotated(left_deg).frame(frame_number, eye=Eye.LEFT),
            RIGHT_EYE.rotated(right_deg).frame(frame_number, eye=Eye.RIGHT))


@pytest.fixture
def tracker():
    t = EyeTracker(EyeTrackingSettings())
    yield t
    t.close()


def calibrate(tracker):
    left, right = pair(0)
    data_left, data_right = tracker.process_frames(left, right)
    assert tracker.auto_set_eye_model(data_left) is not None
    assert tracker.auto_set_eye_model(data_right) is not None
    tracker.set_reference(left)
    tracker.set_reference(right)


def test_uncalibrated_eyes_are_tracked_without_torsion(tracker):
    left, right = tracker.process_frames(*pair(0))
    for data, eye in ((left, Eye.LEFT), (right, Eye.RIGHT)):
        assert data.status == ProcessFrameResult.GOOD
        assert data.eye == eye
        assert np.isnan(data.torsion_angle_deg)
    assert np.hypot(left.pupil.cx - LEFT_EYE.pupil_cx, left.pupil.cy - LEFT_EYE.pupil_cy) <= 0.5
    assert np.hypot(right.pupil.cx - RIGHT_EYE.pupil_cx, right.pupil.cy - RIGHT_EYE.pupil_cy) <= 0.5


def test_eyes_are_tracked_independently(tracker):
    calibrate(tracker)
    assert all(cal.state == CalibrationState.READY for cal in tracker.calibrations.values())
    for i, (l_deg, r_deg) in enumerate([(3.0, -4.0), (6.5, -1.0), (-2.0, 9.0)], start=1):
        left, right = tracker.process_frames(*pair(i, l_deg, r_deg))
        assert left.status == ProcessFrameResult.GOOD and right.status == ProcessFrameResult.GOOD
        assert left.torsion_angle_deg == pytest.approx(l_deg, abs=0.5)
        assert right.torsion_angle_deg == pytest.approx(r_deg, abs=0.5)


def test_only_the_calibrated_eye_gets_torsion(tracker):
    left, right = pair(0)
    data_left = tracker.process_eye(left)
    tracker.auto_set_eye_model(data_left)
    tracker.set_reference(left)
    data_left, data_right = tracker.process_frames(*pair(1, 4.0, 4.0))
    assert data_left.torsion_angle_deg == pytest.approx(4.0, abs=0.5)
    assert np.isnan(data_right.torsion_angle_deg)


def test_missing_frame_gives_none(tracker):
    left, _ = pair(0)
    data_left, data_right = tracker.process_frames(left, None)
    assert data_left.status == ProcessFrameResult.GOOD
    assert data_right is None
    assert tracker.process_frames(None, None) == (None, None)


def test_frames_must_match_their_slot(tracker):
    left, right = pair(0)
    with pytest.raises(FrameError):
        tracker.process_frames(right, left)
    with pytest.raises(FrameError):
        tracker.process_eye(ImageFrame(left.image, 0, 0.0, Eye.BOTH))


def test_auto_model_needs_a_good_frame(tracker):
    blank = ImageFrame(np.full((240, 320), 200, np.uint8), 0, 0.0, Eye.LEFT)
    data = tracker.process_eye(blank)
    assert data.status == ProcessFrameResult.PUPIL_NOT_FOUND
    assert tracker.auto_set_eye_model(data) is None
    assert tracker.calibrations[Eye.LEFT].state == CalibrationState.UNCALIBRATED


def test_reset_reference_falls_back_to_geometry_only(tracker):
    calibrate(tracker)
    assert tracker.reset_reference(Eye.RIGHT) is True
    assert tracker.reset_reference(Eye.RIGHT) is False
    left, right = tracker.process_frames(*pair(1, 2.0, 2.0))
    assert left.torsion_angle_deg == pytest.approx(2.0, abs=0.5)
    assert np.isnan(right.torsion_angle_deg)
    assert tracker.calibrations[Eye.RIGHT].state == CalibrationState.MODEL_SET


def test_strategy_change_rebuilds_pipelines(tracker):
    _, before = tracker._current()
    tracker.update_settings(min_torsion_quality=30.0)
    _, same = tracker._current()
    assert all(same[eye] is before[eye] for eye in before)

    tracker.update_settings(eyelid_method=EyelidMethod.FIXED)
    settings, rebuilt = tracker._current()
    assert settings.eyelid_method is EyelidMethod.FIXED
    assert all(rebuilt[eye] is not before[eye] for eye in before)
    assert all(p.settings.strategy_key == settings.strategy_key for p in rebuilt.values())
    left, right = tracker.process_frames(*pair(0))
    assert not left.eyelids.full_frame


def test_bad_settings_are_rejected(tracker):
    with pytest.raises(SettingsError):
        tracker.set_settings({"max_torsion_deg": 10.0})
    with pytest.raises(SettingsError):
        tracker.update_settings(max_torsion_deg=-1.0)
    assert tracker.settings == EyeTrackingSettings()


def test_reference_from_other_strip_settings_raises_from_the_worker(tracker):
    calibrate(tracker)
    tracker.update_settings(max_torsion_deg=15.0)
    with pytest.raises(CalibrationStateError):
        tracker.process_frames(*pair(1))


def test_calibration_file_round_trip(tracker, tmp_path):
    calibrate(tracker)
    path = tmp_path / "calibration.h5"
    tracker.save_calibration(path)
    expected = tracker.process_frames(*pair(1, 5.0, -3.0))

    with EyeTracker(EyeTrackingSettings()) as fresh:
        fresh.load_calibration(path)
        assert all(cal.is_ready for cal in fresh.calibrations.values())
        got = fresh.process_frames(*pair(1, 5.0, -3.0))

    for a, b in zip(expected, got):
        assert a.torsion_angle_deg == pytest.approx(b.torsion_angle_deg, abs=1e-9)
        assert a.torsion_quality == pytest.approx(b.torsion_quality, abs=1e-9)


def test_default_settings_come_from_the_packaged_file():
    with EyeTracker() as t:
        assert t.settings == EyeTrackingSettings()


def test_right_eye_finishes_when_the_left_eye_fails(tracker, monkeypatch):
    _, pipelines = tracker._current()
    finished = []

    def left_fails(*args, **kwargs):
        raise CalibrationStateError("left failed")

    def right_is_slow(*args, **kwargs):
        time.sleep(0.1)
        finished.append(Eye.RIGHT)
        raise CalibrationStateError("right failed")

    monkeypatch.setattr(pipelines[Eye.LEFT], "process", left_fails)
    monkeypatch.setattr(pipelines[Eye.RIGHT], "process", right_is_slow)
    with pytest.raises(CalibrationStateError, match="left failed"):
        tracker.process_frames(*pair(1))
    assert finished == [Eye.RIGHT]


def test_right_eye_error_is_raised_when_the_left_eye_succeeds(tracker, monkeypatch):
    _, pipelines = tracker._current()

    def right_fails(*args, **kwargs):
        raise CalibrationStateError("right failed")

    monkeypatch.setattr(pipelines[Eye.RIGHT], "process", right_fails)
    with pytest.raises(CalibrationStateError, match="right failed"):
        tracker.process_frames(*pair(1))
