import numpy as np
import pytest

from torsion_tracker.config.tracking_settings import EyeTrackingSettings, PupilMethod
from torsion_tracker.data.eye_data import Eye, ImageFrame, ProcessFrameResult
from torsion_tracker.pupil.pupil_locator import make_pupil_locator, search_region

BACKGROUND = 200.0
PUPIL = 20.0


def dark_circle_frame(cx, cy, r, shape=(240, 320), eye=Eye.LEFT):
    """Uniform background with an anti-aliased dark disc."""
    ys, xs = np.mgrid[0:shape[0], 0:shape[1]].astype(np.float64)
    cover = np.clip(r + 0.5 - np.hypot(xs - cx, ys - cy), 0.0, 1.0)
    img = BACKGROUND * (1.0 - cover) + PUPIL * cover
    return ImageFrame(np.round(img).astype(np.uint8), 0, 0.0, eye)


@pytest.mark.parametrize("method", list(PupilMethod))
@pytest.mark.parametrize("cx, cy, r", [(160.3, 120.6, 20.0), (100.0, 90.0, 28.0), (210.7, 140.2, 24.0)])
def test_dark_circle_is_found(method, cx, cy, r):
    settings = EyeTrackingSettings(pupil_method=method)
    pupil, status = make_pupil_locator(method).locate(dark_circle_frame(cx, cy, r), settings)
    assert status == ProcessFrameResult.GOOD
    assert np.hypot(pupil.cx - cx, pupil.cy - cy) <= 1.0
    assert abs(pupil.radius - r) <= 0.05 * r


@pytest.mark.parametrize("method", list(PupilMethod))
def test_no_pupil_in_bright_frame(method):
    frame = ImageFrame(np.full((240, 320), 180, np.uint8), 3, 0.03)
    pupil, status = make_pupil_locator(method).locate(frame, EyeTrackingSettings())
    assert status == ProcessFrameResult.PUPIL_NOT_FOUND
    assert pupil.is_empty


@pytest.mark.parametrize("method", list(PupilMethod))
def test_pupil_below_minimum_size_is_rejected(method):
    # min pupil radius is 1 mm = 10 px at the default scale
    frame = dark_circle_frame(160.0, 120.0, 5.0)
    _, status = make_pupil_locator(method).locate(frame, EyeTrackingSettings())
    assert status == ProcessFrameResult.PUPIL_NOT_FOUND


@pytest.mark.parametrize("method", list(PupilMethod))
def test_cropping_limits_search_and_keeps_frame_coordinates(method):
    frame = dark_circle_frame(220.0, 130.0, 22.0)
    inside = EyeTrackingSettings(cropping_left=(150, 40, 10, 30))
    pupil, status = make_pupil_locator(method).locate(frame, inside)
    assert status == ProcessFrameResult.GOOD
    assert np.hypot(pupil.cx - 220.0, pupil.cy - 130.0) <= 1.0

    outside = EyeTrackingSettings(cropping_left=(0, 0, 170, 0))
    _, status = make_pupil_locator(method).locate(frame, outside)
    assert status == ProcessFrameResult.PUPIL_NOT_FOUND


def test_cropping_uses_the_frame_eye():
    frame = dark_circle_frame(220.0, 130.0, 22.0, eye=Eye.RIGHT)
    settings = EyeTrackingSettings(cropping_left=(0, 0, 170, 0), cropping_right=(0, 0, 0, 0))
    _, status = make_pupil_locator(PupilMethod.BLOB).locate(frame, settings)
    assert status == ProcessFrameResult.GOOD


def test_crop_smaller_than_minimum_is_not_found():
    frame = dark_circle_frame(160.0, 120.0, 22.0)
    settings = EyeTrackingSettings(cropping_left=(150, 0, 155, 0))
    assert search_region(frame, settings).width == 15
    _, status = make_pupil_locator(PupilMethod.BLOB).locate(frame, settings)
    assert status == ProcessFrameResult.PUPIL_NOT_FOUND


def test_dark_threshold_is_per_eye():
    frame = dark_circle_frame(160.0, 120.0, 22.0)
    too_low = EyeTrackingSettings(dark_threshold_left=10, dark_threshold_right=60)
    _, status = make_pupil_locator(PupilMethod.BLOB).locate(frame, too_low)
    assert status == ProcessFrameResult.PUPIL_NOT_FOUND


@pytest.mark.parametrize("method", list(PupilMethod))
@pytest.mark.parametrize("cx, cy, r, shape", [
    (640.3, 480.6, 15.0, (960, 1280)),
    (700.2, 400.9, 45.0, (960, 1280)),
    (320.4, 240.7, 12.0, (480, 640)),
])
def test_accuracy_holds_on_large_frames(method, cx, cy, r, shape):
    settings = EyeTrackingSettings(pupil_method=method)
    pupil, status = make_pupil_locator(method).locate(dark_circle_frame(cx, cy, r, shape), settings)
    assert status == ProcessFrameResult.GOOD
    assert np.hypot(pupil.cx - cx, pupil.cy - cy) <= 1.0
    assert abs(pupil.radius - r) <= 0.05 * r


def test_blob_is_picked_small_but_fitted_at_full_resolution():
    # a second, smaller dark disc lands in the same full-resolution box
    frame = dark_circle_frame(640.0, 480.0, 20.0, (960, 1280))
    image = frame.image.copy()
    image[470:475, 668:673] = 20
    pupil, status = make_pupil_locator(PupilMethod.BLOB).locate(ImageFrame(image, 0, 0.0), EyeTrackingSettings())
    assert status == ProcessFrameResult.GOOD
    assert np.hypot(pupil.cx - 640.0, pupil.cy - 480.0) <= 1.0
    assert abs(pupil.radius - 20.0) <= 1.0
