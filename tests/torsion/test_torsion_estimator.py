import numpy as np
import pytest

from torsion_tracker.calibration.eye_calibration import EyePhysicalModel
from torsion_tracker.config.tracking_settings import EyeTrackingSettings, with_changes
from torsion_tracker.data.eye_data import EyelidBoundary, ImageFrame
from torsion_tracker.errors import CalibrationStateError, PreconditionError
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.masking.mask_builder import MaskBuilder
from torsion_tracker.simulation.virtual_eye import VirtualEye
from torsion_tracker.torsion.polar_strip import get_torsion_image, strip_rows
from torsion_tracker.torsion.torsion_estimator import TorsionEstimator, refine_peak

SETTINGS = EyeTrackingSettings()
EYE = VirtualEye(reflection=(195.0, 95.0, 4.0))
PUPIL = Ellipse2D.circle(EYE.pupil_cx, EYE.pupil_cy, EYE.pupil_radius)
IRIS = Ellipse2D.circle(EYE.pupil_cx, EYE.pupil_cy, EYE.iris_radius)
MODEL = EyePhysicalModel(EYE.pupil_cx, EYE.pupil_cy, 2.0 * EYE.iris_radius)


def _mask(frame, settings=SETTINGS):
    return MaskBuilder().get_mask(frame, EyelidBoundary.open_frame(), MODEL, settings, pupil=PUPIL)


def _reference(estimator, settings=SETTINGS, eye=EYE):
    frame = eye.frame(0)
    return estimator.make_reference(frame, MODEL, _mask(frame, settings), PUPIL, IRIS, settings)


def _torsion(estimator, reference, eye, settings=SETTINGS, mask=None):
    frame = eye.frame(1)
    mask = _mask(frame, settings) if mask is None else mask
    return estimator.calculate_torsion_angle(frame, MODEL, reference, mask, PUPIL, IRIS, settings)


def test_strip_shape_covers_turn_and_margins():
    frame = EYE.frame()
    strip = get_torsion_image(frame.image, MODEL, _mask(frame), PUPIL, IRIS, SETTINGS)
    M, N = strip_rows(SETTINGS)
    assert (M, N) == (25, 360)
    assert strip.pattern.shape == (N + 2 * M, SETTINGS.torsion_image_iris_width)
    assert strip.valid.shape == strip.pattern.shape
    assert strip.pattern.dtype == np.float32
    assert np.abs(strip.pattern).max() <= 100.0
    # rows k and k + N hold the same polar angle
    np.testing.assert_allclose(strip.pattern[:2 * M], strip.pattern[N:N + 2 * M], atol=1e-3)


def test_same_frame_gives_zero_torsion_and_good_quality():
    estimator = TorsionEstimator()
    reference = _reference(estimator)
    result = _torsion(estimator, reference, EYE)
    assert result.valid
    assert abs(result.angle_deg) < 0.5
    assert result.quality >= SETTINGS.min_torsion_quality
    assert result.torsion_image.shape == reference.pattern.shape


@pytest.mark.parametrize("theta", [-24.0, -17.5, -9.2, -3.0, 1.4, 6.0, 12.7, 20.0, 24.0])
def test_rotated_iris_is_recovered(theta):
    estimator = TorsionEstimator()
    reference = _reference(estimator)
    result = _torsion(estimator, reference, EYE.rotated(theta))
    assert result.valid
    assert result.angle_deg == pytest.approx(theta, abs=0.5)


def test_error_stays_small_across_the_range():
    estimator = TorsionEstimator()
    reference = _reference(estimator)
    thetas = np.linspace(0.0, 24.0, 9)
    errors = [abs(_torsion(estimator, reference, EYE.rotated(t)).angle_deg - t) for t in thetas]
    assert max(errors) <= 0.5


def test_rotation_with_opencv_has_the_same_sign():
    import cv2
    estimator = TorsionEstimator()
    reference = _reference(estimator)
    img = EYE.render()
    rot = cv2.getRotationMatrix2D((EYE.pupil_cx, EYE.pupil_cy), 8.0, 1.0)
    rotated = cv2.warpAffine(img, rot, (img.shape[1], img.shape[0]), flags=cv2.INTER_CUBIC,
                             borderMode=cv2.BORDER_REPLICATE)
    # the reflection rotates with the image; mask it where it now lies
    frame = ImageFrame(rotated, 1, 0.01)
    result = estimator.calculate_torsion_angle(frame, MODEL, reference, _mask(frame), PUPIL, IRIS, SETTINGS)
    assert result.angle_deg == pytest.approx(8.0, abs=0.75)


def test_masked_pixels_never_change_the_result():
    estimator = TorsionEstimator()
    reference = _reference(estimator)
    frame = EYE.rotated(5.0).frame(1)
    mask = _mask(frame)
    mask[60:110, 170:230] = 0
    mask[140:170, 90:130] = 0

    clean = estimator.calculate_torsion_angle(frame, MODEL, reference, mask, PUPIL, IRIS, SETTINGS)

    corrupted = frame.image.copy()
    rng = np.random.default_rng(11)
    hidden = mask == 0
    corrupted[hidden] = rng.integers(0, 256, size=int(hidden.sum()), dtype=np.uint8)
    frame2 = ImageFrame(corrupted, 1, frame.timestamp, frame.eye)
    dirty = estimator.calculate_torsion_angle(frame2, MODEL, reference, mask, PUPIL, IRIS, SETTINGS)

    assert dirty.angle_deg == clean.angle_deg
    assert dirty.quality == clean.quality
    np.testing.assert_array_equal(dirty.torsion_image, clean.torsion_image)
    assert clean.angle_deg == pytest.approx(5.0, abs=0.5)


def test_fully_masked_annulus_gives_invalid_zero_result():
    estimator = TorsionEstimator()
    reference = _reference(estimator)
    frame = EYE.frame(1)
    empty = np.zeros(frame.shape, np.uint8)
    result = estimator.calculate_torsion_angle(frame, MODEL, reference, empty, PUPIL, IRIS, SETTINGS)
    assert not result.valid
    assert result.angle_deg == 0.0
    assert result.quality == 0.0


def test_reference_is_required():
    frame = EYE.frame(1)
    with pytest.raises(CalibrationStateError):
        TorsionEstimator().calculate_torsion_angle(frame, MODEL, None, _mask(frame), PUPIL, IRIS, SETTINGS)


def test_reference_from_other_strip_settings_is_rejected():
    estimator = TorsionEstimator()
    reference = _reference(estimator)
    other = with_changes(SETTINGS, max_torsion_deg=15.0)
    with pytest.raises(CalibrationStateError):
        _torsion(estimator, reference, EYE, settings=other)


def test_reference_needs_valid_samples():
    frame = EYE.frame(0)
    with pytest.raises(PreconditionError):
        TorsionEstimator().make_reference(frame, MODEL, np.zeros(frame.shape, np.uint8), PUPIL, IRIS, SETTINGS)


def test_reference_arrays_are_read_only():
    reference = _reference(TorsionEstimator())
    with pytest.raises(ValueError):
        reference.pattern[0, 0] = 1.0


def test_whole_iris_path_without_mask():
    estimator = TorsionEstimator()
    frame0 = EYE.frame(0)
    reference = estimator.make_reference(frame0, MODEL, None, PUPIL, IRIS, SETTINGS)
    frame = EYE.rotated(-6.0).frame(1)
    result = estimator.calculate_torsion_angle(frame, MODEL, reference, None, PUPIL, IRIS, SETTINGS)
    assert result.angle_deg == pytest.approx(-6.0, abs=0.75)


def test_geometric_correction_keeps_zero_property():
    settings = with_changes(SETTINGS, use_geometric_correction=True)
    model = EyePhysicalModel(EYE.pupil_cx - 30.0, EYE.pupil_cy + 10.0, 160.0)
    estimator = TorsionEstimator()
    frame = EYE.frame(0)
    mask = _mask(frame, settings)
    reference = estimator.make_reference(frame, model, mask, PUPIL, IRIS, settings)
    result = estimator.calculate_torsion_angle(EYE.frame(1), model, reference, mask, PUPIL, IRIS, settings)
    assert abs(result.angle_deg) < 0.5


def test_geometric_correction_without_eccentricity_matches_plain_sampling():
    settings = with_changes(SETTINGS, use_geometric_correction=True)
    frame = EYE.frame()
    mask = _mask(frame)
    plain = get_torsion_image(frame.image, MODEL, mask, PUPIL, IRIS, SETTINGS)
    corrected = get_torsion_image(frame.image, MODEL, mask, PUPIL, IRIS, settings)
    np.testing.assert_allclose(corrected.pattern, plain.pattern, atol=1e-3)


def test_parabolic_peak_refinement():
    scores = np.array([0.2, 0.6, 1.0, 0.8, 0.1])
    assert 0.0 < refine_peak(scores, 2) <= 0.5
    assert refine_peak(scores, 0) == 0.0
    assert refine_peak(np.array([0.5, 1.0, np.nan]), 1) == 0.0
