import numpy as np

from torsion_tracker.calibration.eye_calibration import EyePhysicalModel
from torsion_tracker.config.tracking_settings import EyeTrackingSettings
from torsion_tracker.data.eye_data import EyelidBoundary
from torsion_tracker.eyelids.eyelid_detector import fixed_eyelids
from torsion_tracker.geometry.ellipse2D import Ellipse2D
from torsion_tracker.masking.mask_builder import MaskBuilder, eyelid_polygon
from torsion_tracker.simulation.virtual_eye import VirtualEye

SETTINGS = EyeTrackingSettings(max_iris_radius_mm=10.0)   # 100 px
EYE = VirtualEye(reflection=(200.0, 100.0, 5.0))
PUPIL = Ellipse2D.circle(160.0, 120.0, 25.0)
MODEL = EyePhysicalModel(160.0, 120.0, 160.0)


def test_open_frame_mask_excludes_reflection_pupil_and_far_pixels():
    frame = EYE.frame()
    mask = MaskBuilder().get_mask(frame, EyelidBoundary.open_frame(), MODEL, SETTINGS, pupil=PUPIL)
    assert mask.dtype == np.uint8 and mask.shape == frame.shape
    assert set(np.unique(mask)) <= {0, 1}
    assert mask[100, 200] == 0          # reflection
    assert mask[120, 160] == 0          # pupil
    assert mask[120, 270] == 0          # beyond max iris radius
    assert mask[120, 210] == 1          # iris
    assert mask[120, 250] == 1          # sclera inside the annulus


def test_eyelid_polygon_cuts_off_covered_rows():
    frame = EYE.frame()
    lids = fixed_eyelids(PUPIL, MODEL, SETTINGS)
    mask = MaskBuilder().get_mask(frame, lids, MODEL, SETTINGS, pupil=PUPIL)
    assert mask[25, 160] == 0           # above the upper lid, within the annulus
    assert mask[215, 160] == 0          # below the lower lid
    assert mask[120, 200] == 1


def test_eyelid_margin_moves_the_boundary_inwards():
    lids = fixed_eyelids(PUPIL, MODEL, SETTINGS)
    tight = eyelid_polygon(lids, MODEL, margin=10)
    loose = eyelid_polygon(lids, MODEL, margin=0)
    mid = len(tight) // 4
    assert tight[mid, 1] > loose[mid, 1]


def test_without_pupil_annulus_is_centred_on_the_eye_model():
    frame = EYE.frame()
    model = EyePhysicalModel(100.0, 120.0, 160.0)
    mask = MaskBuilder().get_mask(frame, EyelidBoundary.open_frame(), model, SETTINGS)
    assert mask[120, 190] == 1
    assert mask[120, 210] == 0


def test_output_buffer_is_reused():
    frame = EYE.frame()
    out = np.empty(frame.shape, np.uint8)
    mask = MaskBuilder().get_mask(frame, EyelidBoundary.open_frame(), MODEL, SETTINGS, pupil=PUPIL, out=out)
    assert mask is out


def test_full_mask_is_all_valid():
    frame = EYE.frame()
    mask = MaskBuilder.get_full_mask(frame)
    assert mask.shape == frame.shape
    assert np.all(mask == 1)


def test_mask_does_not_touch_the_frame():
    frame = EYE.frame()
    before = frame.image.copy()
    MaskBuilder().get_mask(frame, fixed_eyelids(PUPIL, MODEL, SETTINGS), MODEL, SETTINGS, pupil=PUPIL)
    np.testing.assert_array_equal(frame.image, before)
