"""
Track a rotating virtual eye pair and print the estimated torsion.

    python -m torsion_tracker.demo_virtual_eye
"""
import sys

from torsion_tracker.config.tracking_settings import EyeTrackingSettings
from torsion_tracker.data.eye_data import Eye
from torsion_tracker.eye_tracker import EyeTracker
from torsion_tracker.logging_utils.logging_setup import get_logger, install_crash_hooks, start_logging
from torsion_tracker.simulation.virtual_eye import VirtualEye

log = get_logger(__name__)

N_FRAMES = 20
STEP_DEG = 1.0


def main() -> int:
    left_eye = VirtualEye(reflection=(190.0, 100.0, 4.0), seed=1)
    right_eye = VirtualEye(pupil_cx=150.0, reflection=(130.0, 100.0, 4.0), seed=2)

    with EyeTracker(EyeTrackingSettings()) as tracker:
        first_left, first_right = tracker.process_frames(left_eye.frame(0, eye=Eye.LEFT),
                                                         right_eye.frame(0, eye=Eye.RIGHT))
        for data in (first_left, first_right):
            if tracker.auto_set_eye_model(data) is None:
                print(f"{data.eye.name}: no pupil in the first frame")
                return 1
        tracker.set_reference(left_eye.frame(0, eye=Eye.LEFT))
        tracker.set_reference(right_eye.frame(0, eye=Eye.RIGHT))

        print(f"{'frame':>5} {'true':>6} {'left':>7} {'q':>5} {'right':>7} {'q':>5}")
        for i, (lf, rf) in enumerate(zip(left_eye.frames(N_FRAMES, STEP_DEG, Eye.LEFT),
                                         right_eye.frames(N_FRAMES, -STEP_DEG, Eye.RIGHT))):
            left, right = tracker.process_frames(lf, rf)
            print(f"{i:5d} {i * STEP_DEG:6.1f} {left.torsion_angle_deg:7.2f} {left.torsion_quality:5.0f} "
                  f"{right.torsion_angle_deg:7.2f} {right.torsion_quality:5.0f}")
    return 0


if __name__ == "__main__":
    start_logging(console=True)
    install_crash_hooks()
    sys.exit(main())
