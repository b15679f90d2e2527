from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, wait
import threading

from torsion_tracker.calibration.calibration_io import load_calibration_file, save_calibration_file
from torsion_tracker.calibration.eye_calibration import EyeCalibration, EyePhysicalModel, estimate_eye_model
from torsion_tracker.config.tracking_settings import EyeTrackingSettings, load_tracking_settings, with_changes
from torsion_tracker.data.eye_data import Eye, EyeData, ImageFrame
from torsion_tracker.errors import FrameError, SettingsError
from torsion_tracker.helpers.thread_safe_config import ThreadSafeConfig
from torsion_tracker.logging_utils.logging_setup import get_logger
from torsion_tracker.pipeline.eye_tracking_pipeline import EyeTrackingPipeline

log = get_logger(__name__)

EYES = (Eye.LEFT, Eye.RIGHT)


class EyeTracker:
    """
    Two independent eyes: one pipeline and one calibration each.

    Left and right frames are processed concurrently on two worker threads.
    Pipelines hold per-eye scratch buffers, so each eye has exactly one worker
    at a time. Frames of an eye without a torsion reference are processed with
    torsion skipped.
    """

    def __init__(self, settings: EyeTrackingSettings | None = None):
        self.config = ThreadSafeConfig(settings if settings is not None else load_tracking_settings())
        self.calibrations = {eye: EyeCalibration(eye) for eye in EYES}
        self._pipeline_lock = threading.Lock()
        self._pipelines = self._build_pipelines(self.config.get())
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="eye")

    @staticmethod
    def _build_pipelines(settings: EyeTrackingSettings) -> dict[Eye, EyeTrackingPipeline]:
        return {eye: EyeTrackingPipeline(settings) for eye in EYES}

    # ---------- settings ----------
    @property
    def settings(self) -> EyeTrackingSettings:
        return self.config.get()

    def set_settings(self, settings: EyeTrackingSettings) -> None:
        """Swap the settings; pipelines are rebuilt when the strategy selection changes."""
        if not isinstance(settings, EyeTrackingSettings):
            raise SettingsError(f"expected EyeTrackingSettings, got {type(settings).__name__}")
        old = self.config.get()
        pipelines = self._build_pipelines(settings) if settings.strategy_key != old.strategy_key else None
        with self._pipeline_lock:
            self.config.set(settings)
            if pipelines is not None:
                self._pipelines = pipelines
        log.info("Tracking settings updated (pupil=%s eyelids=%s position=%s iris=%s reflections=%s)",
                 *(m.value for m in settings.strategy_key))

    def update_settings(self, **changes) -> EyeTrackingSettings:
        settings = with_changes(self.config.get(), **changes)
        self.set_settings(settings)
        return settings

    # ---------- processing ----------
    def _settings_for(self, eye: Eye, settings: EyeTrackingSettings) -> EyeTrackingSettings:
        if settings.calculate_torsion and not self.calibrations[eye].is_ready:
            return with_changes(settings, calculate_torsion=False)
        return settings

    @staticmethod
    def _check_eye(frame: ImageFrame, eye: Eye) -> None:
        if frame.eye != eye:
            raise FrameError(f"expected a {eye.name} frame, got {frame.eye.name}")

    def _current(self) -> tuple[EyeTrackingSettings, dict[Eye, EyeTrackingPipeline]]:
        """Settings and the pipelines built for them, read together."""
        with self._pipeline_lock:
            return self.config.get(), dict(self._pipelines)

    def _current_for(self, eye: Eye) -> tuple[EyeTrackingSettings, EyeTrackingPipeline]:
        if eye not in EYES:
            raise FrameError(f"frame must be tagged LEFT or RIGHT, got {eye.name}")
        settings, pipelines = self._current()
        return settings, pipelines[eye]

    def process_eye(self, frame: ImageFrame) -> EyeData:
        """Process a single frame on the calling thread, using the pipeline of frame.eye."""
        settings, pipeline = self._current_for(frame.eye)
        return pipeline.process(frame, self.calibrations[frame.eye], self._settings_for(frame.eye, settings))

    def process_frames(self, left: ImageFrame | None, right: ImageFrame | None) -> tuple[EyeData | None, EyeData | None]:
        """
        Process a left/right frame pair concurrently. A missing frame gives None.
        Both eyes always finish before this returns. Precondition errors raised in
        a worker are re-raised here, the left eye's first when both fail.
        """
        settings, pipelines = self._current()

        futures = {}
        for eye, frame in zip(EYES, (left, right)):
            if frame is None:
                continue
            self._check_eye(frame, eye)
            futures[eye] = self._executor.submit(
                pipelines[eye].process, frame, self.calibrations[eye], self._settings_for(eye, settings))

        wait(futures.values())
        for eye, fut in futures.items():
            error = fut.exception()
            if error is not None:
                raise error
        results = {eye: fut.result() for eye, fut in futures.items()}
        return results.get(Eye.LEFT), results.get(Eye.RIGHT)

    # ---------- calibration commands ----------
    def set_eye_model(self, eye: Eye, model: EyePhysicalModel) -> None:
        self.calibrations[eye].set_eye_model(model)

    def auto_set_eye_model(self, eye_data: EyeData) -> EyePhysicalModel | None:
        """Eye model from a GOOD frame of that eye; returns None (and changes nothing) otherwise."""
        model = estimate_eye_model(eye_data)
        if model is None:
            log.warning("%s: no eye model from frame %d (status %s)", eye_data.eye.name,
                        eye_data.frame_number, eye_data.status.name)
            return None
        self.calibrations[eye_data.eye].set_eye_model(model)
        return model

    def set_reference(self, frame: ImageFrame) -> EyeData:
        """Capture the torsion reference of frame.eye from this frame."""
        settings, pipeline = self._current_for(frame.eye)
        calibration = self.calibrations[frame.eye]
        eye_data, reference = pipeline.capture_reference(frame, calibration, settings)
        calibration.set_reference(reference)
        return eye_data

    def reset_reference(self, eye: Eye) -> bool:
        return self.calibrations[eye].reset_reference()

    def save_calibration(self, path) -> None:
        save_calibration_file(path, self.calibrations)

    def load_calibration(self, path) -> None:
        snapshots = load_calibration_file(path)
        for eye, snapshot in snapshots.items():
            if eye in self.calibrations:
                self.calibrations[eye].restore(snapshot)

    # ---------- lifecycle ----------
    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
