import threading

from torsion_tracker.config.tracking_settings import EyeTrackingSettings, with_changes


# ---------- Thread-safe holder of the current settings value ----------
class ThreadSafeConfig:
    """
    Holds the current EyeTrackingSettings. Values are immutable, so readers get
    the snapshot itself; writers swap in a new validated value under the lock.
    """
    def __init__(self, settings: EyeTrackingSettings):
        self._lock = threading.Lock()
        self._data = settings

    def get(self) -> EyeTrackingSettings:
        with self._lock:
            return self._data

    def set(self, settings: EyeTrackingSettings):
        if not isinstance(settings, EyeTrackingSettings):
            raise TypeError(f"expected EyeTrackingSettings, got {type(settings).__name__}")
        with self._lock:
            self._data = settings

    def update(self, **kwargs) -> EyeTrackingSettings:
        with self._lock:
            self._data = with_changes(self._data, **kwargs)
            return self._data

    def get_field(self, field):
        with self._lock:
            return getattr(self._data, field)
