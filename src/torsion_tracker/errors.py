"""
Exception taxonomy.

Expected segmentation misses (no pupil, masked-out iris, weak correlation) are
never raised; they are reported through ``ProcessFrameResult``. Only contract
violations raise, and they all derive from ``PreconditionError`` so callers can
tell them apart from numeric failures.
"""


class TorsionTrackerError(Exception):
    """Base class for all errors raised by torsion_tracker."""


class PreconditionError(TorsionTrackerError, ValueError):
    """A caller broke the contract of an operation."""


class FrameError(PreconditionError):
    """The input frame is missing, empty or not a 2-D grayscale buffer."""


class SettingsError(PreconditionError):
    """EyeTrackingSettings holds values outside their valid range."""


class CalibrationStateError(PreconditionError):
    """The calibration is not in the state the requested operation needs."""
