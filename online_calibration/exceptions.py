"""
Error taxonomy for online calibration sessions.
"""


class OnlineCalibrationError(Exception):
    """Base class for all calibration session errors."""


class MalformedInputError(OnlineCalibrationError, ValueError):
    """Input frames or models violate the session's contract (empty, mismatched sizes, wrong order)."""


class InsufficientFeaturesError(OnlineCalibrationError, RuntimeError):
    """No edge vertices are left to drive the optimization."""
