"""
Calibration module for marktrack.

Observations are accumulated by CameraCalibration; the estimation steps are
pure functions over observations and return dataclasses.
"""

from .pattern import (
    CalibrationPattern,
    ChessboardPattern,
)

from .camera_calibration import (
    MIN_OBSERVATIONS,
    CameraCalibration,
    Observation,
    calibrate_intrinsics,
    compute_initial_extrinsics,
    stereo_calibrate_pair,
)

from .refine import (
    refine_extrinsics,
)

__all__ = [
    # Pattern
    "CalibrationPattern",
    "ChessboardPattern",
    # Estimation
    "MIN_OBSERVATIONS",
    "CameraCalibration",
    "Observation",
    "calibrate_intrinsics",
    "stereo_calibrate_pair",
    "compute_initial_extrinsics",
    # Refinement
    "refine_extrinsics",
]
