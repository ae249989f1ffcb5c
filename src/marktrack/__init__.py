# marktrack - Multi-camera marker tracking and triangulation

__version__ = "0.1.0"

# Core types
from marktrack.types import (
    MAX_ARITY,
    Frame,
    Frameset,
    MarkType,
    Mark,
    Markset,
    CameraIntrinsics,
    CameraExtrinsics,
    CalibratedCamera,
    CalibrationData,
    Posit,
    Positset,
)

# Configuration
from marktrack.parameters import ParameterKey, Parameters
from marktrack.config import (
    load_parameters,
    save_parameters,
    load_calibration,
    save_calibration,
)

# Errors
from marktrack.errors import (
    MarktrackError,
    ConfigurationError,
    ArityMismatchError,
    InsufficientDataError,
    SourceError,
)

# Pipeline stages
from marktrack.tracking import Tracker, TrackState, create_algorithm
from marktrack.calibration import CameraCalibration, ChessboardPattern
from marktrack.triangulation import Localization, triangulate_markset
from marktrack.sources import (
    VideoSource,
    CameraVideoSource,
    FileVideoSource,
    enumerate_devices,
)
from marktrack.pipeline import Aggregator, Controller, ControllerMode, ControllerState
from marktrack.application import Application

__all__ = [
    # Types
    "MAX_ARITY",
    "Frame",
    "Frameset",
    "MarkType",
    "Mark",
    "Markset",
    "CameraIntrinsics",
    "CameraExtrinsics",
    "CalibratedCamera",
    "CalibrationData",
    "Posit",
    "Positset",
    # Configuration
    "ParameterKey",
    "Parameters",
    "load_parameters",
    "save_parameters",
    "load_calibration",
    "save_calibration",
    # Errors
    "MarktrackError",
    "ConfigurationError",
    "ArityMismatchError",
    "InsufficientDataError",
    "SourceError",
    # Stages
    "Tracker",
    "TrackState",
    "create_algorithm",
    "CameraCalibration",
    "ChessboardPattern",
    "Localization",
    "triangulate_markset",
    "VideoSource",
    "CameraVideoSource",
    "FileVideoSource",
    "enumerate_devices",
    "Aggregator",
    "Controller",
    "ControllerMode",
    "ControllerState",
    "Application",
]
