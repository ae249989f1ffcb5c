"""
Concurrent tracking pipeline.

Stages run on their own threads and talk by message passing only:
video sources -> Aggregator -> Controller -> subscriber queues.
"""

from .aggregator import Aggregator
from .controller import Controller
from .events import (
    CalibrationDataReady,
    CalibrationProgress,
    ConfigurationFailed,
    ControllerMode,
    ControllerState,
    ErrorOccurred,
    FramesetReady,
    MarkRejected,
    ModeChanged,
    PositsetReady,
    SourceRemoved,
    StateChanged,
)
from .worker import Worker

__all__ = [
    # Stages
    "Worker",
    "Aggregator",
    "Controller",
    # States
    "ControllerState",
    "ControllerMode",
    # Events
    "StateChanged",
    "ModeChanged",
    "FramesetReady",
    "PositsetReady",
    "CalibrationProgress",
    "CalibrationDataReady",
    "SourceRemoved",
    "ConfigurationFailed",
    "MarkRejected",
    "ErrorOccurred",
]
