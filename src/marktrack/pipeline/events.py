"""
Events published by pipeline workers to their subscriber queues.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..types import CalibrationData, Frameset, Markset, Mark, Positset


class ControllerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


class ControllerMode(Enum):
    CALIBRATION = "calibration"
    TRACKING = "tracking"


@dataclass(frozen=True, slots=True)
class StateChanged:
    state: ControllerState


@dataclass(frozen=True, slots=True)
class ModeChanged:
    mode: ControllerMode


@dataclass(frozen=True, slots=True)
class FramesetReady:
    frameset: Frameset


@dataclass(frozen=True, slots=True)
class PositsetReady:
    """Marks and positions of every target for one frameset."""

    sequence: int
    marksets: tuple[Markset, ...]
    positset: Positset


@dataclass(frozen=True, slots=True)
class CalibrationProgress:
    observations: tuple[int, ...]  # accepted observations per camera


@dataclass(frozen=True, slots=True)
class CalibrationDataReady:
    calibration: CalibrationData


@dataclass(frozen=True, slots=True)
class SourceRemoved:
    camera: int


@dataclass(frozen=True, slots=True)
class ConfigurationFailed:
    error: Exception


@dataclass(frozen=True, slots=True)
class MarkRejected:
    target: int
    camera: int
    mark: Mark


@dataclass(frozen=True, slots=True)
class ErrorOccurred:
    message: str
    error: Exception
