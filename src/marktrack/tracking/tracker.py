"""
Multi-camera tracker of one target.

Each camera has its own track: algorithm data, last mark and state
(UNINITIALIZED -> TRACKING -> TRACKING | LOST). A lost track only returns
to TRACKING through a fresh initialization: either an operator seed via
set_mark(), or a reacquisition along the epipolar line of a camera that
still tracks the target.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import cv2
import numpy as np

import marktrack.logger

from ..parameters import ParameterKey, Parameters
from ..types import (
    CalibrationData,
    Frame,
    Frameset,
    Mark,
    Markset,
    compute_fundamental_matrix,
)
from .base import TrackerAlgorithm

logger = marktrack.logger.get(__name__)


class TrackState(Enum):
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"
    LOST = "lost"


@dataclass(frozen=True, slots=True)
class CameraTrack:
    """Per-camera track; replaced as a whole, never patched."""

    state: TrackState = TrackState.UNINITIALIZED
    data: object | None = None
    mark: Mark = field(default_factory=Mark.invalid)


def epipolar_mask(
    shape: tuple[int, ...],
    fundamental: np.ndarray,
    point: tuple[float, float],
    tolerance: int,
) -> np.ndarray | None:
    """
    Mask of the band around the epipolar line of `point`.

    Args:
        shape: Shape of the target image
        fundamental: F mapping points of the source view to lines in the target view
        point: Pixel coordinates in the source view
        tolerance: Half-width of the band in pixels

    Returns:
        uint8 mask (255 inside the band), or None for a degenerate line
    """
    a, b, c = fundamental @ np.array([point[0], point[1], 1.0])
    if not np.isfinite([a, b, c]).all() or (abs(a) < 1e-12 and abs(b) < 1e-12):
        return None

    height, width = shape[:2]
    if abs(b) > abs(a):
        x0, x1 = 0.0, float(width - 1)
        p0 = (x0, -(a * x0 + c) / b)
        p1 = (x1, -(a * x1 + c) / b)
    else:
        y0, y1 = 0.0, float(height - 1)
        p0 = (-(b * y0 + c) / a, y0)
        p1 = (-(b * y1 + c) / a, y1)

    mask = np.zeros((height, width), dtype=np.uint8)
    cv2.line(
        mask,
        (int(round(p0[0])), int(round(p0[1]))),
        (int(round(p1[0])), int(round(p1[1]))),
        255,
        thickness=2 * tolerance + 1,
    )
    return mask


class Tracker:
    """
    Tracks one target across all cameras of the pipeline.

    Only the controller's worker thread calls into a Tracker.
    """

    def __init__(self, arity: int, algorithm: TrackerAlgorithm, parameters: Parameters):
        self.arity = arity
        self.algorithm = algorithm
        self.parameters = parameters
        self._tracks = [CameraTrack() for _ in range(arity)]
        self._calibration: CalibrationData | None = None

    def state(self, camera: int) -> TrackState:
        return self._tracks[camera].state

    def track_of(self, camera: int) -> CameraTrack:
        return self._tracks[camera]

    def set_calibration_data(self, calibration: CalibrationData | None) -> None:
        self._calibration = calibration

    def set_mark(self, frame: Frame, camera: int, mark: Mark) -> bool:
        """
        (Re)initialize the track of one camera from a seed mark.

        On failure the previous track is kept untouched.
        """
        data = self.algorithm.initialize(frame.image, mark)
        if data is None:
            logger.warning(f"Camera {camera}: seed {mark.center} rejected")
            return False
        self._tracks[camera] = CameraTrack(TrackState.TRACKING, data, mark)
        logger.info(f"Camera {camera}: tracking from {mark.center}")
        return True

    def track(self, frameset: Frameset) -> Markset:
        """Search every camera of the frameset and return the resulting marks."""
        calibration = self._calibration
        margin = self.parameters[ParameterKey.SEARCH_MARGIN]
        marks: dict[int, Mark] = {}

        for camera, frame in frameset.frames.items():
            track = self._tracks[camera]
            if track.state is not TrackState.TRACKING:
                continue

            mark = self.algorithm.search(frame.image, track.data, roi=track.mark.region(margin))
            if mark.valid:
                self._tracks[camera] = CameraTrack(TrackState.TRACKING, track.data, mark)
            else:
                logger.debug(f"Camera {camera}: target lost at frameset {frameset.sequence}")
                self._tracks[camera] = CameraTrack(TrackState.LOST, track.data, track.mark)
            marks[camera] = mark

        for camera, frame in frameset.frames.items():
            if camera in marks:
                continue
            marks[camera] = Mark.invalid()
            if calibration is not None:
                marks[camera] = self._reacquire(calibration, camera, frame, marks)

        return Markset(sequence=frameset.sequence, marks=marks)

    def _reacquire(
        self,
        calibration: CalibrationData,
        camera: int,
        frame: Frame,
        marks: dict[int, Mark],
    ) -> Mark:
        """Search along the epipolar band of a camera that found the target."""
        tolerance = self.parameters[ParameterKey.EPIPOLAR_TOLERANCE]

        for source, source_mark in sorted(marks.items()):
            if not source_mark.valid or self._tracks[source].state is not TrackState.TRACKING:
                continue

            fundamental = compute_fundamental_matrix(calibration[source], calibration[camera])
            mask = epipolar_mask(frame.image.shape, fundamental, source_mark.center, tolerance)
            if mask is None:
                continue

            mark = self.algorithm.search(frame.image, self._tracks[source].data, mask=mask)
            if not mark.valid:
                continue

            if self.set_mark(frame, camera, mark):
                logger.info(f"Camera {camera}: reacquired via camera {source}")
                return mark

        return Mark.invalid()
