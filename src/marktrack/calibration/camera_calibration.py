"""
Multi-camera calibration from chessboard observations.

CameraCalibration accumulates pattern detections frameset by frameset;
finalize() estimates intrinsics per camera, chains pairwise stereo
calibrations from the reference camera (camera 0) and optionally refines
the result with bundle adjustment.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import combinations

import cv2
import numpy as np

import marktrack.logger

from ..errors import InsufficientDataError
from ..parameters import ParameterKey, Parameters
from ..types import (
    CalibratedCamera,
    CalibrationData,
    CameraExtrinsics,
    CameraIntrinsics,
    Frameset,
)
from .pattern import CalibrationPattern

logger = marktrack.logger.get(__name__)

MIN_OBSERVATIONS = 3
MIN_ORIENTATION_SPREAD = np.deg2rad(5.0)
REFERENCE_CAMERA = 0


@dataclass(frozen=True, slots=True)
class Observation:
    """Pattern corners detected by one camera in one frameset."""

    sequence: int
    corners: np.ndarray  # (n, 2) float32


# ============================================================================
# Intrinsics
# ============================================================================


def _orientation_spread(rvecs: list[np.ndarray]) -> float:
    """Largest rotation angle between any two pattern orientations."""
    rotations = [cv2.Rodrigues(rvec)[0] for rvec in rvecs]
    spread = 0.0
    for r_a, r_b in combinations(rotations, 2):
        cos_angle = (np.trace(r_a.T @ r_b) - 1) / 2
        spread = max(spread, float(np.arccos(np.clip(cos_angle, -1.0, 1.0))))
    return spread


def calibrate_intrinsics(
    object_points: np.ndarray,
    observations: list[Observation],
    resolution: tuple[int, int],
) -> CameraIntrinsics:
    """
    Calibrate camera intrinsics from pattern observations.

    Args:
        object_points: (n, 3) pattern corners
        observations: Detections of the full pattern in different frames
        resolution: (width, height) of the frames

    Returns:
        CameraIntrinsics with calibration results

    Raises:
        InsufficientDataError: Too few observations or degenerate views
    """
    if len(observations) < MIN_OBSERVATIONS:
        raise InsufficientDataError(
            f"Insufficient frames for calibration: {len(observations)} "
            f"(need at least {MIN_OBSERVATIONS})"
        )

    obj = [object_points.astype(np.float32) for _ in observations]
    img = [obs.corners.astype(np.float32) for obs in observations]

    try:
        error, matrix, dist, rvecs, _ = cv2.calibrateCamera(obj, img, resolution, None, None)
    except cv2.error as e:
        raise InsufficientDataError(f"Calibration failed: {e}") from e

    if not (np.all(np.isfinite(matrix)) and np.all(np.isfinite(dist)) and np.isfinite(error)):
        raise InsufficientDataError("Calibration diverged")

    if _orientation_spread(rvecs) < MIN_ORIENTATION_SPREAD:
        raise InsufficientDataError("Pattern views are degenerate (no orientation change)")

    return CameraIntrinsics(
        matrix=matrix,
        distortion=dist.ravel(),
        error=round(float(error), 4),
        resolution=resolution,
    )


# ============================================================================
# Extrinsics
# ============================================================================


def stereo_calibrate_pair(
    object_points: np.ndarray,
    observations_a: list[Observation],
    observations_b: list[Observation],
    intrinsics_a: CameraIntrinsics,
    intrinsics_b: CameraIntrinsics,
) -> tuple[np.ndarray, np.ndarray, float] | None:
    """
    Stereo calibrate a camera pair using observations from shared framesets.

    Returns:
        (rotation_3x3, translation_3, rmse) of camera B relative to camera A,
        or None if insufficient shared data
    """
    by_sequence = {obs.sequence: obs for obs in observations_b}
    shared = [(obs, by_sequence[obs.sequence]) for obs in observations_a if obs.sequence in by_sequence]

    if len(shared) < MIN_OBSERVATIONS:
        return None

    obj = [object_points.astype(np.float32) for _ in shared]
    img_a = [a.corners.astype(np.float32) for a, _ in shared]
    img_b = [b.corners.astype(np.float32) for _, b in shared]

    flags = cv2.CALIB_FIX_INTRINSIC
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 40, 1e-6)

    ret, _, _, _, _, R, T, _, _ = cv2.stereoCalibrate(
        obj,
        img_a,
        img_b,
        intrinsics_a.matrix,
        intrinsics_a.distortion,
        intrinsics_b.matrix,
        intrinsics_b.distortion,
        intrinsics_a.resolution,
        criteria=criteria,
        flags=flags,
    )

    return R, T.ravel(), ret


def compute_initial_extrinsics(
    object_points: np.ndarray,
    observations: list[list[Observation]],
    intrinsics: list[CameraIntrinsics],
    reference: int = REFERENCE_CAMERA,
) -> dict[int, CameraExtrinsics]:
    """
    Compute extrinsics for all cameras via pairwise stereo calibration.

    The reference camera is the world origin; other poses are chained from
    cameras already placed. Cameras without enough shared views are absent
    from the result.
    """
    extrinsics = {
        reference: CameraExtrinsics(
            rotation=np.eye(3, dtype=np.float64),
            translation=np.zeros(3, dtype=np.float64),
        )
    }

    pairs = list(combinations(range(len(observations)), 2))

    # Keep trying until we can't place any more cameras
    changed = True
    while changed:
        changed = False
        for port_a, port_b in pairs:
            if (port_a in extrinsics) == (port_b in extrinsics):
                continue

            anchor, target = (port_a, port_b) if port_a in extrinsics else (port_b, port_a)

            result = stereo_calibrate_pair(
                object_points,
                observations[anchor],
                observations[target],
                intrinsics[anchor],
                intrinsics[target],
            )
            if result is None:
                continue

            R_rel, t_rel, rmse = result
            R_anchor = extrinsics[anchor].rotation
            t_anchor = extrinsics[anchor].translation

            extrinsics[target] = CameraExtrinsics(
                rotation=R_rel @ R_anchor,
                translation=R_rel @ t_anchor + t_rel,
            )
            logger.info(f"Camera {target} placed from camera {anchor} (rmse {rmse:.3f}px)")
            changed = True

    return extrinsics


# ============================================================================
# Accumulating Calibration
# ============================================================================


class CameraCalibration:
    """
    Accumulates pattern observations and produces CalibrationData.

    Usage:
        calibration = CameraCalibration(parameters, arity, pattern)
        for frameset in framesets:
            calibration.measure(frameset)
            if calibration.is_ready():
                data = calibration.finalize()
    """

    def __init__(self, parameters: Parameters, arity: int, pattern: CalibrationPattern):
        self.parameters = parameters
        self.arity = arity
        self.pattern = pattern
        self._object_points = pattern.object_points()
        self._observations: list[list[Observation]] = [[] for _ in range(arity)]
        self._resolutions: list[tuple[int, int] | None] = [None] * arity

    @property
    def observations(self) -> list[list[Observation]]:
        return [list(per_camera) for per_camera in self._observations]

    def progress(self) -> tuple[int, ...]:
        """Number of accepted observations per camera."""
        return tuple(len(per_camera) for per_camera in self._observations)

    def is_ready(self) -> bool:
        required = self.parameters[ParameterKey.CALIBRATION_FRAMES]
        return all(count >= required for count in self.progress())

    def reset(self) -> None:
        self._observations = [[] for _ in range(self.arity)]
        self._resolutions = [None] * self.arity

    def _is_distinct(self, camera: int, corners: np.ndarray) -> bool:
        distinct = self.parameters[ParameterKey.CALIBRATION_DISTINCT]
        for previous in self._observations[camera]:
            displacement = np.linalg.norm(previous.corners - corners, axis=1).mean()
            if displacement < distinct:
                return False
        return True

    def measure(self, frameset: Frameset) -> bool:
        """
        Detect the pattern in every frame of the frameset.

        Returns:
            True if at least one new observation was accepted
        """
        accepted = False
        for camera, frame in frameset.frames.items():
            corners = self.pattern.detect(frame.image)
            if corners is None or len(corners) != len(self._object_points):
                continue
            corners = np.asarray(corners, dtype=np.float32).reshape(-1, 2)
            if not self._is_distinct(camera, corners):
                continue

            self._observations[camera].append(Observation(frameset.sequence, corners))
            self._resolutions[camera] = (frame.width, frame.height)
            accepted = True
            logger.debug(
                f"Camera {camera}: pattern observation {len(self._observations[camera])}"
            )
        return accepted

    def finalize(self) -> CalibrationData:
        """
        Estimate calibration of all cameras.

        Raises:
            InsufficientDataError: Some camera lacks distinct, well-conditioned
                observations or shares too few views with the others
        """
        intrinsics = []
        for camera in range(self.arity):
            if self._resolutions[camera] is None:
                raise InsufficientDataError(f"Camera {camera} never saw the pattern")
            try:
                intrinsics.append(calibrate_intrinsics(
                    self._object_points,
                    self._observations[camera],
                    self._resolutions[camera],
                ))
            except InsufficientDataError as e:
                raise InsufficientDataError(f"Camera {camera}: {e}") from e

        extrinsics = compute_initial_extrinsics(
            self._object_points, self._observations, intrinsics
        )
        missing = sorted(set(range(self.arity)) - set(extrinsics))
        if missing:
            raise InsufficientDataError(
                f"Camera(s) {missing} share too few views with the reference camera"
            )

        cameras = [
            CalibratedCamera(intrinsics=intrinsics[camera], extrinsics=extrinsics[camera])
            for camera in range(self.arity)
        ]
        error = float(np.mean([intr.error for intr in intrinsics]))

        if self.arity > 1 and self.parameters[ParameterKey.CALIBRATION_REFINE]:
            from .refine import refine_extrinsics

            cameras, rmse = refine_extrinsics(cameras, self._object_points, self._observations)
            if rmse is not None:
                error = rmse

        logger.info(f"Calibration of {self.arity} camera(s) finished, error {error:.4f}px")
        return CalibrationData(cameras=tuple(cameras), error=error)
