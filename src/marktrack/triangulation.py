"""
Triangulation functions for 3D localization.

Mark centers are undistorted, back-projected into world rays and the
position is the point closest (least squares) to all rays. The ray
intersection kernel is Numba-compiled.
"""

from __future__ import annotations

import numpy as np
from numba import jit

import marktrack.logger

from .errors import ArityMismatchError
from .types import (
    CalibratedCamera,
    CalibrationData,
    CameraIntrinsics,
    Markset,
    Posit,
    compute_camera_center,
)

logger = marktrack.logger.get(__name__)

MIN_VIEWS = 2


# ============================================================================
# Numba Kernel
# ============================================================================


@jit(nopython=True, cache=True)
def _intersect_rays(origins: np.ndarray, directions: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Least-squares intersection of rays.

    Minimizes the sum of squared perpendicular distances:
        sum_i (I - d_i d_i^T) (x - o_i) = 0

    Args:
        origins: (n, 3) ray origins
        directions: (n, 3) unit ray directions

    Returns:
        (xyz, rms_distance)
    """
    a = np.zeros((3, 3))
    b = np.zeros(3)
    n = origins.shape[0]

    for i in range(n):
        d = directions[i]
        p = np.eye(3) - np.outer(d, d)
        a += p
        b += np.dot(p, origins[i])

    xyz = np.linalg.solve(a, b)

    squared = 0.0
    for i in range(n):
        v = xyz - origins[i]
        perpendicular = v - np.dot(v, directions[i]) * directions[i]
        squared += np.dot(perpendicular, perpendicular)

    return xyz, np.sqrt(squared / n)


# ============================================================================
# Undistortion
# ============================================================================


def undistort_points(
    points: np.ndarray,
    intrinsics: CameraIntrinsics,
    iterations: int = 5,
) -> np.ndarray:
    """
    Undistort 2D points using camera intrinsics.

    Uses iterative algorithm for better accuracy than cv2.undistortPoints.
    Based on: https://yangyushi.github.io/code/2020/03/04/opencv-undistort.html

    Args:
        points: (n, 2) array of distorted image coordinates
        intrinsics: Camera intrinsics with distortion coefficients
        iterations: Number of refinement iterations

    Returns:
        (n, 2) array of undistorted image coordinates
    """
    points = np.asarray(points, dtype=np.float64)
    if points.size == 0:
        return points.copy()

    coefficients = np.zeros(5)
    distortion = np.asarray(intrinsics.distortion, dtype=np.float64).ravel()[:5]
    coefficients[:distortion.size] = distortion
    k1, k2, p1, p2, k3 = coefficients

    fx, fy = intrinsics.matrix[0, 0], intrinsics.matrix[1, 1]
    cx, cy = intrinsics.matrix[0, 2], intrinsics.matrix[1, 2]

    x = (points[:, 0] - cx) / fx
    y = (points[:, 1] - cy) / fy
    x0, y0 = x.copy(), y.copy()

    for _ in range(iterations):
        r2 = x**2 + y**2
        k_inv = 1 / (1 + k1 * r2 + k2 * r2**2 + k3 * r2**3)
        delta_x = 2 * p1 * x * y + p2 * (r2 + 2 * x**2)
        delta_y = p1 * (r2 + 2 * y**2) + 2 * p2 * x * y
        x = (x0 - delta_x) * k_inv
        y = (y0 - delta_y) * k_inv

    return np.column_stack([x * fx + cx, y * fy + cy])


# ============================================================================
# Rays
# ============================================================================


def back_project(
    camera: CalibratedCamera,
    point: tuple[float, float],
) -> tuple[np.ndarray, np.ndarray]:
    """
    World ray through a pixel of a calibrated camera.

    Returns:
        (origin, unit direction), both (3,)
    """
    undistorted = undistort_points(np.array([point]), camera.intrinsics)[0]
    pixel = np.array([undistorted[0], undistorted[1], 1.0])
    direction_cam = np.linalg.solve(camera.intrinsics.matrix, pixel)

    rotation = camera.extrinsics.rotation
    direction = rotation.T @ direction_cam
    direction /= np.linalg.norm(direction)
    return compute_camera_center(camera.extrinsics), direction


def intersect_rays(
    origins: np.ndarray,
    directions: np.ndarray,
) -> tuple[np.ndarray, float] | None:
    """
    Point closest to all rays.

    Args:
        origins: (n, 3) ray origins
        directions: (n, 3) unit ray directions

    Returns:
        (xyz, rms_distance), or None for fewer than 2 rays or parallel rays
    """
    if len(origins) < MIN_VIEWS:
        return None

    try:
        xyz, residual = _intersect_rays(
            np.ascontiguousarray(origins, dtype=np.float64),
            np.ascontiguousarray(directions, dtype=np.float64),
        )
    except np.linalg.LinAlgError:
        return None

    if not np.all(np.isfinite(xyz)):
        return None
    return xyz, float(residual)


# ============================================================================
# High-Level API
# ============================================================================


def triangulate_markset(calibration: CalibrationData, markset: Markset) -> Posit:
    """
    Triangulate one target from the valid marks of a markset.

    Fewer than two valid marks give an invalid posit: a single ray does not
    determine a position.

    Args:
        calibration: Calibration snapshot used for every camera of the markset
        markset: Marks of one target

    Returns:
        Posit with contributing-view count and ray residual
    """
    marks = markset.valid_marks()
    cameras = sorted(camera for camera in marks if camera < calibration.arity)

    if len(cameras) < MIN_VIEWS:
        return Posit.invalid(views=len(cameras), calibration_version=calibration.version)

    origins = np.zeros((len(cameras), 3))
    directions = np.zeros((len(cameras), 3))
    for i, camera in enumerate(cameras):
        origins[i], directions[i] = back_project(calibration[camera], marks[camera].center)

    result = intersect_rays(origins, directions)
    if result is None:
        return Posit.invalid(views=len(cameras), calibration_version=calibration.version)

    xyz, residual = result
    return Posit(
        position=xyz,
        views=len(cameras),
        residual=residual,
        calibration_version=calibration.version,
    )


class Localization:
    """
    Localization stage holding the current calibration snapshot.

    The snapshot is swapped by a single reference assignment and read once
    per call, so a call uses either the old or the new snapshot as a whole.
    """

    def __init__(self, arity: int):
        self.arity = arity
        self._calibration: CalibrationData | None = None

    @property
    def calibration(self) -> CalibrationData | None:
        return self._calibration

    def set_calibration_data(self, calibration: CalibrationData | None) -> None:
        if calibration is not None and calibration.arity != self.arity:
            raise ArityMismatchError(self.arity, calibration.arity)
        self._calibration = calibration

    def locate(self, markset: Markset) -> Posit:
        calibration = self._calibration
        if calibration is None:
            return Posit.invalid(views=len(markset.valid_marks()))
        return triangulate_markset(calibration, markset)
