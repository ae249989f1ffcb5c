"""
Bundle adjustment of camera extrinsics.

Optimizes the poses of all non-reference cameras jointly with one pattern
pose per frameset seen by at least two cameras, minimizing the pattern
corner reprojection error.
"""

from __future__ import annotations

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

import marktrack.logger

from ..types import CalibratedCamera, CameraExtrinsics, extrinsics_from_vector, extrinsics_to_vector

logger = marktrack.logger.get(__name__)

CAMERA_PARAM_COUNT = 6
POSE_PARAM_COUNT = 6


def _initial_pose(
    camera: CalibratedCamera,
    object_points: np.ndarray,
    corners: np.ndarray,
) -> np.ndarray | None:
    """Pattern pose in world coordinates as [rodrigues, translation]."""
    ok, rvec, tvec = cv2.solvePnP(
        object_points.astype(np.float64),
        corners.astype(np.float64),
        camera.intrinsics.matrix,
        camera.intrinsics.distortion,
    )
    if not ok:
        return None

    # x_cam = R_c X_world + t_c and x_cam = R_p X_pattern + t_p
    R_pattern = cv2.Rodrigues(rvec)[0]
    R_c = camera.extrinsics.rotation
    t_c = camera.extrinsics.translation
    pose = CameraExtrinsics(
        rotation=R_c.T @ R_pattern,
        translation=R_c.T @ (tvec.ravel() - t_c),
    )
    return extrinsics_to_vector(pose)


def _get_sparsity_pattern(
    rows: list[tuple[int, int, np.ndarray]],
    free_slots: dict[int, int],
    n_poses: int,
    n_corners: int,
) -> lil_matrix:
    """
    Build sparse Jacobian pattern for least_squares.
    """
    m = len(rows) * n_corners * 2
    n = len(free_slots) * CAMERA_PARAM_COUNT + n_poses * POSE_PARAM_COUNT
    offset = len(free_slots) * CAMERA_PARAM_COUNT

    A = lil_matrix((m, n), dtype=int)
    for r, (camera, pose, _) in enumerate(rows):
        block = slice(r * n_corners * 2, (r + 1) * n_corners * 2)
        if camera in free_slots:
            start = free_slots[camera] * CAMERA_PARAM_COUNT
            A[block, start:start + CAMERA_PARAM_COUNT] = 1
        start = offset + pose * POSE_PARAM_COUNT
        A[block, start:start + POSE_PARAM_COUNT] = 1

    return A


def _xy_reprojection_error(
    params: np.ndarray,
    rows: list[tuple[int, int, np.ndarray]],
    cameras: list[CalibratedCamera],
    free_slots: dict[int, int],
    object_points: np.ndarray,
) -> np.ndarray:
    """
    Compute reprojection error for bundle adjustment.
    """
    n_free = len(free_slots)
    camera_params = params[: n_free * CAMERA_PARAM_COUNT].reshape(n_free, CAMERA_PARAM_COUNT)
    poses = params[n_free * CAMERA_PARAM_COUNT:].reshape(-1, POSE_PARAM_COUNT)

    errors = []
    for camera, pose, corners in rows:
        if camera in free_slots:
            camera_vector = camera_params[free_slots[camera]]
        else:
            camera_vector = extrinsics_to_vector(cameras[camera].extrinsics)

        # pattern -> world, then world -> camera
        rvec, tvec = cv2.composeRT(
            poses[pose, 0:3], poses[pose, 3:6],
            camera_vector[0:3], camera_vector[3:6],
        )[:2]

        proj, _ = cv2.projectPoints(
            object_points,
            rvec,
            tvec,
            cameras[camera].intrinsics.matrix,
            cameras[camera].intrinsics.distortion,
        )
        errors.append((proj[:, 0, :] - corners).ravel())

    return np.concatenate(errors)


def refine_extrinsics(
    cameras: list[CalibratedCamera],
    object_points: np.ndarray,
    observations: list[list],
    reference: int = 0,
) -> tuple[list[CalibratedCamera], float | None]:
    """
    Refine extrinsics of all non-reference cameras.

    Args:
        cameras: Initial calibration, indexed by camera
        object_points: (n, 3) pattern corners
        observations: Per camera, the pattern observations (sequence, corners)
        reference: Camera fixed at the world origin

    Returns:
        (refined_cameras, final_rmse); rmse is None when nothing was refined
    """
    object_points = np.asarray(object_points, dtype=np.float64)

    # Only framesets seen by two or more cameras constrain the relative poses
    seen: dict[int, list[tuple[int, np.ndarray]]] = {}
    for camera, per_camera in enumerate(observations):
        for obs in per_camera:
            seen.setdefault(obs.sequence, []).append((camera, obs.corners))
    shared = {seq: views for seq, views in sorted(seen.items()) if len(views) >= 2}

    if not shared:
        logger.warning("No shared pattern views, skipping bundle adjustment")
        return list(cameras), None

    free_slots = {
        camera: slot
        for slot, camera in enumerate(c for c in range(len(cameras)) if c != reference)
    }

    rows: list[tuple[int, int, np.ndarray]] = []
    poses = []
    for views in shared.values():
        pose = None
        for camera, corners in views:
            pose = _initial_pose(cameras[camera], object_points, corners)
            if pose is not None:
                break
        if pose is None:
            continue
        for camera, corners in views:
            rows.append((camera, len(poses), np.asarray(corners, dtype=np.float64)))
        poses.append(pose)

    if not rows:
        logger.warning("Pattern poses could not be estimated, skipping bundle adjustment")
        return list(cameras), None

    camera_params = np.zeros((len(free_slots), CAMERA_PARAM_COUNT), dtype=np.float64)
    for camera, slot in free_slots.items():
        camera_params[slot] = extrinsics_to_vector(cameras[camera].extrinsics)

    initial_params = np.hstack([camera_params.ravel(), np.asarray(poses).ravel()])
    sparsity = _get_sparsity_pattern(rows, free_slots, len(poses), len(object_points))

    result = least_squares(
        _xy_reprojection_error,
        initial_params,
        jac_sparsity=sparsity,
        verbose=0,
        x_scale="jac",
        loss="linear",
        ftol=1e-8,
        method="trf",
        args=(rows, cameras, free_slots, object_points),
    )

    optimized = result.x[: len(free_slots) * CAMERA_PARAM_COUNT].reshape(-1, CAMERA_PARAM_COUNT)

    refined = list(cameras)
    for camera, slot in free_slots.items():
        refined[camera] = CalibratedCamera(
            intrinsics=cameras[camera].intrinsics,
            extrinsics=extrinsics_from_vector(optimized[slot]),
        )

    final_error = result.fun.reshape(-1, 2)
    rmse = float(np.sqrt(np.mean(np.sum(final_error**2, axis=1))))
    logger.info(f"Bundle adjustment over {len(poses)} pattern poses: rmse {rmse:.4f}px")

    return refined, rmse
