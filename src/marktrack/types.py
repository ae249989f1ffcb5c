"""
Core data structures for marktrack.

All types are frozen dataclasses with slots for immutability: once a value
is handed from one pipeline stage to another it is never mutated again.
Logic is in separate pure functions - these are data containers only.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np


MAX_ARITY = 4  # Maximum number of cameras in one pipeline


# ============================================================================
# Frames
# ============================================================================


@dataclass(frozen=True, slots=True)
class Frame:
    """
    One camera's raster image with its source sequence number.
    """

    image: np.ndarray  # (h, w) or (h, w, 3) BGR
    sequence: int = 0  # Monotonic per source
    timestamp: float = 0.0  # Seconds, monotonic clock

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]


@dataclass(frozen=True, slots=True)
class Frameset:
    """
    Per-camera frames captured at (approximately) the same instant.

    Cameras whose source stalled are simply absent from `frames`.
    """

    sequence: int
    arity: int
    frames: dict[int, Frame] = field(default_factory=dict)

    def __post_init__(self):
        if not 0 < self.arity <= MAX_ARITY:
            raise ValueError(f"Arity {self.arity} out of range 1..{MAX_ARITY}")
        if len(self.frames) > self.arity:
            raise ValueError(
                f"Frameset holds {len(self.frames)} frames, arity is {self.arity}"
            )
        for camera in self.frames:
            if not 0 <= camera < self.arity:
                raise ValueError(f"Camera index {camera} out of range")

    def __contains__(self, camera: int) -> bool:
        return camera in self.frames

    def __getitem__(self, camera: int) -> Frame:
        return self.frames[camera]

    def __len__(self) -> int:
        return len(self.frames)

    @property
    def cameras(self) -> list[int]:
        return sorted(self.frames)


# ============================================================================
# Marks
# ============================================================================


class MarkType(Enum):
    INVALID = 0
    CIRCLE = 1
    RECTANGLE = 2


@dataclass(frozen=True, slots=True)
class Mark:
    """
    A feature detected in one camera's frame.

    Circle marks use `radius`, rectangle marks use `size` (width, height).
    An invalid mark carries no geometry and means "not found this cycle".
    """

    type: MarkType = MarkType.INVALID
    center: tuple[float, float] = (0.0, 0.0)
    radius: float = 0.0
    size: tuple[float, float] = (0.0, 0.0)
    score: float = 0.0

    @classmethod
    def circle(cls, x: float, y: float, radius: float, score: float = 0.0) -> Mark:
        return cls(MarkType.CIRCLE, (float(x), float(y)), float(radius), score=score)

    @classmethod
    def rectangle(
        cls, x: float, y: float, width: float, height: float, score: float = 0.0
    ) -> Mark:
        return cls(
            MarkType.RECTANGLE,
            (float(x), float(y)),
            size=(float(width), float(height)),
            score=score,
        )

    @classmethod
    def invalid(cls) -> Mark:
        return cls()

    @property
    def valid(self) -> bool:
        return self.type is not MarkType.INVALID

    @property
    def half_extent(self) -> tuple[float, float]:
        if self.type is MarkType.CIRCLE:
            return self.radius, self.radius
        return self.size[0] / 2, self.size[1] / 2

    def region(self, margin: int = 0) -> tuple[int, int, int, int]:
        """
        Bounding box (x, y, width, height) of the mark grown by `margin`.
        """
        hx, hy = self.half_extent
        x0 = int(round(self.center[0] - hx)) - margin
        y0 = int(round(self.center[1] - hy)) - margin
        x1 = int(round(self.center[0] + hx)) + margin
        y1 = int(round(self.center[1] + hy)) + margin
        return x0, y0, x1 - x0, y1 - y0


@dataclass(frozen=True, slots=True)
class Markset:
    """
    At most one Mark per camera for one tracked target at one instant.
    """

    sequence: int
    marks: dict[int, Mark] = field(default_factory=dict)

    def valid_marks(self) -> dict[int, Mark]:
        return {camera: mark for camera, mark in self.marks.items() if mark.valid}


# ============================================================================
# Calibration Data
# ============================================================================


@dataclass(frozen=True, slots=True)
class CameraIntrinsics:
    """
    Intrinsic parameters for a camera.
    """

    matrix: np.ndarray  # 3x3 camera matrix
    distortion: np.ndarray  # Distortion coefficients (k1, k2, p1, p2, k3)
    error: float = 0.0  # RMSE of reprojection
    resolution: tuple[int, int] = (0, 0)  # (width, height)


@dataclass(frozen=True, slots=True)
class CameraExtrinsics:
    """
    Pose of a camera relative to the common reference frame.

    Maps world points into camera coordinates: x_cam = rotation @ X + translation.
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector


@dataclass(frozen=True, slots=True)
class CalibratedCamera:
    """
    Complete calibration for a camera (intrinsics + extrinsics).
    """

    intrinsics: CameraIntrinsics
    extrinsics: CameraExtrinsics


@dataclass(frozen=True, slots=True)
class CalibrationData:
    """
    Calibration of every camera of one pipeline, indexed by camera.

    Updates replace the whole value; `version` is stamped by the owner that
    accepts the snapshot so consumers can tell snapshots apart.
    """

    cameras: tuple[CalibratedCamera, ...]
    error: float = 0.0
    version: int = 0

    @property
    def arity(self) -> int:
        return len(self.cameras)

    def __getitem__(self, camera: int) -> CalibratedCamera:
        return self.cameras[camera]

    def with_version(self, version: int) -> CalibrationData:
        return replace(self, version=version)


# ============================================================================
# 3D Positions
# ============================================================================


@dataclass(frozen=True, slots=True)
class Posit:
    """
    Triangulated 3D position of one target.

    `views` is the number of contributing cameras, `residual` the RMS
    distance of the estimate to the contributing rays.
    """

    position: np.ndarray | None = None  # (3,)
    views: int = 0
    residual: float = float("inf")
    calibration_version: int = 0

    @classmethod
    def invalid(cls, views: int = 0, calibration_version: int = 0) -> Posit:
        return cls(views=views, calibration_version=calibration_version)

    @property
    def valid(self) -> bool:
        return self.position is not None


@dataclass(frozen=True, slots=True)
class Positset:
    """
    One Posit per tracked target for one Frameset.
    """

    sequence: int
    posits: tuple[Posit, ...] = ()

    def __getitem__(self, target: int) -> Posit:
        return self.posits[target]

    def __len__(self) -> int:
        return len(self.posits)


# ============================================================================
# Pure functions for computed properties
# ============================================================================


def compute_transformation_matrix(extrinsics: CameraExtrinsics) -> np.ndarray:
    """
    Compute 4x4 homogeneous transformation matrix from extrinsics.
    """
    t = np.eye(4, dtype=np.float64)
    t[0:3, 0:3] = extrinsics.rotation
    t[0:3, 3] = extrinsics.translation
    return t


def compute_projection_matrix(camera: CalibratedCamera) -> np.ndarray:
    """
    Compute 3x4 projection matrix from calibrated camera.
    """
    t = compute_transformation_matrix(camera.extrinsics)
    return camera.intrinsics.matrix @ t[0:3, :]


def compute_camera_center(extrinsics: CameraExtrinsics) -> np.ndarray:
    """
    Position of the camera's optical center in world coordinates.
    """
    return -extrinsics.rotation.T @ extrinsics.translation


def compute_fundamental_matrix(
    camera_a: CalibratedCamera,
    camera_b: CalibratedCamera,
) -> np.ndarray:
    """
    Fundamental matrix F such that x_b^T F x_a = 0 for pixel coordinates.
    """
    rotation = camera_b.extrinsics.rotation @ camera_a.extrinsics.rotation.T
    translation = (
        camera_b.extrinsics.translation - rotation @ camera_a.extrinsics.translation
    )
    tx, ty, tz = translation
    skew = np.array([
        [0.0, -tz, ty],
        [tz, 0.0, -tx],
        [-ty, tx, 0.0],
    ])
    essential = skew @ rotation
    k_a_inv = np.linalg.inv(camera_a.intrinsics.matrix)
    k_b_inv = np.linalg.inv(camera_b.intrinsics.matrix)
    return k_b_inv.T @ essential @ k_a_inv


def extrinsics_to_vector(extrinsics: CameraExtrinsics) -> np.ndarray:
    """
    Convert extrinsics to 6-element vector for bundle adjustment.
    [rodrigues_x, rodrigues_y, rodrigues_z, tx, ty, tz]
    """
    import cv2

    rodrigues = cv2.Rodrigues(np.asarray(extrinsics.rotation, dtype=np.float64))[0][:, 0]
    return np.hstack([rodrigues, extrinsics.translation])


def extrinsics_from_vector(vector: np.ndarray) -> CameraExtrinsics:
    """
    Create extrinsics from 6-element vector.
    """
    import cv2

    rotation = cv2.Rodrigues(np.asarray(vector[0:3], dtype=np.float64))[0]
    translation = np.asarray(vector[3:6], dtype=np.float64).copy()
    return CameraExtrinsics(rotation=rotation, translation=translation)
