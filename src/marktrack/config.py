"""
Configuration loading/saving.

Pure functions operating on dataclasses.
- TOML for parameters ([parameters] table)
- TOML for calibration data (one [cameras.N] table per camera)
"""

from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import rtoml

from .parameters import Parameters
from .types import (
    CalibratedCamera,
    CalibrationData,
    CameraExtrinsics,
    CameraIntrinsics,
)


# ============================================================================
# Parameters
# ============================================================================


def load_parameters(path: Path) -> Parameters:
    """
    Load parameters from TOML file.

    Keys missing from the file take their defaults; a missing file yields
    the default snapshot.

    Args:
        path: Path to a TOML file with a [parameters] table

    Returns:
        Parameters snapshot
    """
    path = Path(path)
    if not path.exists():
        return Parameters()

    data = rtoml.load(path)
    return Parameters(data.get("parameters", {}))


def save_parameters(parameters: Parameters, path: Path) -> None:
    """
    Save parameters to TOML file.

    Args:
        parameters: Parameters snapshot
        path: Path to save the TOML file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump({"parameters": parameters.to_dict()}, f)


# ============================================================================
# Calibration Data
# ============================================================================


def save_calibration(calibration: CalibrationData, path: Path) -> None:
    """
    Save calibration data to a TOML file.

    Rotations are stored as Rodrigues vectors (3 params).

    Args:
        calibration: CalibrationData to store
        path: Path to calibration.toml file
    """
    path = Path(path)
    data = {"reprojection_error": float(calibration.error), "cameras": {}}

    for index, cam in enumerate(calibration.cameras):
        rodrigues = cv2.Rodrigues(np.asarray(cam.extrinsics.rotation, dtype=np.float64))[0][:, 0]

        data["cameras"][str(index)] = {
            "matrix": np.asarray(cam.intrinsics.matrix, dtype=np.float64).tolist(),
            "distortion": np.asarray(cam.intrinsics.distortion, dtype=np.float64).ravel().tolist(),
            "error": float(cam.intrinsics.error),
            "resolution": [int(v) for v in cam.intrinsics.resolution],
            "rotation": rodrigues.tolist(),
            "translation": np.asarray(cam.extrinsics.translation, dtype=np.float64).ravel().tolist(),
        }

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def load_calibration(path: Path) -> CalibrationData | None:
    """
    Load calibration data from a TOML file.

    Args:
        path: Path to calibration.toml file

    Returns:
        CalibrationData, or None if the file doesn't exist
    """
    path = Path(path)
    if not path.exists():
        return None

    data = rtoml.load(path)
    cameras = []

    for index_str in sorted(data.get("cameras", {}), key=int):
        cam_data = data["cameras"][index_str]

        intrinsics = CameraIntrinsics(
            matrix=np.array(cam_data["matrix"], dtype=np.float64).reshape(3, 3),
            distortion=np.array(cam_data["distortion"], dtype=np.float64),
            error=cam_data.get("error", 0.0),
            resolution=tuple(cam_data.get("resolution", [0, 0])),
        )

        # Convert Rodrigues back to rotation matrix
        rotation = cv2.Rodrigues(np.array(cam_data["rotation"], dtype=np.float64))[0]
        translation = np.array(cam_data["translation"], dtype=np.float64)

        cameras.append(CalibratedCamera(
            intrinsics=intrinsics,
            extrinsics=CameraExtrinsics(rotation=rotation, translation=translation),
        ))

    return CalibrationData(
        cameras=tuple(cameras),
        error=data.get("reprojection_error", 0.0),
    )
