"""
Chessboard calibration pattern.

Any object with `object_points()` and `detect(image)` can stand in for the
pattern; ChessboardPattern is the OpenCV chessboard implementation.
"""

from __future__ import annotations

from typing import Protocol

import cv2
import numpy as np

from ..parameters import ParameterKey, Parameters


class CalibrationPattern(Protocol):
    def object_points(self) -> np.ndarray:
        """(n, 3) pattern corner coordinates in the pattern plane."""

    def detect(self, image: np.ndarray) -> np.ndarray | None:
        """(n, 2) detected corners in object_points() order, or None."""


class ChessboardPattern:
    """
    Chessboard with `rows` x `cols` inner corners spaced `size` apart.
    """

    def __init__(self, rows: int, cols: int, size: float):
        self.rows = rows
        self.cols = cols
        self.size = size

    @classmethod
    def from_parameters(cls, parameters: Parameters) -> ChessboardPattern:
        return cls(
            parameters[ParameterKey.CALIBRATION_ROWS],
            parameters[ParameterKey.CALIBRATION_COLS],
            parameters[ParameterKey.CALIBRATION_SIZE],
        )

    def object_points(self) -> np.ndarray:
        points = np.zeros((self.rows * self.cols, 3), dtype=np.float32)
        points[:, :2] = np.mgrid[0:self.cols, 0:self.rows].T.reshape(-1, 2)
        return points * self.size

    def detect(self, image: np.ndarray) -> np.ndarray | None:
        gray = image
        if gray.ndim == 3:
            gray = cv2.cvtColor(gray, cv2.COLOR_BGR2GRAY)

        flags = (
            cv2.CALIB_CB_ADAPTIVE_THRESH
            | cv2.CALIB_CB_NORMALIZE_IMAGE
            | cv2.CALIB_CB_FAST_CHECK
        )
        found, corners = cv2.findChessboardCorners(gray, (self.cols, self.rows), flags=flags)
        if not found:
            return None

        # Sub-pixel refinement
        criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.0001)
        corners = cv2.cornerSubPix(gray, corners, (11, 11), (-1, -1), criteria)
        return corners[:, 0, :]
