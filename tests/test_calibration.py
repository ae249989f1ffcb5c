"""
Tests for marktrack.calibration on a synthetic two-camera rig.

Frames carry a code in their pixels; the synthetic pattern maps that code to
the exact projected corners of a known board pose.
"""

import numpy as np
import pytest

from marktrack.calibration import (
    CameraCalibration,
    ChessboardPattern,
    Observation,
    calibrate_intrinsics,
    refine_extrinsics,
)
from marktrack.errors import InsufficientDataError
from marktrack.parameters import ParameterKey, Parameters
from marktrack.types import (
    CalibratedCamera,
    CameraExtrinsics,
    Frame,
    Frameset,
)

from conftest import make_camera, project, rotation

BOARD_POSES = [
    # (rx, ry, board center)
    (15, 0, (0.0, 0.0, 0.6)),
    (-15, 5, (0.02, 0.01, 0.65)),
    (0, 15, (-0.02, 0.0, 0.6)),
    (5, -15, (0.0, -0.02, 0.7)),
    (10, 10, (0.03, 0.01, 0.6)),
    (-10, 10, (-0.03, 0.02, 0.65)),
    (10, -10, (0.01, -0.02, 0.55)),
    (-10, -12, (-0.01, -0.01, 0.6)),
    (20, 5, (0.0, 0.02, 0.7)),
    (5, -20, (0.02, 0.0, 0.6)),
]

# Board moved around without ever turning
FLAT_POSES = [
    (0, 0, (0.0, 0.0, 0.6)),
    (0, 0, (0.03, 0.02, 0.65)),
    (0, 0, (-0.03, -0.01, 0.55)),
    (0, 0, (0.02, -0.02, 0.7)),
]


class SyntheticPattern:
    """Pattern 'detector' that looks up precomputed corners by frame code."""

    def __init__(self, board: ChessboardPattern, corners: dict[int, np.ndarray]):
        self.board = board
        self.corners = corners

    def object_points(self):
        return self.board.object_points()

    def detect(self, image):
        return self.corners.get(int(image[0, 0]))


def code(camera, pose):
    return camera * 100 + pose + 1


class Rig:
    def __init__(self, matrix, poses=BOARD_POSES):
        self.poses = poses
        self.board = ChessboardPattern(rows=6, cols=9, size=0.025)
        self.cameras = [
            make_camera(matrix, [0.0, 0.0, 0.0]),
            make_camera(matrix, [0.1, 0.0, 0.0], rotation(ry=8)),
        ]

        object_points = self.board.object_points().astype(np.float64)
        board_center = object_points.mean(axis=0)

        self.corners = {}
        for pose, (rx, ry, center) in enumerate(self.poses):
            board_rotation = rotation(rx, ry)
            world = (board_rotation @ (object_points - board_center).T).T + np.array(center)
            for camera, calibrated in enumerate(self.cameras):
                pixels = project(calibrated, world).astype(np.float32)
                assert (pixels >= 0).all() and (pixels[:, 0] < 640).all() and (pixels[:, 1] < 480).all()
                self.corners[code(camera, pose)] = pixels

        self.pattern = SyntheticPattern(self.board, self.corners)

    def frameset(self, pose, cameras=(0, 1)):
        frames = {
            camera: Frame(np.full((480, 640), code(camera, pose) if camera in cameras else 0, np.uint8))
            for camera in (0, 1)
        }
        return Frameset(sequence=pose, arity=2, frames=frames)

    def observations(self):
        return [
            [Observation(pose, self.corners[code(camera, pose)]) for pose in range(len(self.poses))]
            for camera in (0, 1)
        ]


@pytest.fixture
def rig(sample_intrinsics_matrix):
    return Rig(sample_intrinsics_matrix)


@pytest.fixture
def parameters():
    return Parameters({ParameterKey.CALIBRATION_DISTINCT: 5.0})


class TestChessboardPattern:
    def test_object_points_layout(self):
        points = ChessboardPattern(rows=2, cols=3, size=0.5).object_points()
        np.testing.assert_allclose(points[:4], [[0, 0, 0], [0.5, 0, 0], [1.0, 0, 0], [0, 0.5, 0]])
        assert points.shape == (6, 3)

    def test_from_parameters(self):
        pattern = ChessboardPattern.from_parameters(Parameters({ParameterKey.CALIBRATION_ROWS: 4}))
        assert (pattern.rows, pattern.cols, pattern.size) == (4, 9, 0.025)

    def test_no_pattern_in_blank_image(self):
        pattern = ChessboardPattern(rows=6, cols=9, size=0.025)
        assert pattern.detect(np.zeros((480, 640), np.uint8)) is None


class TestMeasure:
    def test_accepts_observations(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        assert calibration.measure(rig.frameset(0))
        assert calibration.progress() == (1, 1)

    def test_rejects_repeated_view(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        calibration.measure(rig.frameset(0))
        assert not calibration.measure(rig.frameset(0))
        assert calibration.progress() == (1, 1)

    def test_frame_without_pattern(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        calibration.measure(rig.frameset(0, cameras=(0,)))
        assert calibration.progress() == (1, 0)

    def test_ready_after_required_frames(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        for pose in range(len(BOARD_POSES) - 1):
            calibration.measure(rig.frameset(pose))
        assert not calibration.is_ready()

        calibration.measure(rig.frameset(len(BOARD_POSES) - 1))
        assert calibration.is_ready()

    def test_reset(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        calibration.measure(rig.frameset(0))
        calibration.reset()
        assert calibration.progress() == (0, 0)


class TestFinalize:
    @pytest.mark.parametrize("refine", [0, 1])
    def test_recovers_rig(self, rig, parameters, sample_intrinsics_matrix, refine):
        parameters = parameters.replace(calibration_refine=refine)
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        for pose in range(len(BOARD_POSES)):
            calibration.measure(rig.frameset(pose))

        data = calibration.finalize()

        assert data.arity == 2
        assert data.error < 0.05
        for camera, truth in zip(data.cameras, rig.cameras):
            np.testing.assert_allclose(camera.intrinsics.matrix, sample_intrinsics_matrix, atol=0.5)
            assert camera.intrinsics.resolution == (640, 480)
            np.testing.assert_allclose(camera.extrinsics.rotation, truth.extrinsics.rotation, atol=1e-3)
            np.testing.assert_allclose(camera.extrinsics.translation, truth.extrinsics.translation, atol=1e-3)

    def test_too_few_observations(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        calibration.measure(rig.frameset(0))
        calibration.measure(rig.frameset(1))

        with pytest.raises(InsufficientDataError):
            calibration.finalize()

    def test_camera_never_saw_pattern(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        for pose in range(len(BOARD_POSES)):
            calibration.measure(rig.frameset(pose, cameras=(0,)))

        with pytest.raises(InsufficientDataError):
            calibration.finalize()

    def test_no_shared_views(self, rig, parameters):
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        for pose in range(len(BOARD_POSES)):
            calibration.measure(rig.frameset(pose, cameras=(pose % 2,)))

        with pytest.raises(InsufficientDataError):
            calibration.finalize()

    def test_board_never_turned(self, sample_intrinsics_matrix, parameters):
        rig = Rig(sample_intrinsics_matrix, poses=FLAT_POSES)
        calibration = CameraCalibration(parameters, 2, rig.pattern)
        for pose in range(len(FLAT_POSES)):
            assert calibration.measure(rig.frameset(pose))

        with pytest.raises(InsufficientDataError):
            calibration.finalize()


class TestIntrinsics:
    def test_recovers_matrix(self, rig, sample_intrinsics_matrix):
        intrinsics = calibrate_intrinsics(rig.board.object_points(), rig.observations()[0], (640, 480))

        np.testing.assert_allclose(intrinsics.matrix, sample_intrinsics_matrix, atol=0.5)
        assert intrinsics.resolution == (640, 480)

    def test_same_orientation_views(self, sample_intrinsics_matrix):
        rig = Rig(sample_intrinsics_matrix, poses=FLAT_POSES)

        for observations in rig.observations():
            with pytest.raises(InsufficientDataError):
                calibrate_intrinsics(rig.board.object_points(), observations, (640, 480))

    def test_too_few_views(self, rig):
        observations = rig.observations()[0][:2]
        with pytest.raises(InsufficientDataError):
            calibrate_intrinsics(rig.board.object_points(), observations, (640, 480))


class TestRefine:
    def test_restores_perturbed_extrinsics(self, rig):
        truth = rig.cameras[1]
        rvec = rotation(ry=8.5, rx=0.5)
        perturbed = CalibratedCamera(
            intrinsics=truth.intrinsics,
            extrinsics=CameraExtrinsics(
                rotation=rvec,
                translation=truth.extrinsics.translation + np.array([0.01, -0.005, 0.0]),
            ),
        )

        refined, rmse = refine_extrinsics(
            [rig.cameras[0], perturbed], rig.board.object_points(), rig.observations()
        )

        assert rmse < 1e-2
        assert refined[0] is rig.cameras[0]
        np.testing.assert_allclose(refined[1].extrinsics.rotation, truth.extrinsics.rotation, atol=1e-4)
        np.testing.assert_allclose(refined[1].extrinsics.translation, truth.extrinsics.translation, atol=1e-4)

    def test_no_shared_views(self, rig):
        observations = rig.observations()
        observations[1] = []
        refined, rmse = refine_extrinsics(rig.cameras, rig.board.object_points(), observations)

        assert rmse is None
        assert all(a is b for a, b in zip(refined, rig.cameras))
