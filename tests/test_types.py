"""
Tests for marktrack.types dataclasses.
"""

import numpy as np
import pytest

from marktrack.types import (
    MAX_ARITY,
    CalibratedCamera,
    CalibrationData,
    CameraExtrinsics,
    Frame,
    Frameset,
    Mark,
    MarkType,
    Markset,
    Posit,
    Positset,
    compute_camera_center,
    compute_fundamental_matrix,
    compute_projection_matrix,
    extrinsics_from_vector,
    extrinsics_to_vector,
)

from conftest import project


def _frame(value=0):
    return Frame(image=np.full((4, 6), value, dtype=np.uint8))


class TestFrame:
    def test_size(self):
        frame = _frame()
        assert frame.width == 6
        assert frame.height == 4

    def test_frozen(self):
        frame = _frame()
        with pytest.raises(AttributeError):
            frame.sequence = 3


class TestFrameset:
    def test_partial_frameset(self):
        frameset = Frameset(sequence=7, arity=3, frames={0: _frame(), 2: _frame()})
        assert len(frameset) == 2
        assert 1 not in frameset
        assert frameset.cameras == [0, 2]

    def test_arity_bounds(self):
        with pytest.raises(ValueError):
            Frameset(sequence=0, arity=0)
        with pytest.raises(ValueError):
            Frameset(sequence=0, arity=MAX_ARITY + 1)

    def test_camera_index_out_of_range(self):
        with pytest.raises(ValueError):
            Frameset(sequence=0, arity=2, frames={2: _frame()})


class TestMark:
    def test_circle(self):
        mark = Mark.circle(10, 20, 5, score=0.9)
        assert mark.valid
        assert mark.type is MarkType.CIRCLE
        assert mark.half_extent == (5.0, 5.0)
        assert mark.region() == (5, 15, 10, 10)

    def test_rectangle_region_with_margin(self):
        mark = Mark.rectangle(50, 40, 20, 10)
        assert mark.half_extent == (10.0, 5.0)
        assert mark.region(margin=3) == (37, 32, 26, 16)

    def test_invalid(self):
        mark = Mark.invalid()
        assert not mark.valid
        assert mark.type is MarkType.INVALID

    def test_markset_valid_marks(self):
        markset = Markset(sequence=1, marks={0: Mark.circle(1, 1, 1), 1: Mark.invalid()})
        assert list(markset.valid_marks()) == [0]


class TestCalibrationData:
    def test_arity_and_indexing(self, stereo_calibration):
        assert stereo_calibration.arity == 2
        assert isinstance(stereo_calibration[1], CalibratedCamera)

    def test_with_version_is_a_new_snapshot(self, stereo_calibration):
        versioned = stereo_calibration.with_version(3)
        assert versioned.version == 3
        assert stereo_calibration.version == 0
        assert versioned.cameras is stereo_calibration.cameras


class TestPosit:
    def test_invalid_posit(self):
        posit = Posit.invalid(views=1, calibration_version=2)
        assert not posit.valid
        assert posit.views == 1
        assert posit.residual == float("inf")

    def test_positset_indexing(self):
        posit = Posit(position=np.zeros(3), views=2, residual=0.0)
        positset = Positset(sequence=4, posits=(posit,))
        assert len(positset) == 1
        assert positset[0] is posit


class TestGeometry:
    def test_camera_center(self, stereo_calibration):
        center = compute_camera_center(stereo_calibration[1].extrinsics)
        np.testing.assert_allclose(center, [0.2, 0.0, 0.0], atol=1e-12)

    def test_projection_matrix_matches_projection(self, stereo_calibration):
        camera = stereo_calibration[0]
        point = np.array([0.1, -0.05, 2.0])
        p = compute_projection_matrix(camera) @ np.append(point, 1.0)
        np.testing.assert_allclose(p[:2] / p[2], project(camera, point)[0], atol=1e-9)

    def test_fundamental_matrix_epipolar_constraint(self, stereo_calibration):
        cam_a, cam_b = stereo_calibration[0], stereo_calibration[1]
        fundamental = compute_fundamental_matrix(cam_a, cam_b)

        points = np.array([[0.0, 0.0, 2.0], [0.3, -0.2, 1.5], [-0.4, 0.1, 3.0]])
        for pa, pb in zip(project(cam_a, points), project(cam_b, points)):
            line = fundamental @ np.append(pa, 1.0)
            distance = abs(line @ np.append(pb, 1.0)) / np.hypot(line[0], line[1])
            assert distance < 1e-6

    def test_extrinsics_vector(self):
        extrinsics = CameraExtrinsics(
            rotation=np.eye(3),
            translation=np.array([1.0, 2.0, 3.0]),
        )
        vector = extrinsics_to_vector(extrinsics)
        np.testing.assert_allclose(vector, [0, 0, 0, 1, 2, 3])

        restored = extrinsics_from_vector(vector)
        np.testing.assert_allclose(restored.rotation, np.eye(3))
        np.testing.assert_allclose(restored.translation, [1, 2, 3])
