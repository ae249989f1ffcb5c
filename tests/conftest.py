"""
Pytest configuration and shared fixtures.
"""

import tempfile
import time
from pathlib import Path
from queue import Empty, Queue
from threading import Event

import cv2
import numpy as np
import pytest

from marktrack.errors import SourceError
from marktrack.sources import VideoSource
from marktrack.types import (
    CalibratedCamera,
    CalibrationData,
    CameraExtrinsics,
    CameraIntrinsics,
)


# ============================================================================
# Helpers
# ============================================================================


class FakeVideoSource(VideoSource):
    """
    In-memory video source.

    After the images run out it reports end of stream, or first blocks on
    `stall` if given. With `fail_after` it raises after that many frames.
    `hiccup` maps frame indices to a pause taken before delivering them.
    """

    def __init__(self, images, name="fake", delay=0.0, stall=None, fail_after=None, hiccup=None):
        super().__init__(name)
        self.images = list(images)
        self.delay = delay
        self.stall = stall
        self.fail_after = fail_after
        self.hiccup = dict(hiccup or {})
        self.reads = 0
        self.release_count = 0

    def _read(self):
        if self.fail_after is not None and self.reads >= self.fail_after:
            raise SourceError(f"{self.name} broke")
        if self.reads >= len(self.images):
            if self.stall is not None:
                self.stall.wait()
            return None
        if self.delay:
            time.sleep(self.delay)
        if self.reads in self.hiccup:
            time.sleep(self.hiccup[self.reads])
        image = self.images[self.reads]
        self.reads += 1
        return image

    def _release(self):
        self.release_count += 1


def noise_image(seed=0, shape=(480, 640)):
    """Smoothed random texture, distinct at every offset."""
    rng = np.random.default_rng(seed)
    image = rng.integers(0, 256, size=shape, dtype=np.uint8)
    return cv2.GaussianBlur(image, (3, 3), 0.8)


def noise_frames(count, seed=0, shape=(480, 640)):
    return [noise_image(seed + i, shape) for i in range(count)]


def wait_for(events: Queue, event_type, timeout=5.0, predicate=None):
    """
    Pop events until one of `event_type` (matching `predicate`) arrives.

    Returns:
        (event, skipped_events)
    """
    deadline = time.monotonic() + timeout
    skipped = []
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError(f"No {event_type.__name__} within {timeout}s, got {skipped}")
        try:
            event = events.get(timeout=remaining)
        except Empty:
            continue
        if isinstance(event, event_type) and (predicate is None or predicate(event)):
            return event, skipped
        skipped.append(event)


def rotation(rx=0.0, ry=0.0, rz=0.0):
    """Rotation matrix from a Rodrigues vector given in degrees."""
    vector = np.deg2rad(np.array([rx, ry, rz], dtype=np.float64))
    return cv2.Rodrigues(vector)[0]


def project(camera: CalibratedCamera, points: np.ndarray) -> np.ndarray:
    """Project (n, 3) world points to (n, 2) pixels."""
    rvec = cv2.Rodrigues(camera.extrinsics.rotation)[0]
    projected, _ = cv2.projectPoints(
        np.asarray(points, dtype=np.float64).reshape(-1, 3),
        rvec,
        camera.extrinsics.translation.astype(np.float64),
        camera.intrinsics.matrix,
        camera.intrinsics.distortion,
    )
    return projected[:, 0, :]


def make_camera(matrix, center, rot=None, distortion=None):
    """Camera placed at world `center` with world->camera rotation `rot`."""
    rot = np.eye(3) if rot is None else rot
    center = np.asarray(center, dtype=np.float64)
    return CalibratedCamera(
        intrinsics=CameraIntrinsics(
            matrix=matrix,
            distortion=np.zeros(5) if distortion is None else distortion,
            resolution=(640, 480),
        ),
        extrinsics=CameraExtrinsics(rotation=rot, translation=-rot @ center),
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def sample_intrinsics_matrix():
    """VGA camera intrinsics matrix."""
    return np.array([
        [600.0, 0.0, 320.0],
        [0.0, 600.0, 240.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


@pytest.fixture
def sample_distortion():
    """Typical distortion coefficients (k1, k2, p1, p2, k3)."""
    return np.array([0.1, -0.25, 0.001, -0.001, 0.1], dtype=np.float64)


@pytest.fixture
def sample_camera_intrinsics(sample_intrinsics_matrix, sample_distortion):
    return CameraIntrinsics(
        matrix=sample_intrinsics_matrix,
        distortion=sample_distortion,
        error=0.25,
        resolution=(640, 480),
    )


@pytest.fixture
def stereo_calibration(sample_intrinsics_matrix):
    """Two cameras 0.4 apart, both looking at the region around (0, 0, 2)."""
    cam0 = make_camera(sample_intrinsics_matrix, [-0.2, 0.0, 0.0], rotation(ry=-5.7))
    cam1 = make_camera(sample_intrinsics_matrix, [0.2, 0.0, 0.0], rotation(ry=5.7))
    return CalibrationData(cameras=(cam0, cam1), error=0.1)


@pytest.fixture
def triple_calibration(sample_intrinsics_matrix):
    cam0 = make_camera(sample_intrinsics_matrix, [0.0, 0.0, 0.0])
    cam1 = make_camera(sample_intrinsics_matrix, [0.5, 0.0, 0.0], rotation(ry=14.0))
    cam2 = make_camera(sample_intrinsics_matrix, [0.0, 0.5, 0.0], rotation(rx=-14.0))
    return CalibrationData(cameras=(cam0, cam1, cam2))


@pytest.fixture
def fake_source():
    """Factory for in-memory video sources."""
    return FakeVideoSource


@pytest.fixture
def stall():
    """Event that unblocks stalled fake sources at teardown."""
    event = Event()
    yield event
    event.set()
