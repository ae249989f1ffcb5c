"""
Video sources feeding the aggregator.

A VideoSource is an iterable of Frames plus a liveness probe: a source that
doesn't deliver a first frame is not working. Capture-backed sources wrap
cv2.VideoCapture for camera devices and video files.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from time import monotonic
from typing import Callable, Iterator

import cv2
import numpy as np

import marktrack.logger

from .errors import SourceError
from .types import MAX_ARITY, Frame

logger = marktrack.logger.get(__name__)


class VideoSource(ABC):
    """
    One camera's stream of frames.

    The first frame read by probe() is buffered and handed out by the next
    read(), so probing doesn't lose a frame.
    """

    def __init__(self, name: str):
        self.name = name
        self._buffered: np.ndarray | None = None
        self._sequence = 0
        self._released = False

    @abstractmethod
    def _read(self) -> np.ndarray | None:
        """Next raw image, or None at end of stream."""

    def _release(self) -> None:
        pass

    @property
    def released(self) -> bool:
        return self._released

    def probe(self) -> bool:
        """Whether the source delivers at least one frame."""
        if self._buffered is None and not self._released:
            self._buffered = self._read()
        return self._buffered is not None

    def read(self) -> Frame | None:
        if self._released:
            return None

        image = self._buffered if self._buffered is not None else self._read()
        self._buffered = None
        if image is None:
            return None

        frame = Frame(image=image, sequence=self._sequence, timestamp=monotonic())
        self._sequence += 1
        return frame

    def __iter__(self) -> Iterator[Frame]:
        while True:
            frame = self.read()
            if frame is None:
                return
            yield frame

    def release(self) -> None:
        if not self._released:
            self._release()
            self._released = True
            self._buffered = None
            logger.debug(f"Released video source {self.name}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"


class CaptureVideoSource(VideoSource):
    """VideoSource reading through cv2.VideoCapture."""

    def __init__(self, target: int | str, name: str):
        super().__init__(name)
        self.capture = cv2.VideoCapture(target)

    @property
    def size(self) -> tuple[int, int]:
        width = int(self.capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self.capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        return width, height

    def _read(self) -> np.ndarray | None:
        if not self.capture.isOpened():
            return None
        try:
            success, image = self.capture.read()
        except cv2.error as e:
            raise SourceError(f"Reading from {self.name} failed: {e}") from e
        return image if success else None

    def _release(self) -> None:
        self.capture.release()


class CameraVideoSource(CaptureVideoSource):
    def __init__(self, device: int):
        super().__init__(device, f"camera {device}")
        self.device = device


class FileVideoSource(CaptureVideoSource):
    def __init__(self, path: Path | str):
        path = Path(path)
        super().__init__(str(path), path.name)
        self.path = path


def enumerate_devices(
    factory: Callable[[int], VideoSource] = CameraVideoSource,
    max_arity: int = MAX_ARITY,
) -> list[VideoSource]:
    """
    Scan device ids from 0 and return the working sources.

    Scanning stops after `max_arity` non-working devices or after
    2 * `max_arity` probed ids, whichever comes first. Non-working sources
    are released.
    """
    skip = max_arity
    tests = 2 * max_arity
    sources = []
    errors = 0
    device = 0

    while True:
        source = factory(device)
        if source.probe():
            sources.append(source)
            logger.info(f"Found working camera device {device}")
        else:
            source.release()
            logger.info(f"Camera device {device} not working")
            errors += 1
            if errors >= skip:
                break

        device += 1
        if device >= tests:
            break

    return sources
