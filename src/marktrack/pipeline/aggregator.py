"""
Frameset aggregation of asynchronous video sources.

Every source is read by its own thread into a bounded queue. Each cycle
collects the next frame of every live source, waiting at most
SOURCE_TIMEOUT overall; sources that don't deliver in time are left out of
that frameset. Frames of one frameset are matched by source sequence, so a
camera that fell behind skips its late frames. A source that ends or fails
is dropped and reported.
"""

from __future__ import annotations

from queue import Empty, Full, Queue
from threading import Event, Thread
from time import monotonic
from typing import Callable, Iterator

import marktrack.logger

from ..parameters import ParameterKey, Parameters
from ..sources import VideoSource
from ..types import MAX_ARITY, Frame, Frameset

logger = marktrack.logger.get(__name__)

READER_JOIN_TIMEOUT = 1.0

_END = object()  # end of a source's stream


class Aggregator:
    """
    Owns the video sources handed to it and releases them when closed.

    Usage, standalone:
        aggregator.open()
        for frameset in aggregator.framesets():
            ...
        aggregator.close()

    or on its own thread via start(), reporting through callbacks.
    """

    def __init__(self, sources: list[VideoSource], parameters: Parameters):
        if not 0 < len(sources) <= MAX_ARITY:
            raise ValueError(f"Aggregator needs 1..{MAX_ARITY} sources, got {len(sources)}")

        self.sources = list(sources)
        self.arity = len(self.sources)
        self.parameters = parameters
        self.timeout = parameters[ParameterKey.SOURCE_TIMEOUT]
        self.tolerance = parameters[ParameterKey.SYNC_TOLERANCE]
        self.on_removed: Callable[[int], None] | None = None

        buffer = parameters[ParameterKey.SOURCE_BUFFER]
        self._queues = [Queue(maxsize=buffer) for _ in self.sources]
        self._alive: set[int] = set()
        self._readers: list[Thread] = []
        self._stop_event = Event()
        self._opened = False
        self._consumed = False
        self._closed = False
        self._pump: Thread | None = None

    @property
    def alive(self) -> set[int]:
        return set(self._alive)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def open(self) -> int:
        """
        Probe every source and start readers for the working ones.

        Returns:
            Number of live sources
        """
        if self._opened:
            raise RuntimeError("Aggregator was already opened")
        self._opened = True

        for camera, source in enumerate(self.sources):
            try:
                working = source.probe()
            except Exception as e:
                logger.error(f"Camera {camera}: probing {source.name} failed: {e}")
                working = False

            if not working:
                logger.warning(f"Camera {camera}: {source.name} delivers no frames")
                continue

            self._alive.add(camera)
            reader = Thread(
                target=self._read_source,
                args=(camera,),
                name=f"reader-{camera}",
                daemon=True,
            )
            self._readers.append(reader)
            reader.start()

        logger.info(f"{len(self._alive)} of {self.arity} source(s) live")
        return len(self._alive)

    def _put(self, queue: Queue, item) -> bool:
        """Blocking put that gives up once the aggregator is stopped."""
        while not self._stop_event.is_set():
            try:
                queue.put(item, timeout=self.timeout)
                return True
            except Full:
                continue
        return False

    def _read_source(self, camera: int) -> None:
        source = self.sources[camera]
        queue = self._queues[camera]
        try:
            for frame in source:
                if not self._put(queue, frame):
                    return
            logger.info(f"Camera {camera}: {source.name} reached end of stream")
        except Exception as e:
            logger.error(f"Camera {camera}: {source.name} failed: {e}")
        self._put(queue, _END)

    # ------------------------------------------------------------------
    # Framesets
    # ------------------------------------------------------------------

    def framesets(self) -> Iterator[Frameset]:
        """
        Lazy, unbounded sequence of framesets; it can be consumed only once.

        The sequence ends when every source is dead or the aggregator is
        stopped.
        """
        if self._consumed:
            raise RuntimeError("Aggregator framesets can only be consumed once")
        self._consumed = True
        return self._generate()

    def _next(self, camera: int, deadline: float):
        """Next queued item of a camera, or None if nothing arrives before the deadline."""
        remaining = max(0.0, deadline - monotonic())
        try:
            return self._queues[camera].get(timeout=remaining)
        except Empty:
            return None

    def _generate(self) -> Iterator[Frameset]:
        sequence = 0
        while self._alive and not self._stop_event.is_set():
            deadline = monotonic() + self.timeout
            frames = {}

            for camera in sorted(self._alive):
                item = self._next(camera, deadline)
                if item is None:
                    logger.debug(f"Camera {camera}: no frame for frameset {sequence}")
                elif item is _END:
                    self._remove(camera)
                else:
                    frames[camera] = item

            if frames:
                self._align(frames, deadline)
            if frames:
                yield Frameset(sequence=sequence, arity=self.arity, frames=frames)
                sequence += 1

    def _align(self, frames: dict[int, Frame], deadline: float) -> None:
        """
        Skip the frames of cameras lagging behind the most advanced one.

        Frames are matched by source sequence number. A camera that missed a
        cycle delivers its late frames afterwards; they are dropped until it
        is within SYNC_TOLERANCE frames of the others again. A camera that
        can't catch up before the deadline is left out of the frameset.
        """
        reference = max(frame.sequence for frame in frames.values())

        for camera in sorted(frames):
            frame = frames[camera]
            skipped = 0
            while frame.sequence < reference - self.tolerance:
                item = self._next(camera, deadline)
                if item is None or item is _END:
                    del frames[camera]
                    if item is _END:
                        self._remove(camera)
                    break
                frame = item
                skipped += 1
            else:
                frames[camera] = frame

            if skipped:
                logger.debug(f"Camera {camera}: skipped {skipped} late frame(s)")

    def _remove(self, camera: int) -> None:
        self._alive.discard(camera)
        logger.warning(f"Camera {camera}: source removed, {len(self._alive)} left")
        if self.on_removed is not None:
            self.on_removed(camera)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        on_ready: Callable[[int], None],
        on_frameset: Callable[[Frameset], None],
        on_removed: Callable[[int], None],
        on_finished: Callable[[], None],
    ) -> None:
        """
        Run the aggregator on its own thread.

        on_ready(count) follows the source probe, on_frameset(frameset) each
        cycle, on_removed(camera) a dead source and on_finished() the release
        of all sources.
        """
        if self._pump is not None:
            raise RuntimeError("Aggregator can only be started once")

        self.on_removed = on_removed
        self._pump = Thread(
            target=self._run,
            args=(on_ready, on_frameset, on_finished),
            name="aggregator",
            daemon=True,
        )
        self._pump.start()

    def _run(self, on_ready, on_frameset, on_finished) -> None:
        try:
            count = self.open()
            on_ready(count)
            if count:
                for frameset in self.framesets():
                    on_frameset(frameset)
        finally:
            self.close()
            on_finished()

    def stop(self) -> None:
        """Request the aggregator to stop; doesn't wait."""
        self._stop_event.set()

    def wait(self, timeout: float | None = None) -> None:
        if self._pump is not None:
            self._pump.join(timeout)

    def close(self) -> None:
        """Stop the readers and release every source."""
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()

        for reader in self._readers:
            reader.join(READER_JOIN_TIMEOUT)
            if reader.is_alive():
                logger.warning(f"{reader.name} still blocked in its source")

        for source in self.sources:
            source.release()
        self._alive.clear()
        logger.info("Aggregator closed, sources released")
