"""
Pipeline controller.

The controller is the only consumer of framesets and the only writer of the
active calibration. Per frameset it either measures the calibration pattern
(CALIBRATION mode) or runs every target's tracker and localizes the
resulting marksets (TRACKING mode).

All public methods only post messages and return immediately; the work
happens on the controller's thread and results reach subscribers as events.
"""

from __future__ import annotations

from threading import Event, Lock

import marktrack.logger

from ..calibration import CameraCalibration
from ..errors import ArityMismatchError, ConfigurationError, InsufficientDataError, SourceError
from ..parameters import ParameterKey, Parameters
from ..tracking import Tracker
from ..triangulation import Localization
from ..types import CalibrationData, Frame, Frameset, Mark, Positset
from .aggregator import Aggregator
from .events import (
    CalibrationDataReady,
    CalibrationProgress,
    ConfigurationFailed,
    ControllerMode,
    ControllerState,
    FramesetReady,
    MarkRejected,
    ModeChanged,
    PositsetReady,
    SourceRemoved,
    StateChanged,
)
from .worker import Worker

logger = marktrack.logger.get(__name__)

SHUTDOWN_TIMEOUT = 5.0


class Controller(Worker):
    """
    Lifecycle: IDLE -> RUNNING -> STOPPING -> IDLE.

    start() leaves IDLE only once the aggregator reports a live source. A
    controller runs its aggregator once; reconfiguration builds a new one.
    """

    def __init__(
        self,
        parameters: Parameters,
        aggregator: Aggregator,
        calibration: CameraCalibration,
        trackers: list[Tracker],
        localization: Localization,
        mode: ControllerMode = ControllerMode.TRACKING,
    ):
        super().__init__("controller")
        self.parameters = parameters
        self.aggregator = aggregator
        self.calibration = calibration
        self.trackers = list(trackers)
        self.localization = localization

        self._state = ControllerState.IDLE
        self._mode = mode
        self._calibration_data: CalibrationData | None = None
        self._version = 0
        self._latest: dict[int, Frame] = {}
        self._pending: dict[tuple[int, int], Mark] = {}
        self._countdown = 0
        self._started = False
        self._start_requested = False
        self._start_lock = Lock()
        self._idle = Event()
        self._idle.set()

        self.thread.start()

    # ------------------------------------------------------------------
    # Public API (any thread)
    # ------------------------------------------------------------------

    @property
    def arity(self) -> int:
        return self.aggregator.arity

    @property
    def targets(self) -> int:
        return len(self.trackers)

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def mode(self) -> ControllerMode:
        return self._mode

    @property
    def calibration_data(self) -> CalibrationData | None:
        return self._calibration_data

    def start(self) -> None:
        with self._start_lock:
            if not self._start_requested:
                # busy from now on, so a following shutdown waits for the aggregator
                self._start_requested = True
                self._idle.clear()
        self.post("start")

    def stop(self) -> None:
        self.post("stop")

    def set_calibration_data(self, calibration: CalibrationData) -> None:
        self.post("set_calibration_data", calibration)

    def set_mark(self, target: int, camera: int, mark: Mark) -> None:
        self.post("set_mark", target, camera, mark)

    def set_mode(self, mode: ControllerMode) -> None:
        self.post("set_mode", mode)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until the aggregator has finished and released its sources."""
        return self._idle.wait(timeout)

    def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Stop the pipeline, wait for the sources to be released and end the thread."""
        self.stop()
        if not self.wait_idle(timeout):
            logger.warning("Pipeline did not stop in time")
        self.terminate()
        self.join(timeout)
        if not self._started:
            # never started: the aggregator still owns unopened sources
            self.aggregator.close()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: ControllerState) -> None:
        if state is self._state:
            return
        logger.info(f"Controller {self._state.value} -> {state.value}")
        self._state = state
        self.publish(StateChanged(state))

    def _fail(self, error: Exception) -> None:
        logger.warning(f"Configuration failed: {error}")
        self.publish(ConfigurationFailed(error))

    # ------------------------------------------------------------------
    # Handlers (controller thread)
    # ------------------------------------------------------------------

    def _on_start(self) -> None:
        if self._started:
            self._fail(ConfigurationError("Pipeline already ran, it has to be rebuilt"))
            return
        self._started = True

        logger.info(f"Starting pipeline of {self.arity} camera(s), {self.targets} target(s)")
        self.aggregator.start(
            on_ready=lambda count: self.post("sources_ready", count),
            on_frameset=lambda frameset: self.post("frameset", frameset),
            on_removed=lambda camera: self.post("source_removed", camera),
            on_finished=lambda: self.post("aggregator_finished"),
        )

    def _on_sources_ready(self, count: int) -> None:
        if self._state is ControllerState.STOPPING:
            return
        if count == 0:
            self._fail(SourceError("No video source delivers frames"))
            return
        self._set_state(ControllerState.RUNNING)

    def _on_stop(self) -> None:
        if self._idle.is_set():
            return
        self._set_state(ControllerState.STOPPING)
        self.aggregator.stop()

    def _on_aggregator_finished(self) -> None:
        if self._state is ControllerState.RUNNING:
            self._set_state(ControllerState.STOPPING)
        self._set_state(ControllerState.IDLE)
        self._latest.clear()
        self._idle.set()

    def _on_source_removed(self, camera: int) -> None:
        self._latest.pop(camera, None)
        self.publish(SourceRemoved(camera))

    def _on_set_mode(self, mode: ControllerMode) -> None:
        if mode is ControllerMode.CALIBRATION:
            self.calibration.reset()
            self._countdown = 0
        self._mode = mode
        logger.info(f"Controller mode {mode.value}")
        self.publish(ModeChanged(mode))

    def _on_set_calibration_data(self, calibration: CalibrationData) -> None:
        if calibration.arity != self.arity:
            self._fail(ArityMismatchError(self.arity, calibration.arity))
            return
        self._accept_calibration(calibration)

    def _accept_calibration(self, calibration: CalibrationData) -> None:
        self._version += 1
        snapshot = calibration.with_version(self._version)

        self.localization.set_calibration_data(snapshot)
        for tracker in self.trackers:
            tracker.set_calibration_data(snapshot)
        self._calibration_data = snapshot

        logger.info(f"Calibration data version {snapshot.version} active")
        self.publish(CalibrationDataReady(snapshot))

    def _on_set_mark(self, target: int, camera: int, mark: Mark) -> None:
        if not (0 <= target < self.targets and 0 <= camera < self.arity):
            logger.warning(f"Seed for target {target}, camera {camera} out of range")
            self.publish(MarkRejected(target, camera, mark))
            return

        if camera not in self._latest:
            # applied with the first frame of that camera
            self._pending[(target, camera)] = mark
            return
        self._apply_mark(target, camera, mark)

    def _apply_mark(self, target: int, camera: int, mark: Mark) -> None:
        if not self.trackers[target].set_mark(self._latest[camera], camera, mark):
            self.publish(MarkRejected(target, camera, mark))

    def _on_frameset(self, frameset: Frameset) -> None:
        if self._state is ControllerState.IDLE:
            return

        self._latest.update(frameset.frames)
        for target, camera in list(self._pending):
            if camera in self._latest:
                self._apply_mark(target, camera, self._pending.pop((target, camera)))

        self.publish(FramesetReady(frameset))

        if self._mode is ControllerMode.CALIBRATION:
            self._calibrate(frameset)
        else:
            self._track(frameset)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _calibrate(self, frameset: Frameset) -> None:
        if self._countdown > 0:
            self._countdown -= 1
            return
        self._countdown = self.parameters[ParameterKey.CALIBRATION_SKIP]

        if self.calibration.measure(frameset):
            self.publish(CalibrationProgress(self.calibration.progress()))

        if not self.calibration.is_ready():
            return

        try:
            calibration = self.calibration.finalize()
        except InsufficientDataError as e:
            self._fail(e)
            self.calibration.reset()
            return

        self._accept_calibration(calibration)
        self._on_set_mode(ControllerMode.TRACKING)

    def _track(self, frameset: Frameset) -> None:
        marksets = tuple(tracker.track(frameset) for tracker in self.trackers)
        posits = tuple(self.localization.locate(markset) for markset in marksets)

        self.publish(PositsetReady(
            sequence=frameset.sequence,
            marksets=marksets,
            positset=Positset(sequence=frameset.sequence, posits=posits),
        ))
