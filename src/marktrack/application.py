"""
Application: sets up, reconfigures and tears down the pipeline.

The application owns enumerated video sources until the chosen ones are
handed to a new pipeline, and is the primary holder of calibration data
across pipeline rebuilds. Changing parameters rebuilds a running pipeline
over freshly reopened sources.
"""

from __future__ import annotations

from functools import partial
from pathlib import Path
from queue import Queue
from typing import Callable

import marktrack.logger

from .calibration import CameraCalibration, ChessboardPattern
from .errors import ArityMismatchError, ConfigurationError
from .parameters import Parameters
from .pipeline import Aggregator, Controller, ControllerMode
from .sources import CameraVideoSource, FileVideoSource, VideoSource, enumerate_devices
from .tracking import Tracker, create_algorithm
from .triangulation import Localization
from .types import MAX_ARITY, CalibrationData

logger = marktrack.logger.get(__name__)

# Source together with a callable that opens it again
OwnedSource = tuple[VideoSource, Callable[[], VideoSource]]


class Application:
    def __init__(
        self,
        parameters: Parameters | None = None,
        targets: int = 1,
        device_factory: Callable[[int], VideoSource] = CameraVideoSource,
    ):
        self.parameters = parameters if parameters is not None else Parameters()
        self.targets = targets
        self.device_factory = device_factory
        self.controller: Controller | None = None
        self._available: list[OwnedSource] = []
        self._selection: list[Callable[[], VideoSource]] = []
        self._subscribers: list[Queue] = []
        self._calibration_data: CalibrationData | None = None

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def available_sources(self) -> list[VideoSource]:
        """Tear down any pipeline and enumerate working camera devices."""
        self.initialize_empty()
        created: list[OwnedSource] = []

        def open_device(device: int) -> VideoSource:
            source = self.device_factory(device)
            created.append((source, partial(self.device_factory, device)))
            return source

        working = enumerate_devices(open_device)
        self._available = [(s, opener) for s, opener in created if any(s is w for w in working)]
        return working

    def open_files(self, paths: list[Path | str]) -> list[VideoSource]:
        """Tear down any pipeline and open video files as sources."""
        self.initialize_empty()
        self._available = [(FileVideoSource(path), partial(FileVideoSource, path)) for path in paths]
        return [source for source, _ in self._available]

    def _release_available(self) -> None:
        for source, _ in self._available:
            source.release()
        self._available = []

    # ------------------------------------------------------------------
    # Pipeline setup
    # ------------------------------------------------------------------

    def initialize_empty(self) -> None:
        self._release_available()
        self.teardown()
        self._selection = []

    def initialize(
        self,
        sources: list[VideoSource],
        mode: ControllerMode = ControllerMode.TRACKING,
    ) -> Controller:
        """
        Build a pipeline over the chosen sources and start it asynchronously.

        Every chosen source must come from available_sources() or
        open_files(); ownership moves to the pipeline and the rest are
        released.
        """
        chosen = []
        for source in sources:
            index = next(
                (i for i, (owned, _) in enumerate(self._available) if owned is source),
                None,
            )
            assert index is not None, f"{source!r} is not owned by the application"
            chosen.append(self._available.pop(index))
        self._release_available()
        self.teardown()

        used = [source for source, _ in chosen]
        self._selection = [opener for _, opener in chosen]

        if not used:
            raise ConfigurationError("No video source chosen")
        if len(used) > MAX_ARITY:
            for source in used:
                source.release()
            self._selection = []
            raise ConfigurationError(f"At most {MAX_ARITY} cameras are supported, {len(used)} chosen")

        self.controller = self._setup_controller(used, mode)
        # asynchronous, results arrive as events
        self.controller.start()
        return self.controller

    def _setup_controller(self, sources: list[VideoSource], mode: ControllerMode) -> Controller:
        arity = len(sources)
        try:
            trackers = [
                Tracker(arity, create_algorithm(self.parameters), self.parameters)
                for _ in range(self.targets)
            ]
        except ConfigurationError:
            for source in sources:
                source.release()
            self._selection = []
            raise

        aggregator = Aggregator(sources, self.parameters)
        pattern = ChessboardPattern.from_parameters(self.parameters)
        calibration = CameraCalibration(self.parameters, arity, pattern)
        localization = Localization(arity)

        controller = Controller(
            self.parameters, aggregator, calibration, trackers, localization, mode=mode
        )
        for queue in self._subscribers:
            controller.subscribe(queue)

        if self._calibration_data is not None:
            if self._calibration_data.arity == arity:
                controller.set_calibration_data(self._calibration_data)
            else:
                logger.warning(
                    f"Stored calibration covers {self._calibration_data.arity} camera(s), "
                    f"pipeline has {arity}; not applied"
                )
        return controller

    def teardown(self) -> None:
        if self.controller is None:
            return
        controller, self.controller = self.controller, None
        if controller.calibration_data is not None:
            self._calibration_data = controller.calibration_data
        controller.shutdown()
        logger.info("Pipeline torn down")

    def set_parameters(self, parameters: Parameters) -> Controller | None:
        """
        Replace the parameters.

        A set up pipeline is torn down and rebuilt with the new parameters
        over the same sources, opened anew, in its current mode.

        Returns:
            The rebuilt controller, or None if no pipeline was set up
        """
        self.parameters = parameters
        if self.controller is None:
            return None

        mode = self.controller.mode
        openers = self._selection
        self.initialize_empty()

        self._available = [(opener(), opener) for opener in openers]
        logger.info(f"Rebuilding pipeline over {len(openers)} source(s)")
        return self.initialize([source for source, _ in self._available], mode)

    def shutdown(self) -> None:
        self.initialize_empty()

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    @property
    def calibration_data(self) -> CalibrationData | None:
        if self.controller is not None and self.controller.calibration_data is not None:
            return self.controller.calibration_data
        return self._calibration_data

    def set_calibration_data(self, calibration: CalibrationData) -> None:
        """
        Store calibration and broadcast it to the running pipeline.

        Raises:
            ConfigurationError: No pipeline set up
            ArityMismatchError: Calibration for a different number of cameras
        """
        if self.controller is None:
            raise ConfigurationError("No pipeline is set up")
        if calibration.arity != self.controller.arity:
            raise ArityMismatchError(self.controller.arity, calibration.arity)

        self._calibration_data = calibration
        self.controller.set_calibration_data(calibration)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, queue: Queue) -> None:
        if queue not in self._subscribers:
            self._subscribers.append(queue)
            if self.controller is not None:
                self.controller.subscribe(queue)

    def unsubscribe(self, queue: Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            if self.controller is not None:
                self.controller.unsubscribe(queue)
