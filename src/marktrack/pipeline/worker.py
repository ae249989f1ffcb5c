"""
Worker thread with an inbox.

Messages posted to a worker are queued and handled on the worker's own
thread in arrival order: message "frameset" is dispatched to
`_on_frameset(*args)`. Results are published to subscriber queues.
"""

from __future__ import annotations

from queue import Queue
from threading import Lock, Thread

import marktrack.logger

from .events import ErrorOccurred

logger = marktrack.logger.get(__name__)

_TERMINATE = "__terminate__"


class Worker:
    """
    Subclasses set up their state, then call `self.thread.start()`.
    """

    def __init__(self, name: str):
        self.name = name
        self.subscribers: list[Queue] = []
        self._subscribers_lock = Lock()
        self._inbox: Queue = Queue()
        self.thread = Thread(target=self._run, name=name, daemon=True)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, queue: Queue) -> None:
        with self._subscribers_lock:
            if queue in self.subscribers:
                logger.warning(f"Attempted to subscribe to {self.name} twice")
                return
            self.subscribers.append(queue)
            logger.debug(f"{len(self.subscribers)} subscriber(s) at {self.name}")

    def unsubscribe(self, queue: Queue) -> None:
        with self._subscribers_lock:
            if queue not in self.subscribers:
                logger.warning(f"Attempted to unsubscribe from {self.name} without subscription")
                return
            self.subscribers.remove(queue)

    def publish(self, event) -> None:
        with self._subscribers_lock:
            subscribers = list(self.subscribers)
        for q in subscribers:
            q.put(event)

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def post(self, message: str, *args) -> None:
        """Queue a message for the worker thread; never blocks."""
        if not hasattr(self, f"_on_{message}"):
            raise ValueError(f"{self.name} has no handler for message {message!r}")
        self._inbox.put((message, args))

    def terminate(self) -> None:
        """Stop the worker thread after the messages already queued."""
        self._inbox.put((_TERMINATE, ()))

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout)

    def _run(self) -> None:
        logger.debug(f"{self.name} worker started")
        while True:
            message, args = self._inbox.get()
            if message == _TERMINATE:
                break

            try:
                getattr(self, f"_on_{message}")(*args)
            except Exception as e:
                logger.exception(f"{self.name}: handling {message} failed")
                self.publish(ErrorOccurred(f"{self.name}: {message} failed", e))

        logger.debug(f"{self.name} worker stopped")
