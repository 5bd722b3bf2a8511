"""
Cooperative control of a running scheduler.

OS signals never interrupt the scheduler mid-transition. Signal handlers
only post a ControlMessage to a ControlChannel; the scheduler drains the
channel between input ids and between passes:
- TERMINATE: finish the current input id, flush, release the lock
- RELOAD: re-read the rules before the next pass
- WAKEUP: run the slow-cadence checks (backpressure, timeouts)
"""

import logging
import queue
import signal
import time
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ControlMessage(str, Enum):
    TERMINATE = "terminate"
    RELOAD = "reload"
    WAKEUP = "wakeup"


class ControlChannel:
    """
    Message queue between signal handlers (or tests) and the main loop.

    SimpleQueue.put is reentrant, so send() is safe to call from a signal
    handler.
    """

    def __init__(self):
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._terminate = False
        self._reload = False
        self._wakeup = False

    def send(self, message: ControlMessage) -> None:
        self._queue.put(message)

    def request_terminate(self) -> None:
        self.send(ControlMessage.TERMINATE)

    def request_reload(self) -> None:
        self.send(ControlMessage.RELOAD)

    def request_wakeup(self) -> None:
        self.send(ControlMessage.WAKEUP)

    def _apply(self, message: ControlMessage) -> None:
        if message == ControlMessage.TERMINATE:
            if not self._terminate:
                logger.info("Terminate requested", extra={"event": "terminate_requested"})
            self._terminate = True
        elif message == ControlMessage.RELOAD:
            logger.info("Rule reload requested", extra={"event": "reload_requested"})
            self._reload = True
        elif message == ControlMessage.WAKEUP:
            self._wakeup = True

    def poll(self) -> None:
        """Apply every queued message without blocking."""
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return
            self._apply(message)

    @property
    def terminate_requested(self) -> bool:
        self.poll()
        return self._terminate

    @property
    def reload_requested(self) -> bool:
        self.poll()
        return self._reload

    def consume_reload(self) -> bool:
        """Return True once per reload request."""
        self.poll()
        requested, self._reload = self._reload, False
        return requested

    def consume_wakeup(self) -> bool:
        """Return True once per wakeup."""
        self.poll()
        requested, self._wakeup = self._wakeup, False
        return requested

    def wait(self, timeout: float) -> None:
        """
        Sleep for up to timeout seconds, returning early on TERMINATE or RELOAD.
        """
        deadline = time.monotonic() + timeout
        while not (self.terminate_requested or self.reload_requested):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                message = self._queue.get(timeout=remaining)
            except queue.Empty:
                return
            self._apply(message)

    def install_signal_handlers(self) -> None:
        """Map SIGTERM/SIGINT to TERMINATE and SIGUSR1 to RELOAD."""
        signal.signal(signal.SIGTERM, lambda signum, frame: self.request_terminate())
        signal.signal(signal.SIGINT, lambda signum, frame: self.request_terminate())
        if hasattr(signal, "SIGUSR1"):
            signal.signal(signal.SIGUSR1, lambda signum, frame: self.request_reload())


class WakeupTimer:
    """Tracks when the slow-cadence checks are next due."""

    def __init__(self, interval: float, clock: Optional[Callable[[], float]] = None):
        self._interval = interval
        self._clock = clock or time.monotonic
        self._last = self._clock()

    @property
    def interval(self) -> float:
        return self._interval

    def due(self) -> bool:
        return self._clock() - self._last >= self._interval

    def reset(self) -> None:
        self._last = self._clock()
