"""
AdmissionController - backpressure against the batch system.

Before more work is admitted the controller asks the batch adapter how
many jobs are waiting. While that number has reached max_pending_jobs it
sleeps overload_sleep seconds and asks again, so the scheduler never
floods the queue. A terminate request ends the wait early.
"""

import logging
from typing import Callable, Optional

from rulemanager.batch import BatchSubmitter
from rulemanager.control import ControlChannel
from rulemanager.errors import SubmissionError

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    Block while the batch system is overloaded.

    Usage:
        admission = AdmissionController(submitter, max_pending_jobs=200, overload_sleep=300, channel=channel)
        admission.throttle()
    """

    def __init__(
        self,
        batch: BatchSubmitter,
        max_pending_jobs: int,
        overload_sleep: float,
        channel: Optional[ControlChannel] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._batch = batch
        self._max_pending = max_pending_jobs
        self._overload_sleep = overload_sleep
        self._channel = channel or ControlChannel()
        self._sleep = sleep or self._channel.wait

    def pending(self) -> Optional[int]:
        """Pending job count, or None if the batch system could not be asked."""
        try:
            return self._batch.pending_count()
        except SubmissionError as e:
            logger.warning(
                f"Could not read pending job count: {e}",
                extra={"event": "pending_count_failed"},
            )
            return None

    def overloaded(self, pending: Optional[int] = None) -> bool:
        if pending is None:
            pending = self.pending()
        return pending is not None and pending >= self._max_pending

    def throttle(self) -> float:
        """
        Sleep until the pending count drops below the ceiling.

        Returns:
            Seconds spent sleeping
        """
        slept = 0.0
        while not self._channel.terminate_requested:
            pending = self.pending()
            if pending is None or pending < self._max_pending:
                break
            logger.info(
                f"{pending} jobs pending (limit {self._max_pending}), sleeping {self._overload_sleep}s",
                extra={"event": "backpressure_sleep", "metadata": {"pending": pending}},
            )
            self._sleep(self._overload_sleep)
            slept += self._overload_sleep
        return slept
