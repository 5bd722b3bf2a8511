"""
Batch-submission adapter interface.

Adapters hand jobs to whatever actually executes them:
- LocalSubmitter: runs the job in-process and reports its final status
- LSFSubmitter: submits to an LSF cluster with bsub, buffering batches
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from rulemanager.schemas import Job, JobStatus


@dataclass(frozen=True)
class SubmissionHandle:
    """
    What an adapter returns for a submitted job.

    Attributes:
        submission_id: External batch-system id, or None while the job is
            buffered waiting for flush_created()
        status: Final status when the job already ran synchronously
    """
    submission_id: Optional[str] = None
    status: Optional[JobStatus] = None

    @property
    def buffered(self) -> bool:
        return self.submission_id is None and self.status is None

    @classmethod
    def pending(cls) -> "SubmissionHandle":
        return cls()


class BatchSubmitter(ABC):
    """
    Abstract base class for batch-submission adapters.

    Implementations raise SubmissionError when the batch system cannot be
    reached; the job then stays unsubmitted and is tried again later.
    """

    name: str = "batch"

    @abstractmethod
    def submit(self, job: Job) -> SubmissionHandle:
        """
        Submit a job for execution.

        Args:
            job: The persisted Job to submit

        Returns:
            SubmissionHandle for the job

        Raises:
            SubmissionError: If the batch system rejected or missed the job
        """
        pass

    @abstractmethod
    def pending_count(self) -> int:
        """Number of jobs waiting in the batch system's queue."""
        pass

    @abstractmethod
    def kill(self, job: Job) -> None:
        """
        Ask the batch system to stop a job.

        Raises:
            SubmissionError: If the kill request failed
        """
        pass

    def flush_created(self) -> dict[int, SubmissionHandle]:
        """
        Dispatch every buffered job now.

        Returns:
            Mapping of job_id to handle for every job dispatched since the
            last call, including batches that filled up during submit()
        """
        return {}

    def take_dispatched(self) -> dict[int, SubmissionHandle]:
        """Return handles for batches dispatched during submit() without forcing a flush."""
        return {}
