"""
Job schemas - one execution attempt of an Analysis against an InputId.

Lifecycle:
    CREATED -> SUBMITTED -> {READING | WRITING | RUNNING} -> SUCCESSFUL
                                                          -> FAILED | KILLED
    FAILED | KILLED -> RETRIED -> SUBMITTED   (while retries remain)
    FAILED | KILLED -> FATAL                  (retries exhausted)

Jobs are immutable; every status change produces a new Job through
Job.transition() which the Job Lifecycle Manager persists before taking
the next action on that job.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from rulemanager.errors import InvalidTransitionError
from rulemanager.schemas.analysis import Analysis, InputId


class JobStatus(str, Enum):
    """Status of a job."""
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    READING = "READING"
    WRITING = "WRITING"
    RUNNING = "RUNNING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    KILLED = "KILLED"
    RETRIED = "RETRIED"
    FATAL = "FATAL"

    @property
    def is_terminal(self) -> bool:
        """SUCCESSFUL and FATAL never change again."""
        return self in (JobStatus.SUCCESSFUL, JobStatus.FATAL)

    @property
    def is_running(self) -> bool:
        return self in _IN_FLIGHT

    @property
    def is_failure(self) -> bool:
        """FAILED and KILLED feed the retry policy."""
        return self in (JobStatus.FAILED, JobStatus.KILLED)


_IN_FLIGHT = frozenset({
    JobStatus.SUBMITTED,
    JobStatus.READING,
    JobStatus.WRITING,
    JobStatus.RUNNING,
})

_RUN_STATES = {JobStatus.READING, JobStatus.WRITING, JobStatus.RUNNING}
_OUTCOMES = {JobStatus.SUCCESSFUL, JobStatus.FAILED, JobStatus.KILLED}

# Allowed transitions excluding no-op transitions.
# CREATED and RETRIED may finish directly when a job runs locally.
_ALLOWED: dict[JobStatus, set[JobStatus]] = {
    JobStatus.CREATED: {JobStatus.SUBMITTED, JobStatus.RUNNING, JobStatus.SUCCESSFUL, JobStatus.FAILED},
    JobStatus.SUBMITTED: _RUN_STATES | _OUTCOMES,
    JobStatus.READING: _RUN_STATES | _OUTCOMES,
    JobStatus.WRITING: _RUN_STATES | _OUTCOMES,
    JobStatus.RUNNING: _RUN_STATES | _OUTCOMES,
    JobStatus.FAILED: {JobStatus.RETRIED, JobStatus.FATAL},
    JobStatus.KILLED: {JobStatus.RETRIED, JobStatus.FATAL},
    JobStatus.RETRIED: {JobStatus.SUBMITTED, JobStatus.RUNNING, JobStatus.SUCCESSFUL, JobStatus.FAILED, JobStatus.KILLED},
    JobStatus.SUCCESSFUL: set(),
    JobStatus.FATAL: set(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """Return True if the state machine allows current -> new."""
    return new == current or new in _ALLOWED[current]


@dataclass(frozen=True)
class Job:
    """
    One execution attempt of (Analysis, InputId).

    Attributes:
        job_id: Database identifier (None until first persisted)
        input_id: The input id the job runs against
        analysis: The analysis the job runs
        status: Current status
        created_at: When the job record was created
        status_changed_at: When the current status was entered
        retry_count: Number of execution retries already consumed
        submission_id: Handle returned by the batch system (None if unsubmitted)
        stdout_file: Where the batch system writes the job's stdout
        stderr_file: Where the batch system writes the job's stderr
    """
    input_id: InputId
    analysis: Analysis
    created_at: datetime
    status: JobStatus = JobStatus.CREATED
    job_id: Optional[int] = None
    status_changed_at: Optional[datetime] = None
    retry_count: int = 0
    submission_id: Optional[str] = None
    stdout_file: Optional[str] = None
    stderr_file: Optional[str] = None

    def __post_init__(self):
        if self.retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        if self.status_changed_at is None:
            object.__setattr__(self, "status_changed_at", self.created_at)

    @property
    def logic_name(self) -> str:
        return self.analysis.logic_name

    @property
    def is_active(self) -> bool:
        """A job blocks new jobs for its (input id, analysis) until it is FATAL."""
        return self.status != JobStatus.FATAL

    def transition(self, status: JobStatus, now: datetime, **changes: Any) -> "Job":
        """
        Return a copy of this job in the new status.

        Args:
            status: Requested status
            now: Time of the transition
            **changes: Other fields to update alongside (e.g. submission_id)

        Raises:
            InvalidTransitionError: If the state machine forbids the move
        """
        if status == self.status and not changes:
            return self
        if not can_transition(self.status, status):
            raise InvalidTransitionError(self.job_id, self.status.value, status.value)
        stamp = now if status != self.status else self.status_changed_at
        return replace(self, status=status, status_changed_at=stamp, **changes)

    def age(self, now: datetime) -> float:
        """Seconds spent in the current status."""
        return (now - self.status_changed_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "job_id": self.job_id,
            "input_id": self.input_id.input_id,
            "input_id_type": self.input_id.input_id_type,
            "analysis": self.analysis.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "status_changed_at": self.status_changed_at.isoformat(),
            "retry_count": self.retry_count,
            "submission_id": self.submission_id,
            "stdout_file": self.stdout_file,
            "stderr_file": self.stderr_file,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Deserialize from dictionary."""
        return cls(
            job_id=data.get("job_id"),
            input_id=InputId(data["input_id"], data["input_id_type"]),
            analysis=Analysis.from_dict(data["analysis"]),
            status=JobStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            status_changed_at=datetime.fromisoformat(data["status_changed_at"]) if data.get("status_changed_at") else None,
            retry_count=data.get("retry_count", 0),
            submission_id=data.get("submission_id"),
            stdout_file=data.get("stdout_file"),
            stderr_file=data.get("stderr_file"),
        )
