"""
Error classes for the rule manager.

These error types classify failures at the scheduler boundaries:
- ConfigError: Fatal at start-up (missing settings, broken rule references)
- TransientError: Safe to retry later (batch system unreachable, database locked)
- PermanentError: Do not retry (invalid job state transition, bad sanity check, unknown job)
- AlreadyLockedError: Another scheduler owns the pipeline

Error handling contract:
- Job-level errors are isolated to that job and logged by the tick
- Only ConfigError, SanityCheckError and AlreadyLockedError abort the process
"""

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rulemanager.schemas import SchedulerLock


class RuleManagerError(Exception):
    """Base exception for rulemanager."""
    pass


class ConfigError(RuleManagerError):
    """Configuration validation error."""
    pass


class TransientError(RuleManagerError):
    """
    Transient error - safe to retry.

    Examples:
    - Batch queue temporarily unreachable
    - bsub/bjobs timing out
    - Database busy

    Jobs whose submission raised a TransientError stay CREATED and are
    submitted again on a later pass without consuming a retry.
    """
    pass


class SubmissionError(TransientError):
    """Raised by a batch-submission adapter when a job could not be dispatched."""

    def __init__(self, message: str, job_id: int | None = None):
        self.job_id = job_id
        super().__init__(message)


class StateStoreError(TransientError):
    """Raised when the pipeline database is busy or unreachable."""
    pass


class PermanentError(RuleManagerError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid job state transition
    - Pipeline database fails a sanity check
    """
    pass


class InvalidTransitionError(PermanentError):
    """Raised when a job is asked to move to a status its state machine forbids."""

    def __init__(self, job_id: int | None, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: invalid status transition {current} -> {requested}")


class SanityCheckError(PermanentError):
    """Raised when the pipeline database fails its referential-integrity checks."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Pipeline database failed sanity checks:\n  " + "\n  ".join(self.problems))


class AlreadyLockedError(RuleManagerError):
    """Raised when another scheduler instance holds the pipeline lock."""

    def __init__(self, lock: "SchedulerLock", database: str = ""):
        self.lock = lock
        self.database = database
        super().__init__(self._describe())

    @property
    def owner(self) -> str:
        return f"{self.lock.owner}@{self.lock.host}"

    @property
    def pid(self) -> int:
        return self.lock.pid

    @property
    def since(self) -> datetime:
        return self.lock.started_at

    def _describe(self) -> str:
        started = self.lock.started_at.strftime("%a %b %d %H:%M:%S %Y")
        lines = [
            "Error: this pipeline appears to be running!",
            "",
        ]
        if self.database:
            lines.append(f"    db       {self.database}")
        lines.extend([
            f"    owner    {self.owner}",
            f"    pid      {self.lock.pid} on host {self.lock.host}",
            f"    started  {started}",
            "",
            "The process above must be terminated before this command can be run.",
            "If the process does not exist, remove the stale lock with:",
            "",
            "    rulemanager lock release",
        ])
        return "\n".join(lines)


class JobNotFoundError(PermanentError):
    """Raised when a status report names a job the database does not hold."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")
