"""
JobLifecycleManager - create, submit, retry and time out jobs.

The manager owns every Job state transition made by the scheduler:
- reconcile() decides create vs retry vs skip for a ready (input id, analysis)
- flush() dispatches jobs the batch adapter buffered during the pass
- check_timeouts() kills jobs that stayed in flight too long
- apply_status() records progress reported by the Analysis Runner

Every transition is persisted through the StateStore before the next
action is taken on that job, so a restarted scheduler resumes from the
last durable state. Errors are isolated per job: reconcile() logs them
and returns ReconcileOutcome.ERROR instead of raising.
"""

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from rulemanager.batch import BatchSubmitter, SubmissionHandle
from rulemanager.config import SchedulerSettings
from rulemanager.errors import JobNotFoundError, RuleManagerError, SubmissionError
from rulemanager.schemas import Analysis, InputId, Job, JobStatus
from rulemanager.state_store import StateStore
from rulemanager.utils import archive_artifact

logger = logging.getLogger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class ReconcileOutcome(str, Enum):
    """What reconcile() did for one (input id, analysis) pair."""
    CREATED = "created"        # new job buffered by the adapter, dispatched at flush
    SUBMITTED = "submitted"    # new job handed to the batch system
    COMPLETED = "completed"    # job ran synchronously (local mode)
    RETRIED = "retried"        # failed job resubmitted
    FATAL = "fatal"            # retries exhausted
    SKIPPED = "skipped"        # a job already exists and needs nothing
    ERROR = "error"            # creation or submission failed, tried again next pass

    @property
    def started(self) -> bool:
        """True if this outcome put work in front of the batch system."""
        return self in (
            ReconcileOutcome.CREATED,
            ReconcileOutcome.SUBMITTED,
            ReconcileOutcome.COMPLETED,
            ReconcileOutcome.RETRIED,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobLifecycleManager:
    """
    Drive jobs through their state machine.

    Usage:
        jobs = JobLifecycleManager(store, submitter, config.scheduler, config.batch.output_dir)
        outcome = jobs.reconcile(input_id, analysis)
        jobs.flush()
    """

    def __init__(
        self,
        store: StateStore,
        batch: BatchSubmitter,
        settings: SchedulerSettings,
        output_dir: Optional[Path] = None,
        rename_on_retry: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._batch = batch
        self._settings = settings
        self._output_dir = Path(output_dir) if output_dir else None
        self._rename_on_retry = rename_on_retry
        self._clock = clock
        # Jobs the adapter is holding until its next flush
        self._awaiting_flush: dict[int, Job] = {}

    @property
    def awaiting_flush(self) -> list[int]:
        return sorted(self._awaiting_flush)

    def max_retries(self, analysis: Analysis) -> int:
        if analysis.max_retries is not None:
            return analysis.max_retries
        return self._settings.default_retries

    def timeout_for(self, analysis: Analysis) -> Optional[int]:
        return analysis.timeout or self._settings.max_job_time

    # -- reconcile -----------------------------------------------------------

    def reconcile(
        self,
        input_id: InputId,
        analysis: Analysis,
        existing: Optional[Iterable[Job]] = None,
        reason: str = "ready",
    ) -> ReconcileOutcome:
        """
        Make sure exactly one job exists for a ready (input id, analysis).

        Args:
            input_id: The input id the goal is ready for
            analysis: The ready goal analysis
            existing: Jobs already fetched for the input id (re-read if None)
            reason: Why the goal is ready, for the log

        Returns:
            ReconcileOutcome describing the action taken
        """
        try:
            if existing is None:
                existing = self._store.jobs_for(input_id)
            current = self._current_job(existing, analysis)

            if current is None:
                return self.create_job(input_id, analysis, reason)

            # Re-read so a status reported since the pass started is seen
            current = self._store.get_job(current.job_id) or current

            if current.status.is_failure:
                if current.retry_count < self.max_retries(analysis):
                    return self.retry(current)
                self.mark_fatal(current)
                return ReconcileOutcome.FATAL

            if self._needs_resubmit(current):
                logger.info(
                    f"Resubmitting unsubmitted job {current.job_id} ({analysis.logic_name} on {input_id})",
                    extra={"event": "job_resubmitted", "job_id": current.job_id},
                )
                _, outcome = self._submit(current)
                if outcome == ReconcileOutcome.ERROR:
                    return outcome
                return ReconcileOutcome.RETRIED if current.status == JobStatus.RETRIED else outcome

            return ReconcileOutcome.SKIPPED

        except (RuleManagerError, OSError) as e:
            logger.error(
                f"Could not reconcile {analysis.logic_name} on {input_id}: {e}",
                extra={"event": "reconcile_error", "input_id": input_id.input_id, "analysis": analysis.logic_name},
            )
            return ReconcileOutcome.ERROR

    @staticmethod
    def _current_job(jobs: Iterable[Job], analysis: Analysis) -> Optional[Job]:
        """The most recent job for the analysis; any job blocks a new one."""
        matching = [j for j in jobs if j.logic_name == analysis.logic_name]
        if not matching:
            return None
        active = [j for j in matching if j.is_active]
        return max(active or matching, key=lambda j: j.job_id or 0)

    def _needs_resubmit(self, job: Job) -> bool:
        """CREATED/RETRIED jobs whose submission was lost to a transient error."""
        return (
            job.status in (JobStatus.CREATED, JobStatus.RETRIED)
            and job.submission_id is None
            and job.job_id not in self._awaiting_flush
        )

    # -- transitions ---------------------------------------------------------

    def _artifact_paths(self, job: Job) -> tuple[Optional[str], Optional[str]]:
        if self._output_dir is None:
            return None, None
        directory = self._output_dir / _UNSAFE_PATH_CHARS.sub("_", job.input_id.input_id)
        directory.mkdir(parents=True, exist_ok=True)
        stem = f"{job.logic_name}.{job.job_id}"
        return str(directory / f"{stem}.out"), str(directory / f"{stem}.err")

    def create_job(self, input_id: InputId, analysis: Analysis, reason: str = "ready") -> ReconcileOutcome:
        """Persist a new CREATED job, then submit it."""
        job = self._store.upsert_job(Job(input_id=input_id, analysis=analysis, created_at=self._clock()))
        stdout_file, stderr_file = self._artifact_paths(job)
        if stdout_file:
            job = self._store.upsert_job(replace(job, stdout_file=stdout_file, stderr_file=stderr_file))

        logger.info(
            f"Created job {job.job_id}: {analysis.logic_name} on {input_id} ({reason})",
            extra={
                "event": "job_created",
                "job_id": job.job_id,
                "input_id": input_id.input_id,
                "analysis": analysis.logic_name,
            },
        )
        _, outcome = self._submit(job)
        return outcome

    def retry(self, job: Job) -> ReconcileOutcome:
        """Move a FAILED or KILLED job to RETRIED and resubmit it."""
        if self._rename_on_retry:
            suffix = f"retry.{job.retry_count}"
            archive_artifact(job.stdout_file, suffix)
            archive_artifact(job.stderr_file, suffix)

        job = self._store.upsert_job(job.transition(
            JobStatus.RETRIED,
            self._clock(),
            retry_count=job.retry_count + 1,
            submission_id=None,
        ))
        logger.info(
            f"Retrying job {job.job_id}: {job.logic_name} on {job.input_id} "
            f"(retry {job.retry_count} of {self.max_retries(job.analysis)})",
            extra={
                "event": "job_retried",
                "job_id": job.job_id,
                "input_id": job.input_id.input_id,
                "analysis": job.logic_name,
                "metadata": {"retry_count": job.retry_count},
            },
        )
        _, outcome = self._submit(job)
        return ReconcileOutcome.ERROR if outcome == ReconcileOutcome.ERROR else ReconcileOutcome.RETRIED

    def mark_fatal(self, job: Job) -> Job:
        """Give up on a job; FATAL jobs need operator attention."""
        job = self._store.upsert_job(job.transition(JobStatus.FATAL, self._clock()))
        logger.error(
            f"Job {job.job_id} ({job.logic_name} on {job.input_id}) failed "
            f"{job.retry_count + 1} times and is now FATAL",
            extra={
                "event": "job_fatal",
                "job_id": job.job_id,
                "input_id": job.input_id.input_id,
                "analysis": job.logic_name,
            },
        )
        return job

    def _submit(self, job: Job) -> tuple[Job, ReconcileOutcome]:
        try:
            handle = self._batch.submit(job)
        except SubmissionError as e:
            # A failed dispatch loses the adapter's whole buffer
            self._awaiting_flush.clear()
            logger.warning(
                f"Submission of job {job.job_id} failed, will retry next pass: {e}",
                extra={"event": "submission_failed", "job_id": job.job_id},
            )
            return job, ReconcileOutcome.ERROR

        if handle.buffered:
            self._awaiting_flush[job.job_id] = job
        # Filling the adapter's batch dispatches this job along with the buffer
        dispatched = self._batch.take_dispatched()
        self._collect(dispatched)

        if handle.status is not None:
            return self._record_local_result(job, handle), ReconcileOutcome.COMPLETED
        if handle.buffered:
            if job.job_id in dispatched:
                return self._store.get_job(job.job_id) or job, ReconcileOutcome.SUBMITTED
            return job, ReconcileOutcome.CREATED

        # The runner may have reported in before bsub returned
        job = self._mark_submitted(self._store.get_job(job.job_id) or job, handle)
        return job, ReconcileOutcome.SUBMITTED

    def _record_local_result(self, job: Job, handle: SubmissionHandle) -> Job:
        job = self._store.upsert_job(
            job.transition(handle.status, self._clock(), submission_id=handle.submission_id)
        )
        if job.status == JobStatus.SUCCESSFUL:
            self._store.record_completion(job.input_id, job.analysis)
        logger.info(
            f"Job {job.job_id} ({job.logic_name} on {job.input_id}) finished {job.status.value}",
            extra={"event": "job_finished", "job_id": job.job_id, "status": job.status.value},
        )
        return job

    def _mark_submitted(self, job: Job, handle: SubmissionHandle) -> Job:
        if job.status in (JobStatus.CREATED, JobStatus.RETRIED):
            job = job.transition(JobStatus.SUBMITTED, self._clock(), submission_id=handle.submission_id)
        else:
            # The runner already reported progress; keep its status
            job = replace(job, submission_id=handle.submission_id)
        job = self._store.upsert_job(job)
        logger.info(
            f"Submitted job {job.job_id} ({job.logic_name} on {job.input_id}) as {handle.submission_id}",
            extra={"event": "job_submitted", "job_id": job.job_id, "analysis": job.logic_name},
        )
        return job

    def _collect(self, handles: dict[int, SubmissionHandle]) -> int:
        """Persist SUBMITTED for jobs the adapter dispatched from its buffer."""
        count = 0
        for job_id, handle in handles.items():
            buffered = self._awaiting_flush.pop(job_id, None)
            try:
                job = self._store.get_job(job_id) or buffered
                if job is None:
                    logger.warning(f"Adapter dispatched unknown job {job_id}")
                    continue
                self._mark_submitted(job, handle)
                count += 1
            except RuleManagerError as e:
                logger.error(
                    f"Could not record submission of job {job_id}: {e}",
                    extra={"event": "submission_record_error", "job_id": job_id},
                )
        return count

    def flush(self) -> int:
        """
        Force the adapter to dispatch every buffered job.

        Returns:
            Number of jobs recorded as SUBMITTED
        """
        try:
            handles = self._batch.flush_created()
        except SubmissionError as e:
            count = self._collect(self._batch.take_dispatched())
            self._awaiting_flush.clear()
            logger.warning(
                f"Flushing buffered jobs failed, will retry next pass: {e}",
                extra={"event": "flush_failed"},
            )
            return count
        count = self._collect(handles)
        if count:
            logger.debug(f"Flushed {count} buffered jobs", extra={"event": "jobs_flushed"})
        return count

    # -- timeouts ------------------------------------------------------------

    def check_timeouts(self, now: Optional[datetime] = None) -> list[Job]:
        """
        Kill jobs that have been in flight longer than their timeout.

        Uses the analysis timeout, falling back to scheduler.max_job_time.
        Killed jobs are retried through reconcile() on a later pass.

        Returns:
            The jobs transitioned to KILLED
        """
        now = now or self._clock()
        killed = []
        in_flight = [s for s in JobStatus if s.is_running]
        for job in self._store.jobs_by_status(*in_flight):
            timeout = self.timeout_for(job.analysis)
            age = job.age(now)
            if timeout is None or age <= timeout:
                continue
            try:
                self._batch.kill(job)
                job = self._store.upsert_job(job.transition(JobStatus.KILLED, now))
            except RuleManagerError as e:
                logger.warning(
                    f"Could not kill timed out job {job.job_id}: {e}",
                    extra={"event": "kill_failed", "job_id": job.job_id},
                )
                continue
            logger.warning(
                f"Killed job {job.job_id} ({job.logic_name} on {job.input_id}) "
                f"after {int(age)}s (timeout {timeout}s)",
                extra={
                    "event": "job_killed",
                    "job_id": job.job_id,
                    "input_id": job.input_id.input_id,
                    "analysis": job.logic_name,
                },
            )
            killed.append(job)

        if killed and self._settings.killed_file:
            self._write_killed(killed)
        return killed

    def _write_killed(self, jobs: list[Job]) -> None:
        path = Path(self._settings.killed_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                for job in jobs:
                    f.write(f"{job.input_id.input_id} {job.logic_name} {job.analysis.module or '-'}\n")
        except OSError as e:
            logger.error(f"Could not write killed jobs to {path}: {e}")

    # -- runner reports ------------------------------------------------------

    def apply_status(self, job_id: int, status: JobStatus) -> Job:
        """
        Record a status reported for a job.

        SUCCESSFUL also records the completion so dependent rules see it.

        Raises:
            JobNotFoundError: If no job has that id
            InvalidTransitionError: If the job cannot move to status
        """
        job = self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        job = self._store.upsert_job(job.transition(status, self._clock()))
        if status == JobStatus.SUCCESSFUL:
            self._store.record_completion(job.input_id, job.analysis)
        logger.info(
            f"Job {job_id} ({job.logic_name} on {job.input_id}) is {status.value}",
            extra={"event": "job_status", "job_id": job_id, "status": status.value},
        )
        return job
