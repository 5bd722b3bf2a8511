"""LocalSubmitter - run jobs synchronously in the scheduler process."""

import logging
import os

from rulemanager.batch.base import BatchSubmitter, SubmissionHandle
from rulemanager.runner import AnalysisRunner, CommandRunner
from rulemanager.schemas import Job, JobStatus

logger = logging.getLogger(__name__)


class LocalSubmitter(BatchSubmitter):
    """
    Execute each job immediately through an AnalysisRunner.

    Nothing is ever queued, so pending_count() is always zero and there is
    nothing to kill.
    """

    name = "local"

    def __init__(self, runner: AnalysisRunner | None = None):
        self._runner = runner or CommandRunner()

    def submit(self, job: Job) -> SubmissionHandle:
        logger.debug(
            f"Running job {job.job_id} locally",
            extra={"event": "job_local_run", "job_id": job.job_id},
        )
        try:
            status = self._runner.run(job)
        except OSError as e:
            logger.error(
                f"Error running job {job.job_id} {job.stderr_file}: {e}",
                extra={"event": "job_local_error", "job_id": job.job_id},
            )
            status = JobStatus.FAILED
        return SubmissionHandle(submission_id=f"local:{os.getpid()}", status=status)

    def pending_count(self) -> int:
        return 0

    def kill(self, job: Job) -> None:
        logger.warning(
            f"Job {job.job_id} runs locally and cannot be killed",
            extra={"event": "kill_unsupported", "job_id": job.job_id},
        )
