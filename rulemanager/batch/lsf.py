"""
LSFSubmitter - submit jobs to an LSF cluster.

Jobs are buffered and sent batch_size at a time in a single bsub call
that runs `<runner> JOB_ID [JOB_ID ...]` on the compute node. The runner
(normally `rulemanager --config ... run-job`) reports each job's status
back to the pipeline database.
"""

import logging
import re
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from rulemanager.batch.base import BatchSubmitter, SubmissionHandle
from rulemanager.config import BatchConfig
from rulemanager.errors import SubmissionError
from rulemanager.schemas import Job
from rulemanager.utils import iter_chunks

logger = logging.getLogger(__name__)

SUBMITTED_PATTERN = re.compile(r"Job <(\d+)> is submitted")
NO_JOBS_PATTERN = re.compile(r"No (pending|unfinished) job found")


class LSFSubmitter(BatchSubmitter):
    """
    Batch-submission adapter for LSF (bsub / bjobs / bkill).

    Usage:
        lsf = LSFSubmitter(config.batch, runner="rulemanager --config cfg.yaml run-job")
        lsf.submit(job)          # buffered
        handles = lsf.flush_created()
    """

    name = "lsf"

    def __init__(self, config: BatchConfig, runner: Optional[str] = None, command_timeout: int = 120):
        self._config = config
        self._runner = shlex.split(runner or config.runner)
        self._command_timeout = command_timeout
        self._buffer: list[Job] = []
        self._dispatched: dict[int, SubmissionHandle] = {}

    @property
    def buffered_jobs(self) -> list[Job]:
        return list(self._buffer)

    def _run(self, command: list[str], check: bool = True) -> subprocess.CompletedProcess:
        logger.debug(f"Executing: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._command_timeout,
                check=False,
            )
        except FileNotFoundError:
            raise SubmissionError(f"{command[0]} not found; is LSF available on this host?")
        except subprocess.TimeoutExpired:
            raise SubmissionError(f"{command[0]} timed out after {self._command_timeout}s")

        if check and result.returncode != 0:
            error_msg = f"{command[0]} failed with exit code {result.returncode}"
            if result.stderr:
                error_msg += f": {result.stderr[:500]}"
            raise SubmissionError(error_msg)
        return result

    def report_files(self, jobs: list[Job]) -> tuple[Optional[str], Optional[str]]:
        """
        Where LSF writes its job report.

        A single job reports into its own artifacts; a batch of several
        jobs gets its own pair of files under output_dir/lsf.
        """
        if len(jobs) == 1:
            return jobs[0].stdout_file, jobs[0].stderr_file
        stem = Path(self._config.output_dir) / "lsf" / f"batch.{jobs[0].job_id}-{jobs[-1].job_id}"
        return f"{stem}.out", f"{stem}.err"

    def bsub_command(self, jobs: list[Job]) -> list[str]:
        """Build the bsub command line for a batch of jobs."""
        first = jobs[0]
        stdout_file, stderr_file = self.report_files(jobs)
        command = ["bsub"]
        if self._config.queue:
            command.extend(["-q", self._config.queue])
        if stdout_file:
            command.extend(["-o", stdout_file])
        if stderr_file:
            command.extend(["-e", stderr_file])
        command.extend(["-J", f"{first.logic_name}:{first.input_id.input_id}"])
        command.extend(self._config.submit_options)
        command.extend(self._runner)
        command.extend(str(job.job_id) for job in jobs)
        return command

    def _dispatch(self, jobs: list[Job]) -> dict[int, SubmissionHandle]:
        if len(jobs) > 1:
            report_dir = Path(self._config.output_dir) / "lsf"
            try:
                report_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise SubmissionError(f"Could not create {report_dir}: {e}")
        result = self._run(self.bsub_command(jobs))
        match = SUBMITTED_PATTERN.search(result.stdout or "")
        if not match:
            raise SubmissionError(f"Could not parse bsub output: {(result.stdout or '').strip()[:200]}")
        handle = SubmissionHandle(submission_id=match.group(1))
        logger.info(
            f"Submitted {len(jobs)} job(s) as LSF job {handle.submission_id}",
            extra={"event": "batch_submitted", "metadata": {"job_ids": [j.job_id for j in jobs]}},
        )
        return {job.job_id: handle for job in jobs}

    def submit(self, job: Job) -> SubmissionHandle:
        if self._config.batch_size <= 1:
            return self._dispatch([job])[job.job_id]

        self._buffer.append(job)
        if len(self._buffer) >= self._config.batch_size:
            batch, self._buffer = self._buffer, []
            try:
                self._dispatched.update(self._dispatch(batch))
            except SubmissionError as e:
                raise SubmissionError(f"Batch of {len(batch)} jobs not submitted: {e}", job_id=job.job_id)
        return SubmissionHandle.pending()

    def take_dispatched(self) -> dict[int, SubmissionHandle]:
        dispatched, self._dispatched = self._dispatched, {}
        return dispatched

    def flush_created(self) -> dict[int, SubmissionHandle]:
        batch, self._buffer = self._buffer, []
        for chunk in iter_chunks(batch, max(self._config.batch_size, 1)):
            self._dispatched.update(self._dispatch(chunk))
        return self.take_dispatched()

    def pending_count(self) -> int:
        command = ["bjobs", "-w", "-p"]
        if self._config.queue:
            command.extend(["-q", self._config.queue])
        result = self._run(command, check=False)
        if result.returncode != 0:
            message = (result.stderr or "") + (result.stdout or "")
            if NO_JOBS_PATTERN.search(message):
                return 0
            raise SubmissionError(f"bjobs failed with exit code {result.returncode}: {message[:500]}")
        return sum(
            1 for line in (result.stdout or "").splitlines()[1:]
            if " PEND " in f" {line} "
        )

    def kill(self, job: Job) -> None:
        if not job.submission_id:
            raise SubmissionError(f"Job {job.job_id} has no LSF id to kill", job_id=job.job_id)
        self._run(["bkill", job.submission_id])
