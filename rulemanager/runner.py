"""
Analysis runners - execute the program an Analysis names for one Job.

The scheduler never calls a runner directly. Runners are invoked by a
batch-submission backend: in-process by LocalSubmitter, or on a compute
node through `rulemanager run-job JOB_ID`.
"""

import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from rulemanager.schemas import Job, JobStatus

logger = logging.getLogger(__name__)


class AnalysisRunner(ABC):
    """
    Abstract base class for analysis runners.

    A runner executes one job to completion and reports its final status.
    """

    @abstractmethod
    def run(self, job: Job) -> JobStatus:
        """
        Execute a job.

        Args:
            job: The Job to execute

        Returns:
            JobStatus.SUCCESSFUL or JobStatus.FAILED
        """
        pass


class CommandRunner(AnalysisRunner):
    """
    Run an analysis program as a subprocess.

    The command line is the analysis program, its parameter string, then
    the input id. The job context is also exported in the environment:
    RULEMANAGER_JOB_ID, RULEMANAGER_INPUT_ID, RULEMANAGER_INPUT_ID_TYPE
    and RULEMANAGER_ANALYSIS. Output is appended to the job's stdout and
    stderr files when they are set.

    The time limit is timeout if given, else the analysis timeout, else
    default_timeout (scheduler.max_job_time).
    """

    def __init__(
        self,
        timeout: Optional[int] = None,
        cwd: Optional[Path] = None,
        default_timeout: Optional[int] = None,
    ):
        self._timeout = timeout
        self._cwd = cwd
        self._default_timeout = default_timeout

    def timeout_for(self, job: Job) -> Optional[int]:
        return self._timeout or job.analysis.timeout or self._default_timeout

    def build_command(self, job: Job) -> list[str]:
        if not job.analysis.program:
            raise ValueError(f"Analysis {job.logic_name} has no program to run")
        command = shlex.split(job.analysis.program)
        if job.analysis.parameters:
            command.extend(shlex.split(job.analysis.parameters))
        command.append(job.input_id.input_id)
        return command

    def _environment(self, job: Job) -> dict[str, str]:
        env = dict(os.environ)
        env.update({
            "RULEMANAGER_JOB_ID": str(job.job_id),
            "RULEMANAGER_INPUT_ID": job.input_id.input_id,
            "RULEMANAGER_INPUT_ID_TYPE": job.input_id.input_id_type,
            "RULEMANAGER_ANALYSIS": job.logic_name,
        })
        return env

    @staticmethod
    def _open_artifact(path: Optional[str]):
        if not path:
            return subprocess.DEVNULL
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        return open(path, "a")

    def run(self, job: Job) -> JobStatus:
        try:
            command = self.build_command(job)
        except ValueError as e:
            logger.error(str(e), extra={"event": "runner_error", "job_id": job.job_id})
            return JobStatus.FAILED

        logger.debug(f"Executing: {' '.join(command)}")
        stdout = self._open_artifact(job.stdout_file)
        stderr = self._open_artifact(job.stderr_file)
        try:
            result = subprocess.run(
                command,
                cwd=self._cwd,
                env=self._environment(job),
                stdout=stdout,
                stderr=stderr,
                timeout=self.timeout_for(job),
                check=False,
            )
        except FileNotFoundError:
            logger.error(
                f"Program not found for {job.logic_name}: {command[0]}",
                extra={"event": "runner_error", "job_id": job.job_id, "analysis": job.logic_name},
            )
            return JobStatus.FAILED
        except subprocess.TimeoutExpired:
            logger.error(
                f"Job {job.job_id} ({job.logic_name} on {job.input_id}) timed out",
                extra={"event": "runner_timeout", "job_id": job.job_id, "analysis": job.logic_name},
            )
            return JobStatus.FAILED
        finally:
            for handle in (stdout, stderr):
                if handle is not subprocess.DEVNULL:
                    handle.close()

        if result.returncode != 0:
            logger.error(
                f"Job {job.job_id} ({job.logic_name} on {job.input_id}) exited with code {result.returncode}",
                extra={
                    "event": "runner_failed",
                    "job_id": job.job_id,
                    "analysis": job.logic_name,
                    "metadata": {"exit_code": result.returncode},
                },
            )
            return JobStatus.FAILED

        return JobStatus.SUCCESSFUL
