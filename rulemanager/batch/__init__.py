"""
rulemanager.batch - Batch-submission adapters.

Usage:
    from rulemanager.batch import create_submitter

    submitter = create_submitter(config.batch, local=False, runner="rulemanager run-job")
"""

from typing import Optional

from rulemanager.config import BatchConfig
from rulemanager.errors import ConfigError
from rulemanager.runner import CommandRunner

from .base import BatchSubmitter, SubmissionHandle
from .local import LocalSubmitter
from .lsf import LSFSubmitter


def create_submitter(
    config: BatchConfig,
    local: bool = False,
    runner: Optional[str] = None,
    max_job_time: Optional[int] = None,
) -> BatchSubmitter:
    """
    Create the adapter for a run.

    Args:
        config: Batch settings
        local: Force in-process execution regardless of queue_manager
        runner: Command a batch backend runs on the compute node
        max_job_time: Time limit for local jobs whose analysis sets none

    Raises:
        ConfigError: If queue_manager names no known adapter
    """
    if local or config.queue_manager == "local":
        return LocalSubmitter(CommandRunner(default_timeout=max_job_time))
    if config.queue_manager == "lsf":
        return LSFSubmitter(config, runner=runner)
    raise ConfigError(f"Unknown queue_manager '{config.queue_manager}'")


__all__ = [
    "BatchSubmitter",
    "SubmissionHandle",
    "LocalSubmitter",
    "LSFSubmitter",
    "create_submitter",
]
