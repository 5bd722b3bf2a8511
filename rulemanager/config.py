"""
Configuration management for the rule manager.

Loads and validates config.yaml from $RULEMANAGER_HOME (default
~/.config/rulemanager) or an explicit path. An optional env_file is
loaded into the process environment with python-dotenv.

Example config.yaml:

    database:
      path: ~/pipeline/pipeline.db
    batch:
      queue_manager: lsf        # local | lsf
      queue: normal
      batch_size: 10
      max_pending_jobs: 200
      output_dir: ~/pipeline/output
      runner: rulemanager run-job
    scheduler:
      wakeup: 120
      overload_sleep: 300
      rerun_sleep: 3600
      default_retries: 3
      max_job_time: 86400
      killed_file: ~/pipeline/killed_input_ids
    logging:
      level: INFO
      format: structured
      output: ~/pipeline/logs/rulemanager-{date}.log
      console: true
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from rulemanager.errors import ConfigError

QUEUE_MANAGERS = ("local", "lsf")


def get_rulemanager_home() -> Path:
    """Directory holding config.yaml (RULEMANAGER_HOME or ~/.config/rulemanager)."""
    home = os.environ.get("RULEMANAGER_HOME")
    if home:
        return Path(home)
    return Path("~/.config/rulemanager").expanduser()


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the pipeline database lives."""
    path: Path

    @property
    def label(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class BatchConfig:
    """Batch-submission adapter settings."""
    queue_manager: str = "local"
    queue: Optional[str] = None
    batch_size: int = 1
    max_pending_jobs: int = 200
    output_dir: Path = Path("output")
    runner: str = "rulemanager run-job"
    submit_options: tuple[str, ...] = ()


@dataclass(frozen=True)
class SchedulerSettings:
    """Pacing and retry settings for the main loop."""
    wakeup: int = 120
    overload_sleep: int = 300
    rerun_sleep: int = 3600
    default_retries: int = 3
    max_job_time: Optional[int] = None
    killed_file: Optional[Path] = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "structured"
    output: str = "logs/rulemanager-{date}.log"
    console: bool = True

    def log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        return Path(self.output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))).expanduser()


@dataclass(frozen=True)
class RuleManagerConfig:
    """Complete rule manager configuration."""
    database: DatabaseConfig
    batch: BatchConfig = field(default_factory=BatchConfig)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    env_file: Optional[Path] = None

    def validate(self) -> None:
        """
        Validate settings that would otherwise fail deep inside the loop.

        Raises:
            ConfigError: On the first invalid setting
        """
        if self.batch.queue_manager not in QUEUE_MANAGERS:
            raise ConfigError(
                f"Unknown queue_manager '{self.batch.queue_manager}' "
                f"(expected one of: {', '.join(QUEUE_MANAGERS)})"
            )
        if self.batch.batch_size < 1:
            raise ConfigError("batch.batch_size must be >= 1")
        if self.batch.max_pending_jobs < 1:
            raise ConfigError("batch.max_pending_jobs must be >= 1")
        for name in ("wakeup", "overload_sleep", "rerun_sleep"):
            if getattr(self.scheduler, name) < 0:
                raise ConfigError(f"scheduler.{name} must be >= 0")
        if self.scheduler.default_retries < 0:
            raise ConfigError("scheduler.default_retries must be >= 0")
        if self.scheduler.max_job_time is not None and self.scheduler.max_job_time <= 0:
            raise ConfigError("scheduler.max_job_time must be positive")


@dataclass(frozen=True)
class RunOptions:
    """
    Per-invocation options for a scheduler run (command-line flags).

    Attributes:
        local: Run jobs synchronously in-process instead of via the batch system
        once: Perform exactly one full pass, then shut down
        shuffle: Randomize input id order within each type
        analyses: Allow-list of goal analyses (logic names or ids)
        input_id_types: Only evaluate input ids of these types
        start_from: Take input ids from the completions of these analyses
        idlist_file: Take input ids from a file of "input_id type" lines
        accumulators: Evaluate accumulator analyses at the end of a full pass
        rename_on_retry: Archive stdout/stderr before resubmitting a failed job
        db_sanity: Run referential-integrity checks before starting
    """
    local: bool = False
    once: bool = False
    shuffle: bool = False
    analyses: tuple[str, ...] = ()
    input_id_types: tuple[str, ...] = ()
    start_from: tuple[str, ...] = ()
    idlist_file: Optional[Path] = None
    accumulators: bool = True
    rename_on_retry: bool = True
    db_sanity: bool = True

    @property
    def restricts_work(self) -> bool:
        """True if the run only sees part of the pipeline."""
        return bool(self.analyses or self.input_id_types or self.start_from or self.idlist_file)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def _optional_path(value: Any) -> Optional[Path]:
    return Path(str(value)).expanduser() if value else None


def _int(section: dict[str, Any], key: str, default: Optional[int], prefix: str) -> Optional[int]:
    value = section.get(key, default)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{prefix}.{key} must be an integer (got {value!r})")


def config_from_dict(raw: dict[str, Any]) -> RuleManagerConfig:
    """
    Build a RuleManagerConfig from parsed YAML.

    Raises:
        ConfigError: If a required setting is missing or malformed
    """
    database = _section(raw, "database")
    if not database.get("path"):
        raise ConfigError("database.path is required")

    batch = _section(raw, "batch")
    scheduler = _section(raw, "scheduler")
    logging_raw = _section(raw, "logging")

    defaults = BatchConfig()
    batch_cfg = BatchConfig(
        queue_manager=str(batch.get("queue_manager", defaults.queue_manager)).lower(),
        queue=batch.get("queue"),
        batch_size=_int(batch, "batch_size", defaults.batch_size, "batch"),
        max_pending_jobs=_int(batch, "max_pending_jobs", defaults.max_pending_jobs, "batch"),
        output_dir=Path(str(batch.get("output_dir", defaults.output_dir))).expanduser(),
        runner=str(batch.get("runner", defaults.runner)),
        submit_options=tuple(str(o) for o in batch.get("submit_options", ()) or ()),
    )

    sched_defaults = SchedulerSettings()
    sched_cfg = SchedulerSettings(
        wakeup=_int(scheduler, "wakeup", sched_defaults.wakeup, "scheduler"),
        overload_sleep=_int(scheduler, "overload_sleep", sched_defaults.overload_sleep, "scheduler"),
        rerun_sleep=_int(scheduler, "rerun_sleep", sched_defaults.rerun_sleep, "scheduler"),
        default_retries=_int(scheduler, "default_retries", sched_defaults.default_retries, "scheduler"),
        max_job_time=_int(scheduler, "max_job_time", None, "scheduler"),
        killed_file=_optional_path(scheduler.get("killed_file")),
    )

    log_defaults = LoggingConfig()
    log_cfg = LoggingConfig(
        level=str(logging_raw.get("level", log_defaults.level)).upper(),
        format=str(logging_raw.get("format", log_defaults.format)),
        output=str(logging_raw.get("output", log_defaults.output)),
        console=bool(logging_raw.get("console", log_defaults.console)),
    )

    config = RuleManagerConfig(
        database=DatabaseConfig(path=Path(str(database["path"])).expanduser()),
        batch=batch_cfg,
        scheduler=sched_cfg,
        logging=log_cfg,
        env_file=_optional_path(raw.get("env_file")),
    )
    config.validate()
    return config


def load_config(config_path: Optional[Path] = None) -> RuleManagerConfig:
    """
    Load rule manager configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $RULEMANAGER_HOME/config.yaml

    Returns:
        Validated RuleManagerConfig instance

    Raises:
        ConfigError: If config is missing, empty or invalid
    """
    if config_path is None:
        config_path = get_rulemanager_home() / "config.yaml"
    config_path = Path(config_path).expanduser()

    if not config_path.exists():
        raise ConfigError(f"rulemanager config.yaml not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not raw:
        raise ConfigError(f"Configuration file is empty: {config_path}")
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid YAML root object in config file: {config_path}")

    config = config_from_dict(raw)

    if config.env_file and config.env_file.exists():
        load_dotenv(config.env_file, override=False)

    return config
