"""
Utility functions for the rule manager.

Includes logging setup, input id file parsing and artifact renaming.
"""

import json
import logging
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Sequence, TypeVar

from rich.console import Console
from rich.logging import RichHandler

from rulemanager.errors import ConfigError
from rulemanager.schemas import InputId

T = TypeVar("T")

# Global console for pretty output
console = Console()

# Extra record attributes copied into structured log lines
_STRUCTURED_EXTRAS = ("event", "job_id", "input_id", "analysis", "status", "metadata")


def setup_logging(log_file: Optional[Path], log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Set up logging for a scheduler run.

    Args:
        log_file: Path to log file (None to skip the file handler)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("rulemanager")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _STRUCTURED_EXTRAS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def read_idlist_file(path: Path) -> dict[str, list[InputId]]:
    """
    Parse a file of "input_id input_id_type" lines into input ids by type.

    Blank lines and lines starting with '#' are ignored.

    Raises:
        ConfigError: If the file is missing or a line lacks its type
    """
    if not path.exists():
        raise ConfigError(f"Input id list not found: {path}")

    grouped: dict[str, list[InputId]] = {}
    seen: set[InputId] = set()
    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 2:
                raise ConfigError(
                    f"{path}:{lineno}: expected 'input_id input_id_type', got {line!r}"
                )
            input_id = InputId(parts[0], parts[1])
            if input_id in seen:
                continue
            seen.add(input_id)
            grouped.setdefault(input_id.input_id_type, []).append(input_id)
    return grouped


def shuffled(items: Sequence[T], rng: Optional[random.Random] = None) -> list[T]:
    """Return a shuffled copy of items."""
    out = list(items)
    (rng or random).shuffle(out)
    return out


def archive_artifact(path: Optional[str], suffix: str) -> Optional[Path]:
    """
    Rename an output file out of the way before a job is resubmitted.

    Batch systems append to existing stdout/stderr files, so a retried
    job would otherwise mix its output with the previous attempt.

    Returns:
        The new path, or None if there was nothing to rename
    """
    if not path:
        return None
    source = Path(path)
    if not source.exists():
        return None
    target = source.with_name(f"{source.name}.{suffix}")
    source.rename(target)
    return target


def iter_chunks(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield successive chunks of at most size items."""
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
