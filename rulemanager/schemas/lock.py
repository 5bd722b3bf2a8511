"""
SchedulerLock - the single persisted record naming the live scheduler.

Stored under a fixed key as "user@host:pid:epoch".
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone

LOCK_KEY = "pipeline.lock"

_LOCK_PATTERN = re.compile(r"^(?P<owner>[^@]+)@(?P<host>[^:]+):(?P<pid>\d+):(?P<epoch>\d+)$")


@dataclass(frozen=True)
class SchedulerLock:
    """Owner identity, process id and acquisition time of a scheduler."""
    owner: str
    host: str
    pid: int
    started_at: datetime

    def serialize(self) -> str:
        return f"{self.owner}@{self.host}:{self.pid}:{int(self.started_at.timestamp())}"

    @classmethod
    def parse(cls, value: str) -> "SchedulerLock":
        match = _LOCK_PATTERN.match(value.strip())
        if not match:
            raise ValueError(f"Malformed pipeline lock: {value!r}")
        return cls(
            owner=match.group("owner"),
            host=match.group("host"),
            pid=int(match.group("pid")),
            started_at=datetime.fromtimestamp(int(match.group("epoch")), tz=timezone.utc),
        )
