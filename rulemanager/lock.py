"""
SingletonLock - one live scheduler per pipeline database.

acquire() writes the lock record with the store's atomic insert and fails
loudly with AlreadyLockedError if a record exists; it never preempts.
release() is idempotent. A process that dies without releasing leaves a
stale lock behind, which an operator removes with `rulemanager lock release`.
"""

import getpass
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from rulemanager.errors import AlreadyLockedError
from rulemanager.schemas import SchedulerLock
from rulemanager.state_store import StateStore

logger = logging.getLogger(__name__)


def current_identity() -> tuple[str, str, int]:
    """(user, host, pid) of this process."""
    return getpass.getuser(), socket.gethostname().split(".")[0], os.getpid()


@dataclass(frozen=True)
class LockToken:
    """Proof of a held lock."""
    lock: SchedulerLock
    database: str = ""


class SingletonLock:
    """
    Context manager around the pipeline lock.

    Usage:
        with SingletonLock(store, config.database.label):
            scheduler.run()

    The lock is released when the block exits normally or through
    KeyboardInterrupt/SystemExit; any other exception leaves it in place.
    """

    def __init__(
        self,
        store: StateStore,
        database_label: str = "",
        owner: Optional[str] = None,
        host: Optional[str] = None,
        pid: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        user, hostname, process = current_identity()
        self._store = store
        self._database = database_label
        self._owner = owner or user
        self._host = host or hostname
        self._pid = pid if pid is not None else process
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._token: Optional[LockToken] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    @property
    def token(self) -> Optional[LockToken]:
        return self._token

    def acquire(self) -> LockToken:
        """
        Take the pipeline lock.

        Raises:
            AlreadyLockedError: If any lock record already exists
        """
        lock = SchedulerLock(
            owner=self._owner,
            host=self._host,
            pid=self._pid,
            started_at=self._clock().replace(microsecond=0),
        )
        existing = self._store.acquire_lock(lock)
        if existing is not None:
            raise AlreadyLockedError(existing, self._database)

        self._token = LockToken(lock=lock, database=self._database)
        logger.info(
            f"Acquired pipeline lock {lock.serialize()}",
            extra={"event": "lock_acquired"},
        )
        return self._token

    def release(self, force: bool = False) -> bool:
        """
        Remove the lock record.

        Args:
            force: Remove whatever lock exists, even one this process does not hold

        Returns:
            True if a lock record was removed
        """
        current = self._store.get_lock()
        if current is None:
            self._token = None
            return False

        if not force:
            if self._token is None:
                return False
            if current.serialize() != self._token.lock.serialize():
                logger.warning(
                    f"Pipeline lock is held by {current.serialize()}, not releasing",
                    extra={"event": "lock_mismatch"},
                )
                self._token = None
                return False

        self._store.release_lock()
        self._token = None
        logger.info(
            f"Released pipeline lock {current.serialize()}",
            extra={"event": "lock_released"},
        )
        return True

    def __enter__(self) -> LockToken:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None or issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            self.release()
