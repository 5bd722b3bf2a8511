"""
StateStore - Persist pipeline state for the rule manager.

The StateStore manages:
- Analyses and Rules (read by the RuleStore)
- Completion records (which analyses finished for which input id)
- Job records (upserted on creation and on every status transition)
- The pipeline lock (a single row under a fixed key)

Storage backends:
- In-memory (for testing)
- SQLite (for a real pipeline database)
"""

import functools
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from rulemanager.errors import ConfigError, StateStoreError
from rulemanager.schemas import (
    ACCUMULATOR,
    LOCK_KEY,
    Analysis,
    InputId,
    Job,
    JobStatus,
    Rule,
    SchedulerLock,
)

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """
    Abstract base class for pipeline state storage.

    Implementations must provide methods to:
    - Enumerate input ids and their completed analyses
    - Store and retrieve Jobs
    - Store and retrieve Analyses and Rules
    - Acquire and release the pipeline lock atomically
    """

    # -- input ids and completions -------------------------------------------

    @abstractmethod
    def input_ids_by_type(self) -> dict[str, list[InputId]]:
        """
        Enumerate every tracked input id, grouped by input id type.

        Returns:
            Mapping of input_id_type to the input ids of that type
        """
        pass

    def list_input_ids(self, input_id_type: str) -> list[InputId]:
        """List the tracked input ids of one type."""
        return self.input_ids_by_type().get(input_id_type, [])

    @abstractmethod
    def input_ids_by_analysis(self, logic_name: str) -> list[InputId]:
        """
        List the input ids an analysis has completed for.

        Args:
            logic_name: The analysis whose outputs seed new input ids

        Returns:
            Input ids with a completion record for the analysis
        """
        pass

    @abstractmethod
    def completed_analyses(self, input_id: InputId) -> set[Analysis]:
        """
        Get the analyses already completed for an input id.

        Args:
            input_id: The input id to check

        Returns:
            The set of completed Analyses (empty if none)
        """
        pass

    @abstractmethod
    def record_completion(self, input_id: InputId, analysis: Analysis) -> None:
        """
        Record that an analysis completed for an input id.

        Recording the same completion twice is a no-op.
        """
        pass

    def accumulator_completed(self, logic_name: str) -> bool:
        """True if the accumulator analysis has already run globally."""
        return any(
            a.logic_name == logic_name
            for a in self.completed_analyses(InputId.accumulator())
        )

    # -- jobs ----------------------------------------------------------------

    @abstractmethod
    def upsert_job(self, job: Job) -> Job:
        """
        Insert or update a job record.

        Args:
            job: The Job to store. A job without job_id is inserted.

        Returns:
            The stored Job (with job_id assigned)
        """
        pass

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[Job]:
        """Retrieve a job by id, or None if it does not exist."""
        pass

    @abstractmethod
    def jobs_for(self, input_id: InputId) -> list[Job]:
        """List every job recorded for an input id."""
        pass

    @abstractmethod
    def jobs_by_status(self, *statuses: JobStatus) -> list[Job]:
        """List jobs currently in any of the given statuses."""
        pass

    def job_status_counts(self) -> dict[tuple[str, str], int]:
        """Count jobs by (logic_name, status)."""
        counts: Counter = Counter()
        for job in self.jobs_by_status(*JobStatus):
            counts[(job.logic_name, job.status.value)] += 1
        return dict(counts)

    # -- analyses and rules --------------------------------------------------

    @abstractmethod
    def store_analysis(self, analysis: Analysis) -> None:
        """Insert or replace an analysis keyed by analysis_id."""
        pass

    @abstractmethod
    def fetch_analyses(self) -> list[Analysis]:
        """List every known analysis."""
        pass

    def fetch_analysis(self, logic_name: str) -> Optional[Analysis]:
        """Find an analysis by logic name."""
        for analysis in self.fetch_analyses():
            if analysis.logic_name == logic_name:
                return analysis
        return None

    @abstractmethod
    def store_rule(self, rule: Rule) -> None:
        """Insert or replace a rule keyed by rule_id."""
        pass

    @abstractmethod
    def fetch_rules(self) -> list[Rule]:
        """
        List every rule with its goal and condition analyses resolved.

        Raises:
            ConfigError: If a rule names an analysis that does not exist
        """
        pass

    def sanity_problems(self) -> list[str]:
        """
        Check referential integrity of the pipeline definition.

        Returns:
            Human-readable descriptions of each problem found (empty if sane)
        """
        problems = []
        known = {a.logic_name for a in self.fetch_analyses()}
        known_types = {a.input_id_type for a in self.fetch_analyses()}

        goals, conditions = self._rule_references()
        missing_goals = sorted(g for g in goals if g not in known)
        if missing_goals:
            problems.append(
                "Some rule goals don't have entries in the analysis table: "
                + ", ".join(missing_goals)
            )
        missing_conditions = sorted(c for c in conditions if c not in known)
        if missing_conditions:
            problems.append(
                "Some rule conditions don't have entries in the analysis table: "
                + ", ".join(missing_conditions)
            )

        unknown_types = sorted(
            t for t in self.input_ids_by_type()
            if t != ACCUMULATOR and t not in known_types
        )
        if unknown_types:
            problems.append(
                "Some input id types have no analysis of that type: "
                + ", ".join(unknown_types)
            )
        return problems

    @abstractmethod
    def _rule_references(self) -> tuple[set[str], set[str]]:
        """Raw goal and condition logic names referenced by stored rules."""
        pass

    # -- lock ----------------------------------------------------------------

    @abstractmethod
    def acquire_lock(self, lock: SchedulerLock) -> Optional[SchedulerLock]:
        """
        Atomically store the pipeline lock if no lock exists.

        Args:
            lock: The lock record to store

        Returns:
            None if the lock was stored, otherwise the existing holder
        """
        pass

    @abstractmethod
    def get_lock(self) -> Optional[SchedulerLock]:
        """Return the current lock holder, or None if unlocked."""
        pass

    @abstractmethod
    def release_lock(self) -> None:
        """Remove the pipeline lock. Removing an absent lock is a no-op."""
        pass

    def close(self) -> None:
        """Release any underlying resources."""
        pass


class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._analyses: dict[int, Analysis] = {}
        self._rules: dict[int, Rule] = {}
        self._completions: dict[InputId, dict[str, Analysis]] = {}
        self._jobs: dict[int, Job] = {}
        self._next_job_id = 1
        self._lock: Optional[SchedulerLock] = None

    def input_ids_by_type(self) -> dict[str, list[InputId]]:
        grouped: dict[str, list[InputId]] = defaultdict(list)
        for input_id in self._completions:
            grouped[input_id.input_id_type].append(input_id)
        return dict(grouped)

    def input_ids_by_analysis(self, logic_name: str) -> list[InputId]:
        return [i for i, done in self._completions.items() if logic_name in done]

    def completed_analyses(self, input_id: InputId) -> set[Analysis]:
        return set(self._completions.get(input_id, {}).values())

    def record_completion(self, input_id: InputId, analysis: Analysis) -> None:
        self._completions.setdefault(input_id, {})[analysis.logic_name] = analysis

    def upsert_job(self, job: Job) -> Job:
        if job.job_id is None:
            job = replace(job, job_id=self._next_job_id)
            self._next_job_id += 1
        self._jobs[job.job_id] = job
        return job

    def get_job(self, job_id: int) -> Optional[Job]:
        return self._jobs.get(job_id)

    def jobs_for(self, input_id: InputId) -> list[Job]:
        return [j for j in self._jobs.values() if j.input_id == input_id]

    def jobs_by_status(self, *statuses: JobStatus) -> list[Job]:
        wanted = set(statuses)
        return [j for j in self._jobs.values() if j.status in wanted]

    def store_analysis(self, analysis: Analysis) -> None:
        self._analyses[analysis.analysis_id] = analysis

    def fetch_analyses(self) -> list[Analysis]:
        return list(self._analyses.values())

    def store_rule(self, rule: Rule) -> None:
        self._rules[rule.rule_id] = rule

    def fetch_rules(self) -> list[Rule]:
        return [self._rules[k] for k in sorted(self._rules)]

    def _rule_references(self) -> tuple[set[str], set[str]]:
        goals = {r.goal.logic_name for r in self._rules.values()}
        conditions = {c for r in self._rules.values() for c in r.condition_names}
        return goals, conditions

    def acquire_lock(self, lock: SchedulerLock) -> Optional[SchedulerLock]:
        if self._lock is not None:
            return self._lock
        self._lock = lock
        return None

    def get_lock(self) -> Optional[SchedulerLock]:
        return self._lock

    def release_lock(self) -> None:
        self._lock = None

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._analyses.clear()
        self._rules.clear()
        self._completions.clear()
        self._jobs.clear()
        self._next_job_id = 1
        self._lock = None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS analysis (
    analysis_id   INTEGER PRIMARY KEY,
    logic_name    TEXT NOT NULL UNIQUE,
    input_id_type TEXT NOT NULL,
    module        TEXT,
    program       TEXT,
    parameters    TEXT NOT NULL DEFAULT '',
    timeout       INTEGER,
    max_retries   INTEGER
);
CREATE TABLE IF NOT EXISTS rule_goal (
    rule_id INTEGER PRIMARY KEY,
    goal    TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS rule_condition (
    rule_id   INTEGER NOT NULL,
    condition TEXT NOT NULL,
    PRIMARY KEY (rule_id, condition)
);
CREATE TABLE IF NOT EXISTS input_id_analysis (
    input_id      TEXT NOT NULL,
    input_id_type TEXT NOT NULL,
    analysis      TEXT NOT NULL,
    created       TEXT NOT NULL,
    PRIMARY KEY (input_id, input_id_type, analysis)
);
CREATE TABLE IF NOT EXISTS job (
    job_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    input_id          TEXT NOT NULL,
    input_id_type     TEXT NOT NULL,
    analysis          TEXT NOT NULL,
    status            TEXT NOT NULL,
    created_at        TEXT NOT NULL,
    status_changed_at TEXT NOT NULL,
    retry_count       INTEGER NOT NULL DEFAULT 0,
    submission_id     TEXT,
    stdout_file       TEXT,
    stderr_file       TEXT
);
CREATE INDEX IF NOT EXISTS job_input_id ON job (input_id, input_id_type);
CREATE INDEX IF NOT EXISTS job_status ON job (status);
CREATE TABLE IF NOT EXISTS meta (
    meta_key   TEXT PRIMARY KEY,
    meta_value TEXT NOT NULL
);
"""


def _database_errors(method):
    """Re-raise sqlite errors (locked or unreadable database) as StateStoreError."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise StateStoreError(f"{method.__name__} failed on {self._db_path}: {e}") from e
    return wrapper


class SqliteStateStore(StateStore):
    """
    SQLite implementation of StateStore.

    Every write is a single-row upsert committed immediately, so a
    restarted scheduler resumes from the last durable state.

    Tables:
        analysis, rule_goal, rule_condition   pipeline definition
        input_id_analysis                      completion records
        job                                    job records
        meta                                   pipeline lock
    """

    def __init__(self, db_path: Path | str, busy_timeout: float = 30.0):
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # run-job processes write to the same file; wait for their locks
        self._conn = sqlite3.connect(str(self._db_path), timeout=busy_timeout)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._analysis_cache: Optional[dict[str, Analysis]] = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        self._conn.close()

    def _analyses_by_name(self) -> dict[str, Analysis]:
        if self._analysis_cache is None:
            self._analysis_cache = {a.logic_name: a for a in self.fetch_analyses()}
        return self._analysis_cache

    def _analysis(self, logic_name: str) -> Analysis:
        analysis = self._analyses_by_name().get(logic_name)
        if analysis is None:
            raise ConfigError(f"Unknown analysis referenced in pipeline database: {logic_name}")
        return analysis

    @_database_errors
    def input_ids_by_type(self) -> dict[str, list[InputId]]:
        rows = self._conn.execute(
            "SELECT DISTINCT input_id, input_id_type FROM input_id_analysis ORDER BY input_id_type, input_id"
        ).fetchall()
        grouped: dict[str, list[InputId]] = defaultdict(list)
        for row in rows:
            grouped[row["input_id_type"]].append(InputId(row["input_id"], row["input_id_type"]))
        return dict(grouped)

    @_database_errors
    def input_ids_by_analysis(self, logic_name: str) -> list[InputId]:
        rows = self._conn.execute(
            "SELECT input_id, input_id_type FROM input_id_analysis WHERE analysis = ?",
            (logic_name,),
        ).fetchall()
        return [InputId(r["input_id"], r["input_id_type"]) for r in rows]

    @_database_errors
    def completed_analyses(self, input_id: InputId) -> set[Analysis]:
        rows = self._conn.execute(
            "SELECT analysis FROM input_id_analysis WHERE input_id = ? AND input_id_type = ?",
            (input_id.input_id, input_id.input_id_type),
        ).fetchall()
        known = self._analyses_by_name()
        completed = set()
        for row in rows:
            analysis = known.get(row["analysis"])
            if analysis is None:
                logger.warning(
                    f"Completion for unknown analysis {row['analysis']} on {input_id}",
                    extra={"event": "unknown_analysis", "input_id": input_id.input_id},
                )
                continue
            completed.add(analysis)
        return completed

    @_database_errors
    def record_completion(self, input_id: InputId, analysis: Analysis) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO input_id_analysis (input_id, input_id_type, analysis, created) "
                "VALUES (?, ?, ?, ?)",
                (input_id.input_id, input_id.input_id_type, analysis.logic_name,
                 datetime.now(timezone.utc).isoformat()),
            )

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            input_id=InputId(row["input_id"], row["input_id_type"]),
            analysis=self._analysis(row["analysis"]),
            status=JobStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            status_changed_at=datetime.fromisoformat(row["status_changed_at"]),
            retry_count=row["retry_count"],
            submission_id=row["submission_id"],
            stdout_file=row["stdout_file"],
            stderr_file=row["stderr_file"],
        )

    @_database_errors
    def upsert_job(self, job: Job) -> Job:
        values = (
            job.input_id.input_id, job.input_id.input_id_type, job.logic_name,
            job.status.value, job.created_at.isoformat(), job.status_changed_at.isoformat(),
            job.retry_count, job.submission_id, job.stdout_file, job.stderr_file,
        )
        with self._conn:
            if job.job_id is None:
                cursor = self._conn.execute(
                    "INSERT INTO job (input_id, input_id_type, analysis, status, created_at, "
                    "status_changed_at, retry_count, submission_id, stdout_file, stderr_file) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    values,
                )
                return replace(job, job_id=cursor.lastrowid)
            self._conn.execute(
                "INSERT INTO job (input_id, input_id_type, analysis, status, created_at, "
                "status_changed_at, retry_count, submission_id, stdout_file, stderr_file, job_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(job_id) DO UPDATE SET status = excluded.status, "
                "status_changed_at = excluded.status_changed_at, retry_count = excluded.retry_count, "
                "submission_id = excluded.submission_id, stdout_file = excluded.stdout_file, "
                "stderr_file = excluded.stderr_file",
                values + (job.job_id,),
            )
        return job

    @_database_errors
    def get_job(self, job_id: int) -> Optional[Job]:
        row = self._conn.execute("SELECT * FROM job WHERE job_id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    @_database_errors
    def jobs_for(self, input_id: InputId) -> list[Job]:
        rows = self._conn.execute(
            "SELECT * FROM job WHERE input_id = ? AND input_id_type = ? ORDER BY job_id",
            (input_id.input_id, input_id.input_id_type),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    @_database_errors
    def jobs_by_status(self, *statuses: JobStatus) -> list[Job]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._conn.execute(
            f"SELECT * FROM job WHERE status IN ({placeholders}) ORDER BY job_id",
            tuple(s.value for s in statuses),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    @_database_errors
    def job_status_counts(self) -> dict[tuple[str, str], int]:
        rows = self._conn.execute(
            "SELECT analysis, status, COUNT(*) AS n FROM job GROUP BY analysis, status"
        ).fetchall()
        return {(r["analysis"], r["status"]): r["n"] for r in rows}

    @_database_errors
    def store_analysis(self, analysis: Analysis) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO analysis (analysis_id, logic_name, input_id_type, module, "
                "program, parameters, timeout, max_retries) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (analysis.analysis_id, analysis.logic_name, analysis.input_id_type, analysis.module,
                 analysis.program, analysis.parameters, analysis.timeout, analysis.max_retries),
            )
        self._analysis_cache = None

    @_database_errors
    def fetch_analyses(self) -> list[Analysis]:
        rows = self._conn.execute("SELECT * FROM analysis ORDER BY analysis_id").fetchall()
        return [Analysis.from_dict(dict(r)) for r in rows]

    @_database_errors
    def store_rule(self, rule: Rule) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO rule_goal (rule_id, goal) VALUES (?, ?)",
                (rule.rule_id, rule.goal.logic_name),
            )
            self._conn.execute("DELETE FROM rule_condition WHERE rule_id = ?", (rule.rule_id,))
            self._conn.executemany(
                "INSERT INTO rule_condition (rule_id, condition) VALUES (?, ?)",
                [(rule.rule_id, name) for name in rule.condition_names],
            )

    @_database_errors
    def fetch_rules(self) -> list[Rule]:
        # Always re-read analyses so a reload sees fresh definitions
        self._analysis_cache = None
        conditions: dict[int, list[str]] = defaultdict(list)
        for row in self._conn.execute("SELECT rule_id, condition FROM rule_condition ORDER BY rule_id, condition"):
            conditions[row["rule_id"]].append(row["condition"])
        rules = []
        for row in self._conn.execute("SELECT rule_id, goal FROM rule_goal ORDER BY rule_id"):
            rules.append(Rule(
                rule_id=row["rule_id"],
                goal=self._analysis(row["goal"]),
                conditions=tuple(self._analysis(c) for c in conditions[row["rule_id"]]),
            ))
        return rules

    @_database_errors
    def _rule_references(self) -> tuple[set[str], set[str]]:
        goals = {r["goal"] for r in self._conn.execute("SELECT goal FROM rule_goal")}
        conditions = {r["condition"] for r in self._conn.execute("SELECT condition FROM rule_condition")}
        return goals, conditions

    @_database_errors
    def acquire_lock(self, lock: SchedulerLock) -> Optional[SchedulerLock]:
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO meta (meta_key, meta_value) VALUES (?, ?)",
                    (LOCK_KEY, lock.serialize()),
                )
        except sqlite3.IntegrityError:
            return self.get_lock()
        return None

    @_database_errors
    def get_lock(self) -> Optional[SchedulerLock]:
        row = self._conn.execute(
            "SELECT meta_value FROM meta WHERE meta_key = ?", (LOCK_KEY,)
        ).fetchone()
        return SchedulerLock.parse(row["meta_value"]) if row else None

    @_database_errors
    def release_lock(self) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM meta WHERE meta_key = ?", (LOCK_KEY,))


def seed_input_ids(store: StateStore, analysis: Analysis, input_ids: Iterable[InputId]) -> int:
    """
    Record input ids as completions of a seeding analysis.

    New input ids enter the pipeline as outputs of a "submit" analysis;
    rules conditioned on that analysis then make them runnable.

    Returns:
        Number of input ids recorded
    """
    count = 0
    for input_id in input_ids:
        store.record_completion(input_id, analysis)
        count += 1
    return count
