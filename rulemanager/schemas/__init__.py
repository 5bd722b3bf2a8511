"""
rulemanager.schemas - Data structures shared by every scheduler component.

Analysis -> Rule -> InputId -> Job

Lifecycle:
1. Analysis: Static description of a kind of work
2. Rule: Goal analysis plus the condition analyses it waits for
3. InputId: Unit of data (id string + type tag) analyses run against
4. Job: One execution attempt of (Analysis, InputId), persisted on every transition
5. SchedulerLock: The single record naming the live scheduler
"""

from .analysis import (
    ACCUMULATOR,
    Analysis,
    InputId,
    Rule,
)
from .job import (
    Job,
    JobStatus,
    can_transition,
)
from .lock import (
    LOCK_KEY,
    SchedulerLock,
)

__all__ = [
    # Analysis / rules
    "ACCUMULATOR",
    "Analysis",
    "InputId",
    "Rule",
    # Jobs
    "Job",
    "JobStatus",
    "can_transition",
    # Lock
    "LOCK_KEY",
    "SchedulerLock",
]
