from datetime import datetime, timedelta, timezone

import pytest

from rulemanager.admission import AdmissionController
from rulemanager.batch import BatchSubmitter, SubmissionHandle
from rulemanager.config import RunOptions, SchedulerSettings
from rulemanager.control import ControlChannel, WakeupTimer
from rulemanager.errors import SubmissionError
from rulemanager.job_manager import JobLifecycleManager
from rulemanager.rule_store import RuleStore
from rulemanager.scheduler import RuleScheduler
from rulemanager.schemas import ACCUMULATOR, Analysis, InputId, Rule
from rulemanager.state_store import InMemoryStateStore


class FakeClock:
    """Settable clock returning timezone-aware datetimes."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeSubmitter(BatchSubmitter):
    """
    Batch adapter that records what it is asked to do.

    buffer=True holds jobs until flush_created(); fail_next makes the next
    N submissions raise SubmissionError.
    """

    name = "fake"

    def __init__(self, buffer: bool = False, pending: int = 0):
        self.buffer = buffer
        self.pending = pending
        self.fail_next = 0
        self.submitted = []
        self.killed = []
        self.buffered = []
        self._counter = 0

    def _handle(self) -> SubmissionHandle:
        self._counter += 1
        return SubmissionHandle(submission_id=f"fake-{self._counter}")

    def submit(self, job):
        if self.fail_next:
            self.fail_next -= 1
            raise SubmissionError("queue unreachable", job_id=job.job_id)
        self.submitted.append(job)
        if self.buffer:
            self.buffered.append(job)
            return SubmissionHandle.pending()
        return self._handle()

    def flush_created(self):
        handles = {job.job_id: self._handle() for job in self.buffered}
        self.buffered = []
        return handles

    def pending_count(self):
        if isinstance(self.pending, list):
            return self.pending.pop(0) if len(self.pending) > 1 else self.pending[0]
        return self.pending

    def kill(self, job):
        self.killed.append(job)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def submitter():
    return FakeSubmitter()


@pytest.fixture
def settings():
    return SchedulerSettings(wakeup=120, overload_sleep=300, rerun_sleep=3600, default_retries=3)


@pytest.fixture
def analyses():
    """A small genome pipeline: SubmitSlice -> RepeatMask -> Genscan -> GenscanDump."""
    return {
        "SubmitSlice": Analysis(1, "SubmitSlice", "SLICE"),
        "RepeatMask": Analysis(2, "RepeatMask", "SLICE", program="repeatmask"),
        "Genscan": Analysis(3, "Genscan", "SLICE", program="genscan", timeout=600, max_retries=3),
        "GenscanDump": Analysis(4, "GenscanDump", ACCUMULATOR, program="dump_genscan"),
    }


@pytest.fixture
def pipeline(store, analyses):
    """Store loaded with the pipeline's analyses and rules."""
    for analysis in analyses.values():
        store.store_analysis(analysis)
    store.store_rule(Rule(1, analyses["RepeatMask"], (analyses["SubmitSlice"],)))
    store.store_rule(Rule(2, analyses["Genscan"], (analyses["RepeatMask"],)))
    store.store_rule(Rule(3, analyses["GenscanDump"], (analyses["Genscan"],)))
    return store


@pytest.fixture
def slice_id():
    return InputId("chr1.1-100000", "SLICE")


@pytest.fixture
def jobs(pipeline, submitter, settings, clock):
    return JobLifecycleManager(pipeline, submitter, settings, clock=clock)


@pytest.fixture
def make_scheduler(pipeline, submitter, settings, clock):
    """Build a RuleScheduler wired to the in-memory store and fake adapter."""

    def _make(options=None, channel=None, sleeps=None, timer=None, jobs=None, sleep=None):
        channel = channel or ControlChannel()
        sleeps = sleeps if sleeps is not None else []
        jobs = jobs or JobLifecycleManager(pipeline, submitter, settings, clock=clock)
        admission = AdmissionController(
            submitter, max_pending_jobs=200, overload_sleep=settings.overload_sleep,
            channel=channel, sleep=sleeps.append,
        )
        return RuleScheduler(
            pipeline,
            RuleStore(pipeline),
            jobs,
            admission,
            channel,
            options or RunOptions(),
            settings,
            timer=timer or WakeupTimer(settings.wakeup, clock=lambda: 0.0),
            sleep=sleep or sleeps.append,
            clock=clock,
        )

    return _make
