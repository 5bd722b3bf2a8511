"""Tests for RuleScheduler.

Tests cover:
- The Genscan retry scenario over successive passes
- Idempotent re-ticks
- Accumulator taint across a pass
- Input id selection (types, start-from, id list)
- Control: once mode, terminate, reload, wakeup backpressure, timeouts
- Database errors during a pass
"""

from unittest.mock import patch

import pytest

from rulemanager.config import RunOptions
from rulemanager.control import ControlChannel, WakeupTimer
from rulemanager.errors import StateStoreError
from rulemanager.job_manager import ReconcileOutcome
from rulemanager.schemas import Analysis, InputId, JobStatus, Rule


def slices(n):
    return [InputId(f"chr1.{i}-100000", "SLICE") for i in range(1, n + 1)]


def seed(store, analyses, input_id, *names):
    for name in names:
        store.record_completion(input_id, analyses[name])


def jobs_of(store, input_id, logic_name):
    return [j for j in store.jobs_for(input_id) if j.logic_name == logic_name]


class TestGenscanScenario:
    """RepeatMask done -> Genscan runs, fails, retries, then goes FATAL."""

    def test_scenario(self, make_scheduler, jobs, pipeline, submitter, analyses, slice_id):
        """Each pass does exactly what the job history calls for."""
        seed(pipeline, analyses, slice_id, "SubmitSlice", "RepeatMask")
        scheduler = make_scheduler(jobs=jobs)
        scheduler.prepare()

        # Pass 1: Genscan is ready, a job is created and submitted
        result = scheduler.run_pass()
        assert result.outcomes[ReconcileOutcome.SUBMITTED] == 1
        [job] = jobs_of(pipeline, slice_id, "Genscan")
        assert job.status == JobStatus.SUBMITTED

        # Pass 2: nothing changed, nothing new
        result = scheduler.run_pass()
        assert result.started == 0
        assert len(submitter.submitted) == 1

        # Pass 3: the job failed and is resubmitted
        jobs.apply_status(job.job_id, JobStatus.FAILED)
        result = scheduler.run_pass()
        assert result.outcomes[ReconcileOutcome.RETRIED] == 1
        [job] = jobs_of(pipeline, slice_id, "Genscan")
        assert job.retry_count == 1

        # Two more failures use up the retries
        for expected in (2, 3):
            jobs.apply_status(job.job_id, JobStatus.FAILED)
            scheduler.run_pass()
            [job] = jobs_of(pipeline, slice_id, "Genscan")
            assert job.retry_count == expected

        # Fourth failure: FATAL
        jobs.apply_status(job.job_id, JobStatus.FAILED)
        result = scheduler.run_pass()
        assert result.outcomes[ReconcileOutcome.FATAL] == 1
        [job] = jobs_of(pipeline, slice_id, "Genscan")
        assert job.status == JobStatus.FATAL

        # Never resubmitted again
        result = scheduler.run_pass()
        assert result.started == 0
        assert len(submitter.submitted) == 4

    def test_completion_unlocks_next_goal(self, make_scheduler, jobs, pipeline, analyses, slice_id):
        """A freshly seeded id runs RepeatMask, then Genscan once RepeatMask succeeds."""
        seed(pipeline, analyses, slice_id, "SubmitSlice")
        scheduler = make_scheduler(jobs=jobs)
        scheduler.prepare()

        scheduler.run_pass()
        [repeatmask] = jobs_of(pipeline, slice_id, "RepeatMask")
        assert jobs_of(pipeline, slice_id, "Genscan") == []

        jobs.apply_status(repeatmask.job_id, JobStatus.SUCCESSFUL)
        scheduler.run_pass()
        assert len(jobs_of(pipeline, slice_id, "Genscan")) == 1


class TestIdempotentTick:
    """Repeated passes with no outside change."""

    def test_no_duplicate_jobs(self, make_scheduler, pipeline, submitter, analyses):
        """Two passes in a row create jobs once."""
        for input_id in slices(5):
            seed(pipeline, analyses, input_id, "SubmitSlice")
        scheduler = make_scheduler()
        scheduler.prepare()

        first = scheduler.run_pass()
        jobs_after_first = sum(len(pipeline.jobs_for(i)) for i in slices(5))
        second = scheduler.run_pass()

        assert first.started == 5
        assert second.started == 0
        assert second.outcomes[ReconcileOutcome.SKIPPED] == 5
        assert sum(len(pipeline.jobs_for(i)) for i in slices(5)) == jobs_after_first == 5
        assert len(submitter.submitted) == 5


class TestAccumulators:
    """Accumulator analyses run after a full pass only when nothing tainted them."""

    def test_one_incomplete_id_blocks_accumulator(self, make_scheduler, pipeline, analyses):
        """Two of three ids done is not enough."""
        ids = slices(3)
        for input_id in ids[:2]:
            seed(pipeline, analyses, input_id, "SubmitSlice", "RepeatMask", "Genscan")
        seed(pipeline, analyses, ids[2], "SubmitSlice", "RepeatMask")
        scheduler = make_scheduler()
        scheduler.prepare()

        result = scheduler.run_pass()
        assert "GenscanDump" in result.accumulators.incomplete
        assert pipeline.jobs_for(InputId.accumulator()) == []

    def test_all_complete_runs_accumulator(self, make_scheduler, pipeline, analyses):
        """With every id done the accumulator job is created once."""
        for input_id in slices(3):
            seed(pipeline, analyses, input_id, "SubmitSlice", "RepeatMask", "Genscan")
        scheduler = make_scheduler()
        scheduler.prepare()

        scheduler.run_pass()
        [dump] = pipeline.jobs_for(InputId.accumulator())
        assert dump.logic_name == "GenscanDump"

        scheduler.run_pass()
        assert len(pipeline.jobs_for(InputId.accumulator())) == 1

    def test_completed_accumulator_not_rerun(self, make_scheduler, pipeline, analyses):
        """An accumulator that already ran is not started again."""
        for input_id in slices(2):
            seed(pipeline, analyses, input_id, "SubmitSlice", "RepeatMask", "Genscan")
        pipeline.record_completion(InputId.accumulator(), analyses["GenscanDump"])
        scheduler = make_scheduler()
        scheduler.prepare()

        scheduler.run_pass()
        assert pipeline.jobs_for(InputId.accumulator()) == []

    def test_restricted_run_disables_accumulators(self, make_scheduler, pipeline, analyses):
        """An analysis filter turns accumulators off."""
        for input_id in slices(2):
            seed(pipeline, analyses, input_id, "SubmitSlice", "RepeatMask", "Genscan")
        scheduler = make_scheduler(options=RunOptions(analyses=("Genscan",)))
        scheduler.prepare()

        assert not scheduler.accumulators_enabled
        scheduler.run_pass()
        assert pipeline.jobs_for(InputId.accumulator()) == []

    def test_interrupted_pass_skips_accumulators(self, make_scheduler, pipeline, analyses):
        """Accumulators only run after a full pass."""
        for input_id in slices(2):
            seed(pipeline, analyses, input_id, "SubmitSlice", "RepeatMask", "Genscan")
        channel = ControlChannel()
        scheduler = make_scheduler(channel=channel)
        scheduler.prepare()
        channel.request_terminate()

        result = scheduler.run_pass()
        assert not result.completed
        assert pipeline.jobs_for(InputId.accumulator()) == []


class TestInputIdSelection:
    """Which input ids a pass looks at."""

    @pytest.fixture
    def seeded(self, pipeline, analyses):
        ids = slices(3)
        for input_id in ids:
            seed(pipeline, analyses, input_id, "SubmitSlice")
        seed(pipeline, analyses, ids[0], "RepeatMask")
        return ids

    def test_all_types_by_default(self, make_scheduler, seeded):
        """Every tracked input id is checked."""
        scheduler = make_scheduler()
        scheduler.prepare()
        assert scheduler.run_pass().input_ids == 3

    def test_type_filter(self, make_scheduler, seeded):
        """Only the named input id types are checked."""
        scheduler = make_scheduler(options=RunOptions(input_id_types=("CONTIG",)))
        scheduler.prepare()
        assert scheduler.run_pass().input_ids == 0

    def test_start_from(self, make_scheduler, seeded):
        """start_from takes ids from an analysis's completions."""
        scheduler = make_scheduler(options=RunOptions(start_from=("RepeatMask",)))
        scheduler.prepare()
        assert scheduler.collect_input_ids() == {"SLICE": [seeded[0]]}

    def test_idlist_file(self, make_scheduler, seeded, tmp_path):
        """An id list file replaces the store's enumeration."""
        path = tmp_path / "ids.txt"
        path.write_text(f"# one slice\n{seeded[1].input_id} SLICE\n")
        scheduler = make_scheduler(options=RunOptions(idlist_file=path))
        scheduler.prepare()
        assert scheduler.collect_input_ids() == {"SLICE": [seeded[1]]}

    def test_shuffle_keeps_every_id(self, make_scheduler, seeded):
        """Shuffling changes order, not membership."""
        scheduler = make_scheduler(options=RunOptions(shuffle=True))
        scheduler.prepare()
        assert scheduler.run_pass().input_ids == 3


class TestRunLoop:
    """Tests for run() and the control channel."""

    def test_once_mode(self, make_scheduler, pipeline, analyses, slice_id):
        """Once mode stops after one full pass without sleeping."""
        seed(pipeline, analyses, slice_id, "SubmitSlice")
        sleeps = []
        scheduler = make_scheduler(options=RunOptions(once=True), sleeps=sleeps)

        summary = scheduler.run()

        assert summary.passes == 1
        assert summary.stopped_by == "once"
        assert summary.started == 1
        assert sleeps == []

    def test_terminate_before_start(self, make_scheduler):
        """A pending terminate stops the loop before any pass."""
        channel = ControlChannel()
        channel.request_terminate()
        summary = make_scheduler(channel=channel).run()
        assert summary.passes == 0
        assert summary.stopped_by == "terminate"

    def test_idle_sleep_then_terminate(self, make_scheduler, settings):
        """A pass with no work sleeps rerun_sleep before the next pass."""
        channel = ControlChannel()
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            channel.request_terminate()

        scheduler = make_scheduler(channel=channel, sleep=sleep)
        summary = scheduler.run()

        assert sleeps == [settings.rerun_sleep]
        assert summary.passes == 1
        assert summary.stopped_by == "terminate"

    def test_terminate_mid_pass(self, make_scheduler, pipeline, submitter, analyses):
        """Terminate finishes the current input id and stops the pass."""
        for input_id in slices(3):
            seed(pipeline, analyses, input_id, "SubmitSlice")
        channel = ControlChannel()
        original_submit = submitter.submit

        def submit(job):
            channel.request_terminate()
            return original_submit(job)

        submitter.submit = submit
        summary = make_scheduler(channel=channel).run()

        assert summary.passes == 1
        assert summary.started == 1
        assert summary.stopped_by == "terminate"

    def test_reload_picks_up_new_rules(self, make_scheduler, pipeline, analyses, slice_id):
        """A reload request re-reads the rules before the next pass."""
        seed(pipeline, analyses, slice_id, "SubmitSlice", "RepeatMask", "Genscan")
        pipeline.record_completion(InputId.accumulator(), analyses["GenscanDump"])
        channel = ControlChannel()
        calls = []

        def sleep(seconds):
            calls.append(seconds)
            if len(calls) == 1:
                blast = Analysis(10, "Blast", "SLICE")
                pipeline.store_analysis(blast)
                pipeline.store_rule(Rule(10, blast, (analyses["RepeatMask"],)))
                channel.request_reload()
            else:
                channel.request_terminate()

        scheduler = make_scheduler(channel=channel, sleep=sleep)
        summary = scheduler.run()

        assert summary.passes == 3
        assert len(jobs_of(pipeline, slice_id, "Blast")) == 1

    def test_broken_reload_keeps_rules(self, make_scheduler, pipeline, analyses, slice_id):
        """Rules that fail to load on reload leave the old rules in force."""
        seed(pipeline, analyses, slice_id, "SubmitSlice", "RepeatMask", "Genscan")
        pipeline.record_completion(InputId.accumulator(), analyses["GenscanDump"])
        channel = ControlChannel()
        calls = []

        def sleep(seconds):
            calls.append(seconds)
            if len(calls) == 1:
                pipeline.store_rule(Rule(11, analyses["Genscan"], (Analysis(99, "Ghost", "SLICE"),)))
                channel.request_reload()
            else:
                channel.request_terminate()

        scheduler = make_scheduler(channel=channel, sleep=sleep)
        summary = scheduler.run()

        assert summary.passes == 2
        assert summary.stopped_by == "terminate"
        assert scheduler.reload_rules() is False

    def test_wakeup_applies_backpressure(self, make_scheduler, pipeline, submitter, analyses, settings):
        """When the queue is over the ceiling the pass waits overload_sleep."""
        for input_id in slices(2):
            seed(pipeline, analyses, input_id, "SubmitSlice")
        submitter.pending = [250, 10]
        sleeps = []
        scheduler = make_scheduler(
            options=RunOptions(once=True),
            sleeps=sleeps,
            timer=WakeupTimer(0, clock=lambda: 0.0),
        )

        summary = scheduler.run()

        assert sleeps == [settings.overload_sleep]
        assert summary.started == 2

    def test_timeouts_checked_on_first_pass(self, make_scheduler, jobs, pipeline, submitter, analyses, clock, slice_id):
        """Overdue jobs are killed at the start of a pass and then retried."""
        seed(pipeline, analyses, slice_id, "SubmitSlice", "RepeatMask")
        jobs.reconcile(slice_id, analyses["Genscan"])
        clock.advance(601)

        scheduler = make_scheduler(jobs=jobs, options=RunOptions(once=True))
        scheduler.run()

        assert len(submitter.killed) == 1
        [job] = jobs_of(pipeline, slice_id, "Genscan")
        assert job.retry_count == 1
        assert job.status == JobStatus.SUBMITTED


class TestStoreErrors:
    """Database errors skip work for this pass instead of stopping the scheduler."""

    def test_unreadable_input_id_is_skipped(self, make_scheduler, pipeline, analyses):
        """The rest of the pass runs and accumulators wait for the skipped id."""
        ids = slices(3)
        for input_id in ids:
            seed(pipeline, analyses, input_id, "SubmitSlice", "RepeatMask", "Genscan")
        scheduler = make_scheduler()
        scheduler.prepare()
        real = pipeline.completed_analyses

        def completed_analyses(input_id):
            if input_id == ids[1]:
                raise StateStoreError("completed_analyses failed: database is locked")
            return real(input_id)

        with patch.object(pipeline, "completed_analyses", side_effect=completed_analyses):
            result = scheduler.run_pass()

        assert result.completed
        assert result.input_ids == 3
        assert result.outcomes[ReconcileOutcome.ERROR] == 1
        assert "GenscanDump" in result.accumulators.incomplete
        assert pipeline.jobs_for(InputId.accumulator()) == []

    def test_failed_pass_in_once_mode(self, make_scheduler, pipeline):
        """A pass that cannot list input ids ends a single run with an error."""
        scheduler = make_scheduler(options=RunOptions(once=True))
        locked = StateStoreError("input_ids_by_type failed: database is locked")

        with patch.object(pipeline, "input_ids_by_type", side_effect=locked):
            summary = scheduler.run()

        assert summary.stopped_by == "error"
        assert summary.failed == 1
        assert summary.passes == 0

    def test_failed_pass_sleeps_then_continues(self, make_scheduler, pipeline, settings):
        """Outside once mode a failed pass sleeps rerun_sleep and the loop goes on."""
        channel = ControlChannel()
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            channel.request_terminate()

        scheduler = make_scheduler(channel=channel, sleep=sleep)
        locked = StateStoreError("input_ids_by_type failed: database is locked")

        with patch.object(pipeline, "input_ids_by_type", side_effect=locked):
            summary = scheduler.run()

        assert sleeps == [settings.rerun_sleep]
        assert summary.failed == 1
        assert summary.stopped_by == "terminate"
