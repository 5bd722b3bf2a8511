"""
RuleScheduler - the main scheduling loop.

One pass:
1. Kill timed out jobs if the wakeup timer fired since the last pass
2. Enumerate input ids grouped by type (or from an id list / start-from analyses)
3. For each input id: evaluate readiness, reconcile each ready goal
4. After a full, uninterrupted pass: run eligible accumulator analyses
5. Flush jobs the batch adapter buffered

Between input ids the scheduler drains the ControlChannel: a wakeup runs
the backpressure check, a terminate or reload request ends the pass.
run() repeats passes until terminated (or after one full pass in once
mode), sleeping rerun_sleep seconds after a pass that started no work.
"""

import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AbstractSet, Callable, Optional

from rulemanager.admission import AdmissionController
from rulemanager.config import RunOptions, SchedulerSettings
from rulemanager.control import ControlChannel, WakeupTimer
from rulemanager.errors import ConfigError, TransientError
from rulemanager.job_manager import JobLifecycleManager, ReconcileOutcome
from rulemanager.readiness import AccumulatorCompletionMap, evaluate
from rulemanager.rule_store import RuleStore
from rulemanager.schemas import ACCUMULATOR, Analysis, InputId
from rulemanager.state_store import StateStore
from rulemanager.utils import read_idlist_file, shuffled

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """What one pass over the input ids did."""
    accumulators: AccumulatorCompletionMap = field(default_factory=AccumulatorCompletionMap)
    outcomes: Counter = field(default_factory=Counter)
    input_ids: int = 0
    completed: bool = True

    @property
    def started(self) -> int:
        """Jobs created, submitted, run or retried this pass."""
        return sum(n for outcome, n in self.outcomes.items() if outcome.started)

    def record(self, outcome: ReconcileOutcome) -> None:
        self.outcomes[outcome] += 1


@dataclass
class RunSummary:
    passes: int = 0
    started: int = 0
    outcomes: Counter = field(default_factory=Counter)
    failed: int = 0
    stopped_by: str = ""

    def add(self, result: PassResult) -> None:
        self.passes += 1
        self.started += result.started
        self.outcomes.update(result.outcomes)


class RuleScheduler:
    """
    Drives readiness evaluation and job reconciliation over the pipeline.

    Usage:
        scheduler = RuleScheduler(store, rules, jobs, admission, channel, options, settings)
        summary = scheduler.run()
    """

    def __init__(
        self,
        store: StateStore,
        rules: RuleStore,
        jobs: JobLifecycleManager,
        admission: AdmissionController,
        channel: ControlChannel,
        options: RunOptions,
        settings: SchedulerSettings,
        timer: Optional[WakeupTimer] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._rules = rules
        self._jobs = jobs
        self._admission = admission
        self._channel = channel
        self._options = options
        self._settings = settings
        self._timer = timer or WakeupTimer(settings.wakeup)
        self._sleep = sleep or channel.wait
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._allowed: Optional[AbstractSet[Analysis]] = None
        self._start_from: frozenset[Analysis] = frozenset()
        self._accumulators_enabled = options.accumulators
        # Check timeouts on the first pass
        self._timeouts_due = True

    @property
    def accumulators_enabled(self) -> bool:
        return self._accumulators_enabled

    @property
    def allowed(self) -> Optional[AbstractSet[Analysis]]:
        return self._allowed

    def prepare(self) -> None:
        """
        Load rules and resolve the operator's filters.

        Raises:
            ConfigError: If a rule or an analysis filter is invalid
        """
        if not self._rules.loaded:
            self._rules.load()

        options = self._options
        self._allowed = self._rules.resolve_analyses(options.analyses) if options.analyses else None
        self._start_from = self._rules.resolve_analyses(options.start_from) if options.start_from else frozenset()

        if options.accumulators and options.restricts_work:
            logger.warning(
                "Accumulator analyses are disabled because this run is restricted "
                "to some analyses, input id types or input ids",
                extra={"event": "accumulators_disabled"},
            )
            self._accumulators_enabled = False
        else:
            self._accumulators_enabled = options.accumulators

    # -- input ids -----------------------------------------------------------

    def collect_input_ids(self) -> dict[str, list[InputId]]:
        """Input ids for this pass grouped by type, accumulator ids excluded."""
        if self._options.idlist_file:
            grouped = read_idlist_file(self._options.idlist_file)
        elif self._start_from:
            grouped = {}
            seen: set[InputId] = set()
            for analysis in sorted(self._start_from, key=lambda a: a.logic_name):
                for input_id in self._store.input_ids_by_analysis(analysis.logic_name):
                    if input_id not in seen:
                        seen.add(input_id)
                        grouped.setdefault(input_id.input_id_type, []).append(input_id)
        else:
            grouped = self._store.input_ids_by_type()

        types = set(self._options.input_id_types)
        return {
            input_id_type: ids
            for input_id_type, ids in grouped.items()
            if input_id_type != ACCUMULATOR and (not types or input_id_type in types)
        }

    # -- control -------------------------------------------------------------

    def _interrupted(self) -> bool:
        """Check the control channel between input ids."""
        if self._timer.due():
            self._channel.request_wakeup()
            self._timer.reset()

        if self._channel.consume_wakeup():
            self._admission.throttle()
            self._timeouts_due = True

        return self._channel.terminate_requested or self._channel.reload_requested

    # -- one pass ------------------------------------------------------------

    def _accumulator_state(self) -> AccumulatorCompletionMap:
        completed = frozenset(
            a.logic_name for a in self._store.completed_analyses(InputId.accumulator())
        )
        return AccumulatorCompletionMap(completed=completed)

    def run_pass(self) -> PassResult:
        """
        Perform one pass over every input id.

        Returns:
            PassResult; completed is False if a control message cut it short
        """
        result = PassResult(accumulators=self._accumulator_state())
        logger.info("Starting pass", extra={"event": "pass_started"})

        if self._timeouts_due:
            self._jobs.check_timeouts(self._clock())
            self._timeouts_due = False

        grouped = self.collect_input_ids()
        for input_id_type in sorted(grouped):
            input_ids = grouped[input_id_type]
            if self._options.shuffle:
                input_ids = shuffled(input_ids, self._rng)
            logger.debug(
                f"Checking {len(input_ids)} input ids of type {input_id_type}",
                extra={"event": "type_started"},
            )
            for input_id in input_ids:
                if self._interrupted():
                    result.completed = False
                    break
                self.process_input_id(input_id, result)
            if not result.completed:
                break

        if result.completed and self._accumulators_enabled:
            self.run_accumulators(result)

        self._jobs.flush()

        logger.info(
            f"Pass {'finished' if result.completed else 'interrupted'}: "
            f"{result.input_ids} input ids, {result.started} jobs started",
            extra={
                "event": "pass_finished",
                "metadata": {k.value: v for k, v in result.outcomes.items()},
            },
        )
        return result

    def process_input_id(self, input_id: InputId, result: PassResult) -> None:
        """Evaluate one input id and reconcile its ready goals."""
        result.input_ids += 1
        try:
            completed = self._store.completed_analyses(input_id)
        except TransientError as e:
            self._skip_input_id(input_id, result, e)
            # Unknown completions count as unmet so accumulators stay blocked
            completed = set()
            result.accumulators = evaluate(
                input_id, completed, result.accumulators, self._rules.rules, self._allowed
            ).accumulators
            return

        readiness = evaluate(input_id, completed, result.accumulators, self._rules.rules, self._allowed)
        result.accumulators = readiness.accumulators
        if not readiness.ready:
            return

        try:
            existing = self._store.jobs_for(input_id)
        except TransientError as e:
            self._skip_input_id(input_id, result, e)
            return

        for analysis in sorted(readiness.ready, key=lambda a: a.logic_name):
            result.record(self._jobs.reconcile(input_id, analysis, existing=existing))

    @staticmethod
    def _skip_input_id(input_id: InputId, result: PassResult, error: Exception) -> None:
        logger.error(
            f"Could not evaluate {input_id}, skipping it this pass: {error}",
            extra={"event": "input_id_error", "input_id": input_id.input_id},
        )
        result.record(ReconcileOutcome.ERROR)

    def run_accumulators(self, result: PassResult) -> None:
        """Reconcile every accumulator nothing tainted during the pass."""
        input_id = InputId.accumulator()
        existing = None
        for name, analysis in sorted(self._rules.accumulators.items()):
            if not result.accumulators.is_eligible(name):
                continue
            if not self._accumulator_conditions_met(analysis, result.accumulators):
                continue
            if existing is None:
                existing = self._store.jobs_for(input_id)
            logger.info(
                f"Accumulator {name} is ready",
                extra={"event": "accumulator_ready", "analysis": name},
            )
            result.record(self._jobs.reconcile(input_id, analysis, existing=existing, reason="accumulator"))

    def _accumulator_conditions_met(self, analysis: Analysis, accumulators: AccumulatorCompletionMap) -> bool:
        """Accumulator conditions of an accumulator rule must have run globally."""
        return all(
            accumulators.is_complete(condition.logic_name)
            for rule in self._rules.rules
            if rule.goal == analysis
            for condition in rule.conditions
            if condition.is_accumulator
        )

    # -- main loop -----------------------------------------------------------

    def reload_rules(self) -> bool:
        """
        Re-read the rules after a reload request.

        A broken rule set is logged and the previous snapshot stays in use.

        Returns:
            True if the new rules were loaded
        """
        try:
            self._rules.reload()
            self.prepare()
        except ConfigError as e:
            logger.error(
                f"Rule reload failed, keeping the previous rules: {e}",
                extra={"event": "rules_reload_failed"},
            )
            return False
        return True

    def run(self) -> RunSummary:
        """
        Run passes until terminated, or until one full pass in once mode.

        Returns:
            RunSummary of every pass
        """
        self.prepare()
        summary = RunSummary()
        try:
            while True:
                if self._channel.consume_reload():
                    self.reload_rules()

                if self._channel.terminate_requested:
                    summary.stopped_by = "terminate"
                    break

                try:
                    result = self.run_pass()
                except TransientError as e:
                    summary.failed += 1
                    logger.error(
                        f"Pass failed: {e}",
                        extra={"event": "pass_failed"},
                    )
                    if self._options.once:
                        summary.stopped_by = "error"
                        break
                    self._sleep(self._settings.rerun_sleep)
                    continue
                summary.add(result)

                if not result.completed:
                    continue
                if self._options.once:
                    summary.stopped_by = "once"
                    break
                if result.started == 0:
                    logger.info(
                        f"No jobs started, sleeping {self._settings.rerun_sleep}s",
                        extra={"event": "idle_sleep"},
                    )
                    self._sleep(self._settings.rerun_sleep)
        finally:
            self._jobs.flush()

        logger.info(
            f"Scheduler stopped ({summary.stopped_by}) after {summary.passes} passes, "
            f"{summary.started} jobs started",
            extra={"event": "scheduler_stopped"},
        )
        return summary
