"""Tests for the readiness evaluator.

Tests cover:
- Ready goals for an input id
- Goals of other input id types and goals already complete
- Accumulator conditions and accumulator taint
- Allow-list filtering
"""

import pytest

from rulemanager.readiness import AccumulatorCompletionMap, conditions_met, evaluate
from rulemanager.schemas import ACCUMULATOR, Analysis, InputId, Rule

SUBMIT = Analysis(1, "SubmitSlice", "SLICE")
REPEATMASK = Analysis(2, "RepeatMask", "SLICE")
GENSCAN = Analysis(3, "Genscan", "SLICE")
DUMP = Analysis(4, "GenscanDump", ACCUMULATOR)
CONTIG_BLAST = Analysis(5, "ContigBlast", "CONTIG")
POST_DUMP = Analysis(6, "PostDump", "SLICE")

RULES = (
    Rule(1, REPEATMASK, (SUBMIT,)),
    Rule(2, GENSCAN, (REPEATMASK,)),
    Rule(3, DUMP, (GENSCAN,)),
    Rule(4, CONTIG_BLAST, (SUBMIT,)),
    Rule(5, POST_DUMP, (GENSCAN, DUMP)),
)


def slice_id(n: int = 1) -> InputId:
    return InputId(f"chr1.{n}-100000", "SLICE")


class TestAccumulatorCompletionMap:
    """Tests for AccumulatorCompletionMap."""

    def test_taint_returns_new_map(self):
        """taint() never mutates the original map."""
        original = AccumulatorCompletionMap()
        tainted = original.taint("GenscanDump")
        assert "GenscanDump" in tainted.incomplete
        assert original.incomplete == frozenset()

    def test_taint_without_change_returns_same(self):
        """Tainting an already tainted name returns the same map."""
        tainted = AccumulatorCompletionMap().taint("GenscanDump")
        assert tainted.taint("GenscanDump") is tainted

    def test_eligibility(self):
        """Eligible means neither tainted nor already completed."""
        acc = AccumulatorCompletionMap(completed=frozenset({"Done"}))
        assert acc.is_eligible("GenscanDump")
        assert not acc.is_eligible("Done")
        assert not acc.taint("GenscanDump").is_eligible("GenscanDump")


class TestConditions:
    """Tests for conditions_met."""

    def test_all_conditions_complete(self):
        """A rule is met when every condition is complete for the input id."""
        assert conditions_met(RULES[1], {"RepeatMask"}, AccumulatorCompletionMap())

    def test_missing_condition(self):
        """A missing condition fails the rule."""
        assert not conditions_met(RULES[1], {"SubmitSlice"}, AccumulatorCompletionMap())

    def test_accumulator_condition_uses_global_flag(self):
        """Accumulator conditions are checked against the global completed set."""
        rule = RULES[4]
        assert not conditions_met(rule, {"Genscan"}, AccumulatorCompletionMap())
        assert conditions_met(rule, {"Genscan"}, AccumulatorCompletionMap(completed=frozenset({"GenscanDump"})))


class TestEvaluate:
    """Tests for evaluate()."""

    def test_repeatmask_done_makes_genscan_ready(self):
        """Example: RepeatMask complete -> Genscan ready."""
        result = evaluate(slice_id(), {SUBMIT, REPEATMASK}, AccumulatorCompletionMap(), RULES)
        assert result.ready == frozenset({GENSCAN})

    def test_completed_goal_not_ready(self):
        """A goal already recorded complete is not ready again."""
        result = evaluate(slice_id(), {SUBMIT, REPEATMASK, GENSCAN}, AccumulatorCompletionMap(), RULES)
        assert GENSCAN not in result.ready
        assert REPEATMASK not in result.ready

    def test_other_type_goal_not_ready(self):
        """A CONTIG goal is never ready for a SLICE input id."""
        result = evaluate(slice_id(), {SUBMIT}, AccumulatorCompletionMap(), RULES)
        assert result.ready == frozenset({REPEATMASK})

    def test_accumulator_never_in_ready_set(self):
        """Accumulators are run at the end of a pass, not per input id."""
        result = evaluate(slice_id(), {SUBMIT, REPEATMASK, GENSCAN}, AccumulatorCompletionMap(), RULES)
        assert DUMP not in result.ready
        assert result.tainted == frozenset()

    def test_unmet_accumulator_rule_taints(self):
        """An input id missing Genscan taints GenscanDump."""
        result = evaluate(slice_id(), {SUBMIT, REPEATMASK}, AccumulatorCompletionMap(), RULES)
        assert result.tainted == frozenset({"GenscanDump"})
        assert not result.accumulators.is_eligible("GenscanDump")

    def test_accumulator_condition_blocks_goal(self):
        """PostDump waits for the GenscanDump accumulator."""
        done = {SUBMIT, REPEATMASK, GENSCAN}
        assert POST_DUMP not in evaluate(slice_id(), done, AccumulatorCompletionMap(), RULES).ready
        acc = AccumulatorCompletionMap(completed=frozenset({"GenscanDump"}))
        assert POST_DUMP in evaluate(slice_id(), done, acc, RULES).ready

    def test_taint_only_for_matching_type(self):
        """A CONTIG input id does not taint a SLICE-fed accumulator."""
        contig = InputId("ctg1", "CONTIG")
        result = evaluate(contig, set(), AccumulatorCompletionMap(), RULES)
        assert result.tainted == frozenset()

    def test_taint_carries_across_calls(self):
        """Taint persists through the map passed between input ids."""
        acc = evaluate(slice_id(1), {SUBMIT}, AccumulatorCompletionMap(), RULES).accumulators
        acc = evaluate(slice_id(2), {SUBMIT, REPEATMASK, GENSCAN}, acc, RULES).accumulators
        assert "GenscanDump" in acc.incomplete


class TestAccumulatorTaintScenario:
    """Three input ids of one type feeding one accumulator."""

    def run_pass(self, completions):
        acc = AccumulatorCompletionMap()
        for n, done in enumerate(completions, start=1):
            acc = evaluate(slice_id(n), done, acc, RULES).accumulators
        return acc

    def test_one_failure_blocks_accumulator(self):
        """If any one input id fails its condition, the accumulator may not run."""
        full = {SUBMIT, REPEATMASK, GENSCAN}
        acc = self.run_pass([full, {SUBMIT, REPEATMASK}, full])
        assert not acc.is_eligible("GenscanDump")

    def test_all_satisfied_makes_accumulator_eligible(self):
        """If all three satisfy the rule, the accumulator becomes eligible."""
        full = {SUBMIT, REPEATMASK, GENSCAN}
        acc = self.run_pass([full, full, full])
        assert acc.is_eligible("GenscanDump")


class TestAllowList:
    """Tests for the operator allow-list."""

    def test_excluded_goal_not_ready(self):
        """Goals outside the allow-list are skipped."""
        result = evaluate(slice_id(), {SUBMIT, REPEATMASK}, AccumulatorCompletionMap(), RULES, allowed={REPEATMASK})
        assert result.ready == frozenset()

    def test_excluded_accumulator_is_tainted(self):
        """An excluded accumulator fed by this type can never run this pass."""
        done = {SUBMIT, REPEATMASK, GENSCAN}
        result = evaluate(slice_id(), done, AccumulatorCompletionMap(), RULES, allowed={GENSCAN})
        assert "GenscanDump" in result.tainted

    @pytest.mark.parametrize("allowed", [None, {REPEATMASK, GENSCAN}])
    def test_allowed_goal_still_ready(self, allowed):
        """Allowed goals are evaluated normally."""
        result = evaluate(slice_id(), {SUBMIT, REPEATMASK}, AccumulatorCompletionMap(), RULES, allowed=allowed)
        assert GENSCAN in result.ready
