"""
Readiness evaluation - which goal analyses an input id may run next.

evaluate() is a pure function: it reads one input id, the analyses already
completed for it and the rule snapshot, and returns the ready goals plus
an updated AccumulatorCompletionMap. Nothing here touches storage.

Accumulator taint:
    An accumulator goal represents "all upstream work of this type is done".
    A single input id that fails an accumulator rule's conditions marks the
    accumulator incomplete for the rest of the pass. The map is rebuilt at
    the start of every pass and is never reset between input id types
    within a pass.
"""

from dataclasses import dataclass, field
from typing import AbstractSet, Iterable, Optional

from rulemanager.schemas import Analysis, InputId, Rule


@dataclass(frozen=True)
class AccumulatorCompletionMap:
    """
    Per-pass accumulator bookkeeping.

    Attributes:
        completed: Accumulator logic names already run (persisted)
        incomplete: Accumulator logic names tainted during this pass
    """
    completed: frozenset[str] = frozenset()
    incomplete: frozenset[str] = frozenset()

    def taint(self, *logic_names: str) -> "AccumulatorCompletionMap":
        """Return a copy with the given accumulators marked incomplete."""
        new = self.incomplete.union(logic_names)
        if new == self.incomplete:
            return self
        return AccumulatorCompletionMap(completed=self.completed, incomplete=frozenset(new))

    def is_complete(self, logic_name: str) -> bool:
        return logic_name in self.completed

    def is_eligible(self, logic_name: str) -> bool:
        """An accumulator may run only if it is neither tainted nor already done."""
        return logic_name not in self.incomplete and logic_name not in self.completed


@dataclass(frozen=True)
class ReadinessResult:
    """Ready goals for one input id and the updated accumulator map."""
    ready: frozenset[Analysis]
    accumulators: AccumulatorCompletionMap
    tainted: frozenset[str] = field(default_factory=frozenset)


def conditions_met(rule: Rule, completed_names: AbstractSet[str], accumulators: AccumulatorCompletionMap) -> bool:
    """
    Check every condition of a rule.

    A condition of type ACCUMULATOR is met when that accumulator has run
    globally; any other condition is met when it is recorded complete
    for the input id.
    """
    for condition in rule.conditions:
        if condition.is_accumulator:
            if not accumulators.is_complete(condition.logic_name):
                return False
        elif condition.logic_name not in completed_names:
            return False
    return True


def evaluate(
    input_id: InputId,
    completed: Iterable[Analysis],
    accumulators: AccumulatorCompletionMap,
    rules: Iterable[Rule],
    allowed: Optional[AbstractSet[Analysis]] = None,
) -> ReadinessResult:
    """
    Determine which goals are newly satisfied for an input id.

    Args:
        input_id: The input id being evaluated
        completed: Analyses already completed for the input id
        accumulators: Accumulator state accumulated so far this pass
        rules: The rule snapshot
        allowed: Optional allow-list of goal analyses; rules whose goal is
            not in it are skipped

    Returns:
        ReadinessResult with the ready goals (never accumulators) and the
        accumulator map with any new taints applied
    """
    completed_names = {a.logic_name for a in completed}
    ready: set[Analysis] = set()
    tainted: set[str] = set()

    for rule in rules:
        goal = rule.goal
        feeds_accumulator = goal.is_accumulator and rule.has_condition_of_input_id_type(input_id.input_id_type)

        if allowed is not None and goal not in allowed:
            # Excluded goals can never be satisfied this run
            if feeds_accumulator:
                tainted.add(goal.logic_name)
            continue

        if not goal.is_accumulator and goal.input_id_type != input_id.input_id_type:
            continue

        if conditions_met(rule, completed_names, accumulators):
            if not goal.is_accumulator and goal.logic_name not in completed_names:
                ready.add(goal)
        elif feeds_accumulator:
            tainted.add(goal.logic_name)

    return ReadinessResult(
        ready=frozenset(ready),
        accumulators=accumulators.taint(*tainted),
        tainted=frozenset(tainted),
    )
