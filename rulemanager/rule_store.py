"""
RuleStore - Read-only snapshot of the pipeline's rules.

The store provides:
- Loading every Rule (goal + conditions) from the StateStore
- The accumulator goals found among those rules
- Lookup of operator-supplied analysis names or ids
- Loading analysis and rule definitions from YAML (load_definitions)

A load() fully replaces the snapshot; it is never merged, so evaluation
always sees a consistent rule set.
"""

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

import yaml

from rulemanager.errors import ConfigError
from rulemanager.schemas import Analysis, Rule
from rulemanager.state_store import StateStore

logger = logging.getLogger(__name__)


class RuleStore:
    """
    Snapshot of Rules read from a StateStore.

    Usage:
        rules = RuleStore(store)
        rules.load()
        for rule in rules.rules:
            ...
    """

    def __init__(self, store: StateStore):
        self._store = store
        self._rules: tuple[Rule, ...] = ()
        self._accumulators: Mapping[str, Analysis] = MappingProxyType({})
        self._analyses: Mapping[str, Analysis] = MappingProxyType({})
        self._loaded = False

    @property
    def rules(self) -> tuple[Rule, ...]:
        """The current rule snapshot."""
        return self._rules

    @property
    def accumulators(self) -> Mapping[str, Analysis]:
        """Goal analyses of type ACCUMULATOR, keyed by logic name."""
        return self._accumulators

    @property
    def analyses(self) -> Mapping[str, Analysis]:
        """Every known analysis, keyed by logic name."""
        return self._analyses

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> list[Rule]:
        """
        Read every rule from the store and replace the snapshot.

        Returns:
            The loaded rules

        Raises:
            ConfigError: If a rule refers to an analysis that does not exist
        """
        analyses = {a.logic_name: a for a in self._store.fetch_analyses()}
        rules = self._store.fetch_rules()

        for rule in rules:
            for analysis in (rule.goal,) + rule.conditions:
                if analysis.logic_name not in analyses:
                    raise ConfigError(f"{rule} refers to unknown analysis {analysis.logic_name}")

        accumulators = {
            rule.goal.logic_name: rule.goal
            for rule in rules
            if rule.goal.is_accumulator
        }

        # Swap all three together
        self._rules = tuple(rules)
        self._accumulators = MappingProxyType(accumulators)
        self._analyses = MappingProxyType(analyses)
        self._loaded = True

        logger.debug(
            f"Loaded {len(rules)} rules ({len(accumulators)} accumulators)",
            extra={"event": "rules_loaded"},
        )
        return list(rules)

    def reload(self) -> list[Rule]:
        """Re-read rules from the store, replacing the current snapshot."""
        rules = self.load()
        logger.info(f"Reloaded {len(rules)} rules", extra={"event": "rules_reloaded"})
        return rules

    def resolve_analyses(self, names_or_ids: Iterable[str]) -> frozenset[Analysis]:
        """
        Turn logic names or numeric analysis ids into Analyses.

        Args:
            names_or_ids: Operator-supplied analysis references

        Returns:
            The matching analyses

        Raises:
            ConfigError: If a reference matches no analysis
        """
        by_id = {str(a.analysis_id): a for a in self._analyses.values()}
        resolved = set()
        for ref in names_or_ids:
            ref = str(ref).strip()
            analysis = by_id.get(ref) if ref.isdigit() else self._analyses.get(ref)
            if analysis is None:
                raise ConfigError(f"Could not find analysis {ref}")
            resolved.add(analysis)
        return frozenset(resolved)


def load_definitions(store: StateStore, path: Path) -> tuple[int, int]:
    """
    Load analyses and rules from a YAML file into the store.

    The file holds two lists:

        analyses:
          - logic_name: SubmitSlice
            input_id_type: SLICE
          - logic_name: RepeatMask
            input_id_type: SLICE
            program: repeatmask
            parameters: -species human
            timeout: 3600
            max_retries: 2
        rules:
          - goal: RepeatMask
            conditions: [SubmitSlice]

    Analyses already in the store keep their analysis_id; new ones get the
    next free id. A rule is added unless one with the same goal and
    conditions is already stored, so loading a file twice is harmless.

    Returns:
        (analyses stored, rules stored)

    Raises:
        ConfigError: If the file is unreadable or names an unknown analysis
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Rule file not found: {path}")
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {path}: {e}")
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid YAML root object in rule file: {path}")

    known = {a.logic_name: a for a in store.fetch_analyses()}
    next_id = max((a.analysis_id for a in known.values()), default=0) + 1

    stored_analyses = 0
    for entry in raw.get("analyses") or []:
        if not isinstance(entry, dict) or "logic_name" not in entry:
            raise ConfigError(f"{path}: every analysis needs a logic_name")
        data = dict(entry)
        existing = known.get(data["logic_name"])
        if "analysis_id" not in data:
            data["analysis_id"] = existing.analysis_id if existing else next_id
        try:
            analysis = Analysis.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"{path}: invalid analysis {data.get('logic_name')}: {e}")
        if analysis.analysis_id >= next_id:
            next_id = analysis.analysis_id + 1
        store.store_analysis(analysis)
        known[analysis.logic_name] = analysis
        stored_analyses += 1

    def lookup(name: str) -> Analysis:
        if name not in known:
            raise ConfigError(f"{path}: rule refers to unknown analysis {name}")
        return known[name]

    stored = store.fetch_rules()
    seen = {(r.goal.logic_name, frozenset(r.condition_names)) for r in stored}
    rule_id = max((r.rule_id for r in stored), default=0) + 1
    stored_rules = 0
    for entry in raw.get("rules") or []:
        if not isinstance(entry, dict) or "goal" not in entry:
            raise ConfigError(f"{path}: every rule needs a goal")
        conditions = entry.get("conditions") or []
        if isinstance(conditions, str):
            conditions = [conditions]
        rule = Rule(
            rule_id=rule_id,
            goal=lookup(entry["goal"]),
            conditions=tuple(lookup(c) for c in conditions),
        )
        key = (rule.goal.logic_name, frozenset(rule.condition_names))
        if key in seen:
            logger.debug(f"Rule for {rule.goal.logic_name} already stored, skipping")
            continue
        seen.add(key)
        store.store_rule(rule)
        rule_id += 1
        stored_rules += 1

    logger.info(
        f"Loaded {stored_analyses} analyses and {stored_rules} rules from {path}",
        extra={"event": "definitions_loaded"},
    )
    return stored_analyses, stored_rules
