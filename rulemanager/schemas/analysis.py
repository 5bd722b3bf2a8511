"""
Analysis and rule schemas - the static half of the pipeline.

Analysis describes a kind of work (one program run against one input id).
Rule links a goal Analysis to the condition Analyses that must have
completed for an input id before the goal may run.
InputId is the unit of data an Analysis operates on.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

# Sentinel input id type for goals that fire once globally
ACCUMULATOR = "ACCUMULATOR"


@dataclass(frozen=True)
class Analysis:
    """
    An immutable descriptor of a kind of work.

    Attributes:
        analysis_id: Database identifier
        logic_name: Unique human-readable name (e.g. "RepeatMask")
        input_id_type: Type tag of the input ids this analysis runs on,
            or ACCUMULATOR for goals that run once globally
        module: Opaque reference to the code that implements the analysis
        program: Executable the Analysis Runner launches
        parameters: Opaque parameter string handed to the program
        timeout: Seconds a job may stay in flight before it is killed
        max_retries: Execution retries before a job becomes FATAL
    """
    analysis_id: int
    logic_name: str
    input_id_type: str
    module: Optional[str] = None
    program: Optional[str] = None
    parameters: str = ""
    timeout: Optional[int] = None
    max_retries: Optional[int] = None

    def __post_init__(self):
        if not self.logic_name:
            raise ValueError("Analysis logic_name is required")
        if not self.input_id_type:
            raise ValueError(f"Analysis {self.logic_name}: input_id_type is required")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Analysis {self.logic_name}: timeout must be positive")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"Analysis {self.logic_name}: max_retries must be >= 0")

    @property
    def is_accumulator(self) -> bool:
        return self.input_id_type == ACCUMULATOR

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "analysis_id": self.analysis_id,
            "logic_name": self.logic_name,
            "input_id_type": self.input_id_type,
            "module": self.module,
            "program": self.program,
            "parameters": self.parameters,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Analysis":
        """Deserialize from dictionary."""
        return cls(
            analysis_id=int(data["analysis_id"]),
            logic_name=data["logic_name"],
            input_id_type=data["input_id_type"],
            module=data.get("module"),
            program=data.get("program"),
            parameters=data.get("parameters") or "",
            timeout=data.get("timeout"),
            max_retries=data.get("max_retries"),
        )


@dataclass(frozen=True)
class InputId:
    """A unit of work context: an identifier string and its type tag."""
    input_id: str
    input_id_type: str

    def __str__(self) -> str:
        return self.input_id

    @classmethod
    def accumulator(cls) -> "InputId":
        """The single global input id accumulator goals run against."""
        return cls(ACCUMULATOR, ACCUMULATOR)

    @property
    def is_accumulator(self) -> bool:
        return self.input_id_type == ACCUMULATOR


@dataclass(frozen=True)
class Rule:
    """
    A dependency statement: the goal requires every condition to be complete.

    Attributes:
        rule_id: Database identifier
        goal: The Analysis this rule makes runnable
        conditions: Analyses that must be complete first
    """
    rule_id: int
    goal: Analysis
    conditions: tuple[Analysis, ...] = field(default_factory=tuple)

    def has_condition_of_input_id_type(self, input_id_type: str) -> bool:
        """True if any condition runs on input ids of the given type."""
        return any(c.input_id_type == input_id_type for c in self.conditions)

    @property
    def condition_names(self) -> tuple[str, ...]:
        return tuple(c.logic_name for c in self.conditions)

    def __str__(self) -> str:
        conds = ", ".join(self.condition_names) or "-"
        return f"Rule {self.rule_id}: {self.goal.logic_name} <- [{conds}]"
