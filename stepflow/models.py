"""
Data model for test cases, steps and results.

Values inside args, options and variables are plain Python values
(str, int, float, bool, list, dict, bytes); conversion between them happens
explicitly in stepflow.variables.substitution.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class StepStatus(str, Enum):
    """Terminal status of a step, test case or suite entry."""
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


BACKOFF_STRATEGIES = ("fixed", "linear", "exponential")

EXPECT_ERROR_TYPES = (
    "any", "contains", "not_contains", "exact",
    "starts_with", "ends_with", "matches", "not_matches",
)

# Actions that mutate persistent state and never share a parallel group.
DEFAULT_UNSAFE_ACTIONS = frozenset({"template", "postgres", "kafka", "rabbitmq", "spanner"})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration attached to a step.

    Attributes:
        attempts: Total number of calls, including the first one
        delay: Base delay between attempts in seconds
        backoff: fixed, linear or exponential
        max_delay: Upper bound for the computed delay (0 = no cap)
        jitter: Randomize the delay by +/-10%
        conditions: Retry triggers (error classes, substrings, status classes)
    """
    attempts: int = 1
    delay: float = 1.0
    backoff: str = "fixed"
    max_delay: float = 0.0
    jitter: bool = False
    conditions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExpectErrorSpec:
    """Expected error: how to match (`type`) and what to match against."""
    type: str = "any"
    message: str = ""

    @classmethod
    def from_value(cls, value: Union[str, Dict[str, Any], "ExpectErrorSpec"]) -> "ExpectErrorSpec":
        """
        Build a spec from the shorthand string or mapping form.

        A bare "any" expects any error; any other string is a `contains` match.
        """
        if isinstance(value, ExpectErrorSpec):
            return value
        if isinstance(value, str):
            if value == "any":
                return cls(type="any")
            return cls(type="contains", message=value)
        if isinstance(value, dict):
            return cls(type=str(value.get("type", "any")), message=str(value.get("message", "")))
        raise ValueError(f"expect_error must be a string or mapping, got {type(value).__name__}")


@dataclass
class ConditionalBlock:
    """if/else block."""
    condition: str
    then: List["Step"] = field(default_factory=list)
    else_: List["Step"] = field(default_factory=list)


@dataclass
class LoopBlock:
    """Body and condition shared by for and while loops."""
    condition: str
    steps: List["Step"] = field(default_factory=list)
    max_iterations: int = 0


@dataclass
class Step:
    """One unit of work: an action call or a control-flow block."""
    name: str = ""
    action: str = ""
    args: List[Any] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    result: Optional[str] = None
    skip: Optional[Union[bool, str]] = None
    continue_on_failure: bool = False
    retry: Optional[RetryPolicy] = None
    expect_error: Optional[ExpectErrorSpec] = None
    if_block: Optional[ConditionalBlock] = None
    for_block: Optional[LoopBlock] = None
    while_block: Optional[LoopBlock] = None

    def __post_init__(self):
        blocks = [b for b in (self.if_block, self.for_block, self.while_block) if b is not None]
        if len(blocks) > 1:
            raise ValueError(f"Step '{self.name}' sets more than one of if/for/while")

    @property
    def has_control_block(self) -> bool:
        return self.if_block is not None or self.for_block is not None or self.while_block is not None

    @property
    def label(self) -> str:
        """Display label: the name, falling back to the action."""
        if self.name:
            return self.name
        if self.if_block is not None:
            return "if"
        if self.for_block is not None:
            return "for"
        if self.while_block is not None:
            return "while"
        return self.action


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step execution; immutable once created."""
    step: Step
    status: StepStatus
    output: str = ""
    error: str = ""
    duration: float = 0.0
    timestamp: datetime = field(default_factory=_now)
    attempts: int = 0

    @property
    def passed(self) -> bool:
        return self.status == StepStatus.PASSED

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status == StepStatus.SKIPPED

    def to_history_entry(self) -> Dict[str, Any]:
        """Entry appended to the reserved step-history variable."""
        return {
            "name": self.step.label,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Secret:
    """Secret definition: inline value or file path."""
    name: str
    value: Optional[str] = None
    file: Optional[str] = None
    mask_output: bool = True


@dataclass
class ParallelConfig:
    """Parallel step (or suite) execution settings."""
    enabled: bool = False
    max_concurrency: int = field(default_factory=lambda: min(os.cpu_count() or 1, 100))
    group_timeout: float = 0.0
    unsafe_actions: frozenset = DEFAULT_UNSAFE_ACTIONS


@dataclass
class TestCase:
    """A named list of steps with its variables and secrets."""
    __test__ = False

    name: str
    steps: List[Step] = field(default_factory=list)
    description: str = ""
    variables: Dict[str, Any] = field(default_factory=dict)
    secrets: List[Secret] = field(default_factory=list)
    skip: Optional[Union[bool, str]] = None
    parallel: Optional[ParallelConfig] = None
    timeout: float = 0.0


@dataclass
class TestResult:
    """Aggregated outcome of a test case run."""
    __test__ = False

    test_case: TestCase
    status: StepStatus
    step_results: List[StepResult] = field(default_factory=list)
    duration: float = 0.0
    error: str = ""

    @property
    def total_steps(self) -> int:
        return len(self.step_results)

    @property
    def passed_steps(self) -> int:
        return sum(1 for r in self.step_results if r.status == StepStatus.PASSED)

    @property
    def failed_steps(self) -> int:
        return sum(1 for r in self.step_results if r.status == StepStatus.FAILED)

    @property
    def skipped_steps(self) -> int:
        return sum(1 for r in self.step_results if r.status == StepStatus.SKIPPED)


@dataclass
class TestSuite:
    """Test cases run together with shared variables, setup and teardown."""
    __test__ = False

    name: str
    test_cases: List[TestCase] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    secrets: List[Secret] = field(default_factory=list)
    setup: List[Step] = field(default_factory=list)
    teardown: List[Step] = field(default_factory=list)
    fail_fast: bool = False
    parallel: Optional[ParallelConfig] = None


@dataclass
class TestCaseOutcome:
    """Result entry of one test case inside a suite run."""
    __test__ = False

    test_case: TestCase
    status: StepStatus
    result: Optional[TestResult] = None
    error: str = ""


@dataclass
class SuiteResult:
    """Aggregated outcome of a suite run."""
    suite: TestSuite
    case_results: List[TestCaseOutcome] = field(default_factory=list)
    setup_result: Optional[TestResult] = None
    teardown_result: Optional[TestResult] = None
    duration: float = 0.0

    @property
    def status(self) -> StepStatus:
        if self.setup_result is not None and self.setup_result.status == StepStatus.FAILED:
            return StepStatus.FAILED
        statuses = [c.status for c in self.case_results]
        if any(s == StepStatus.FAILED for s in statuses):
            return StepStatus.FAILED
        if statuses and all(s == StepStatus.SKIPPED for s in statuses):
            return StepStatus.SKIPPED
        return StepStatus.PASSED
