"""Test model and the plain-data records that describe its execution.

``TestNode`` trees are built once by the builder and never mutated. The
pydantic records (``NodeInfo``, ``TestOutcome``, ``Rollup``, ``FaultInfo``)
are the only things that travel through the event stream, so they must stay
plain data.
"""

import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from suiterunner.core.markers import MatchType
from suiterunner.core.reflect import MethodRef, type_full_name


class RunState(str, Enum):
    """Scheduling disposition of a node before execution."""

    RUNNABLE = "Runnable"
    IGNORED = "Ignored"
    SKIPPED = "Skipped"
    EXPLICIT = "Explicit"
    NOT_RUNNABLE = "NotRunnable"


class ResultStatus(str, Enum):
    """Classified outcome of a test case."""

    SUCCESS = "Success"
    FAILURE = "Failure"
    ERROR = "Error"
    IGNORED = "Ignored"
    SKIPPED = "Skipped"
    NOT_RUNNABLE = "NotRunnable"

    @property
    def executed(self) -> bool:
        return self in (ResultStatus.SUCCESS, ResultStatus.FAILURE, ResultStatus.ERROR)


NOT_RUN_STATUS = {
    RunState.IGNORED: ResultStatus.IGNORED,
    RunState.SKIPPED: ResultStatus.SKIPPED,
    RunState.EXPLICIT: ResultStatus.SKIPPED,
    RunState.NOT_RUNNABLE: ResultStatus.NOT_RUNNABLE,
}


class FaultInfo(BaseModel):
    """An exception flattened to plain data."""

    model_config = ConfigDict(frozen=True)

    type_name: str
    message: str
    stack_trace: str = ""
    phase: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, phase: Optional[str] = None) -> "FaultInfo":
        return cls(
            type_name=type_full_name(type(exc)),
            message=str(exc),
            stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            phase=phase,
        )

    def describe(self) -> str:
        return f"{self.type_name} : {self.message}"


class TestOutcome(BaseModel):
    """Result of one test case. Never changed after creation."""

    __test__ = False

    model_config = ConfigDict(frozen=True)

    status: ResultStatus
    message: Optional[str] = None
    stack_trace: Optional[str] = None
    reason: Optional[str] = None
    elapsed: float = 0.0
    asserts: int = 0
    teardown_note: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.status.executed

    @property
    def is_success(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status in (ResultStatus.FAILURE, ResultStatus.ERROR)

    @classmethod
    def succeeded(cls) -> "TestOutcome":
        return cls(status=ResultStatus.SUCCESS)

    @classmethod
    def failed(cls, message: str, stack_trace: Optional[str] = None) -> "TestOutcome":
        return cls(status=ResultStatus.FAILURE, message=message, stack_trace=stack_trace)

    @classmethod
    def errored(cls, message: str, stack_trace: Optional[str] = None) -> "TestOutcome":
        return cls(status=ResultStatus.ERROR, message=message, stack_trace=stack_trace)

    @classmethod
    def ignored(cls, reason: str) -> "TestOutcome":
        return cls(status=ResultStatus.IGNORED, reason=reason)

    @classmethod
    def skipped(cls, reason: str) -> "TestOutcome":
        return cls(status=ResultStatus.SKIPPED, reason=reason)

    @classmethod
    def not_runnable(cls, reason: str) -> "TestOutcome":
        return cls(status=ResultStatus.NOT_RUNNABLE, reason=reason)

    @classmethod
    def not_run(cls, run_state: "RunState", reason: Optional[str]) -> "TestOutcome":
        """Outcome for a case that was never invoked because of its run state."""
        return cls(status=NOT_RUN_STATUS[run_state], reason=reason or "")


class Rollup(BaseModel):
    """Aggregate counts over the cases below a suite."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    run: int = 0
    passed: int = 0
    failures: int = 0
    errors: int = 0
    ignored: int = 0
    skipped: int = 0
    not_runnable: int = 0
    elapsed: float = 0.0

    @property
    def failed(self) -> int:
        return self.failures + self.errors

    @property
    def not_run(self) -> int:
        return self.ignored + self.skipped + self.not_runnable

    @property
    def is_failure(self) -> bool:
        return self.failed > 0

    def counts(self) -> dict[str, int]:
        return self.model_dump(exclude={"elapsed"})

    def __add__(self, other: "Rollup") -> "Rollup":
        merged = {key: value + getattr(other, key) for key, value in self.counts().items()}
        return Rollup(**merged, elapsed=self.elapsed + other.elapsed)

    @classmethod
    def of(cls, outcome: TestOutcome) -> "Rollup":
        status = outcome.status
        return cls(
            total=1,
            run=int(status.executed),
            passed=int(status is ResultStatus.SUCCESS),
            failures=int(status is ResultStatus.FAILURE),
            errors=int(status is ResultStatus.ERROR),
            ignored=int(status is ResultStatus.IGNORED),
            skipped=int(status is ResultStatus.SKIPPED),
            not_runnable=int(status is ResultStatus.NOT_RUNNABLE),
            elapsed=outcome.elapsed,
        )

    @classmethod
    def combine(cls, rollups: Iterable["Rollup"]) -> "Rollup":
        total = cls()
        for rollup in rollups:
            total = total + rollup
        return total


class NodeInfo(BaseModel):
    """What listeners learn about a test node."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["suite", "case"]
    name: str
    full_name: str
    parent: Optional[str] = None
    run_state: RunState = RunState.RUNNABLE
    reason: Optional[str] = None
    categories: tuple[str, ...] = ()
    properties: dict[str, str] = {}
    description: Optional[str] = None
    is_explicit: bool = False
    test_count: int = 0


@dataclass(frozen=True)
class ExpectedException:
    """Expectation declared by an ``expected_exception`` marker."""

    exception_type: Optional[type] = None
    exception_name: Optional[str] = None
    message: Optional[str] = None
    match: MatchType = MatchType.EXACT

    @property
    def display_name(self) -> str:
        if self.exception_type is not None:
            return type_full_name(self.exception_type)
        return self.exception_name or "an exception"


@dataclass(frozen=True, kw_only=True, eq=False)
class TestNode:
    """Common attributes of suites and cases."""

    __test__ = False

    name: str
    full_name: str
    parent_name: Optional[str] = None
    run_state: RunState = RunState.RUNNABLE
    reason: Optional[str] = None
    categories: frozenset[str] = frozenset()
    properties: Mapping[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    is_explicit: bool = False

    def __post_init__(self) -> None:
        if (self.run_state is RunState.RUNNABLE) != (self.reason is None):
            raise ValueError(
                f"{self.full_name}: a reason is required exactly when the node is not runnable"
            )

    @property
    def is_suite(self) -> bool:
        return False

    @property
    def is_runnable(self) -> bool:
        return self.run_state is RunState.RUNNABLE

    def test_count(self) -> int:
        return 1

    def iter_cases(self) -> Iterator["Case"]:
        return iter(())

    def describe(self) -> NodeInfo:
        return NodeInfo(
            kind="suite" if self.is_suite else "case",
            name=self.name,
            full_name=self.full_name,
            parent=self.parent_name,
            run_state=self.run_state,
            reason=self.reason,
            categories=tuple(sorted(self.categories)),
            properties={key: str(value) for key, value in self.properties.items()},
            description=self.description,
            is_explicit=self.is_explicit,
            test_count=self.test_count(),
        )


@dataclass(frozen=True, kw_only=True, eq=False)
class Case(TestNode):
    """A single test method."""

    method: MethodRef
    expected: Optional[ExpectedException] = None

    def iter_cases(self) -> Iterator["Case"]:
        yield self


@dataclass(frozen=True, kw_only=True, eq=False)
class Suite(TestNode):
    """A fixture, module or run root owning an ordered list of children."""

    children: tuple[TestNode, ...] = ()
    fixture_type: Optional[type] = None
    factory: Optional[Callable[[], Any]] = None
    setup: Optional[MethodRef] = None
    teardown: Optional[MethodRef] = None
    fixture_setup: Optional[MethodRef] = None
    fixture_teardown: Optional[MethodRef] = None

    @property
    def is_suite(self) -> bool:
        return True

    def test_count(self) -> int:
        return sum(child.test_count() for child in self.children)

    def iter_cases(self) -> Iterator[Case]:
        for child in self.children:
            yield from child.iter_cases()

    def find(self, full_name: str) -> Optional[TestNode]:
        """Find a node by full name in this subtree."""
        if self.full_name == full_name:
            return self
        for child in self.children:
            if child.full_name == full_name:
                return child
            if isinstance(child, Suite):
                found = child.find(full_name)
                if found is not None:
                    return found
        return None
