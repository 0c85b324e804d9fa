"""Building the result tree from the event stream."""

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

import structlog

from suiterunner.core.classify import FIXTURE_SETUP_PHASE, run_aborted
from suiterunner.core.events import (
    EventListener,
    RunFinished,
    RunStarted,
    SuiteFinished,
    SuiteStarted,
    TestFinished,
    TestStarted,
    UnhandledException,
)
from suiterunner.core.model import (
    NOT_RUN_STATUS,
    FaultInfo,
    NodeInfo,
    ResultStatus,
    Rollup,
    RunState,
    TestOutcome,
)

log = structlog.get_logger("suiterunner.aggregator")


@dataclass
class ResultNode:
    """Result of one suite or case, shaped like the test model it came from."""

    kind: str
    name: str
    full_name: str
    parent: Optional[str] = None
    run_state: RunState = RunState.RUNNABLE
    reason: Optional[str] = None
    categories: tuple[str, ...] = ()
    properties: dict[str, str] = field(default_factory=dict)
    description: Optional[str] = None
    outcome: Optional[TestOutcome] = None
    rollup: Rollup = field(default_factory=Rollup)
    fault: Optional[FaultInfo] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    finished: bool = False
    children: list["ResultNode"] = field(default_factory=list)

    @classmethod
    def from_info(cls, info: NodeInfo) -> "ResultNode":
        return cls(
            kind=info.kind,
            name=info.name,
            full_name=info.full_name,
            parent=info.parent,
            run_state=info.run_state,
            reason=info.reason,
            categories=info.categories,
            properties=dict(info.properties),
            description=info.description,
        )

    def update(self, info: NodeInfo) -> None:
        self.run_state = info.run_state
        self.reason = info.reason
        self.categories = info.categories
        self.properties = dict(info.properties)
        self.description = info.description

    @property
    def is_suite(self) -> bool:
        return self.kind == "suite"

    @property
    def elapsed(self) -> float:
        if self.outcome is not None:
            return self.outcome.elapsed
        return self.rollup.elapsed

    @property
    def asserts(self) -> int:
        if self.outcome is not None:
            return self.outcome.asserts
        return sum(child.asserts for child in self.children)

    @property
    def status(self) -> ResultStatus:
        """Outcome status of a case, or the status summarizing a suite."""
        if self.outcome is not None:
            return self.outcome.status
        if self.is_suite:
            if self.fault is not None and self.fault.phase == FIXTURE_SETUP_PHASE:
                return ResultStatus.ERROR
            if self.run_state is not RunState.RUNNABLE and not self.rollup.run:
                return NOT_RUN_STATUS[self.run_state]
            if self.rollup.is_failure:
                return ResultStatus.FAILURE
            if self.rollup.total and not self.rollup.run:
                return ResultStatus.IGNORED if self.rollup.ignored else ResultStatus.SKIPPED
        return ResultStatus.SUCCESS

    @property
    def executed(self) -> bool:
        if self.outcome is not None:
            return self.outcome.executed
        return self.rollup.run > 0

    @property
    def message(self) -> Optional[str]:
        if self.outcome is not None:
            return self.outcome.message
        if self.fault is not None:
            return self.fault.describe()
        return None

    @property
    def display_reason(self) -> Optional[str]:
        if self.outcome is not None and self.outcome.reason:
            return self.outcome.reason
        return self.reason

    @property
    def stack_trace(self) -> Optional[str]:
        if self.outcome is not None:
            return self.outcome.stack_trace
        if self.fault is not None:
            return self.fault.stack_trace
        return None

    def iter_cases(self) -> Iterator["ResultNode"]:
        if not self.is_suite:
            yield self
            return
        for child in self.children:
            yield from child.iter_cases()

    def leaf_count(self) -> int:
        return sum(1 for _ in self.iter_cases())

    def recompute(self) -> Rollup:
        """Recompute this suite's rollup from its children and store it."""
        if not self.is_suite:
            return Rollup.of(self.outcome) if self.outcome is not None else Rollup()
        self.rollup = Rollup.combine(child.recompute() for child in self.children)
        return self.rollup

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "name": self.name,
            "full_name": self.full_name,
            "status": self.status.value,
            "executed": self.executed,
            "elapsed": self.elapsed,
            "asserts": self.asserts,
            "reason": self.display_reason,
            "message": self.message,
            "categories": list(self.categories),
            "properties": dict(self.properties),
        }
        if self.is_suite:
            data["rollup"] = self.rollup.model_dump()
            data["children"] = [child.to_dict() for child in self.children]
        return data


@dataclass
class ResultTree:
    """Everything known about a run once its events have been consumed."""

    name: str = ""
    root: Optional[ResultNode] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    fatal: Optional[FaultInfo] = None
    unhandled: list[UnhandledException] = field(default_factory=list)

    @property
    def rollup(self) -> Rollup:
        return self.root.rollup if self.root is not None else Rollup()

    @property
    def is_fatal(self) -> bool:
        return self.fatal is not None

    @property
    def is_failure(self) -> bool:
        return self.rollup.is_failure

    def find(self, full_name: str) -> Optional[ResultNode]:
        if self.root is None:
            return None
        for node in _walk(self.root):
            if node.full_name == full_name:
                return node
        return None

    def leaf_count(self) -> int:
        return self.root.leaf_count() if self.root is not None else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "fatal": self.fatal.model_dump() if self.fatal else None,
            "rollup": self.rollup.model_dump(),
            "root": self.root.to_dict() if self.root is not None else None,
        }


def _walk(node: ResultNode) -> Iterator[ResultNode]:
    yield node
    for child in node.children:
        yield from _walk(child)


class ResultAggregator(EventListener):
    """Listener that assembles a :class:`ResultTree`.

    Nodes are keyed by full name, so an event delivered twice replaces the
    earlier data instead of being counted again.
    """

    def __init__(self) -> None:
        self.tree = ResultTree()
        self._nodes: dict[str, ResultNode] = {}

    def _upsert(self, info: NodeInfo, timestamp: float) -> ResultNode:
        node = self._nodes.get(info.full_name)
        if node is not None:
            node.update(info)
            return node

        node = ResultNode.from_info(info)
        node.started_at = timestamp
        self._nodes[info.full_name] = node

        parent = self._nodes.get(info.parent) if info.parent else None
        if parent is not None:
            parent.children.append(node)
        elif self.tree.root is None:
            self.tree.root = node
        else:
            log.warning("Result without a known parent", node=info.full_name, parent=info.parent)
            self.tree.root.children.append(node)
        return node

    def run_started(self, event: RunStarted) -> None:
        self.tree.name = event.name
        self.tree.started_at = event.timestamp

    def suite_started(self, event: SuiteStarted) -> None:
        self._upsert(event.suite, event.timestamp)

    def test_started(self, event: TestStarted) -> None:
        self._upsert(event.test, event.timestamp)

    def test_finished(self, event: TestFinished) -> None:
        node = self._upsert(event.test, event.timestamp)
        node.outcome = event.outcome
        node.ended_at = event.timestamp
        node.finished = True

    def suite_finished(self, event: SuiteFinished) -> None:
        node = self._upsert(event.suite, event.timestamp)
        node.recompute()
        if event.fault is not None and node.fault is None:
            node.fault = event.fault
        node.ended_at = event.timestamp
        node.finished = True

    def unhandled_exception(self, event: UnhandledException) -> None:
        self.tree.unhandled.append(event)
        if event.test_name:
            node = self._nodes.get(event.test_name)
            if node is not None and node.is_suite and node.fault is None:
                node.fault = event.fault

    def run_finished(self, event: RunFinished) -> None:
        self.tree.finished_at = event.timestamp
        if not self.tree.name and event.fatal is None and self.tree.root is not None:
            self.tree.name = self.tree.root.full_name
        if event.is_fatal:
            self.tree.fatal = event.fatal
            self.flush(event.timestamp)

    def flush(self, timestamp: Optional[float] = None) -> None:
        """Close every case and suite left open by an aborted run."""
        if self.tree.root is None:
            return
        aborted = 0
        for node in _walk(self.tree.root):
            if node.is_suite or node.finished:
                continue
            node.outcome = run_aborted()
            node.ended_at = timestamp
            node.finished = True
            aborted += 1

        for node in reversed(list(_walk(self.tree.root))):
            if node.is_suite and not node.finished:
                node.recompute()
                node.ended_at = timestamp
                node.finished = True

        if aborted:
            log.warning("Closed unfinished tests after an aborted run", aborted=aborted)
