"""Execution of a test model.

The engine walks the suite tree depth-first, runs lifecycle hooks and test
methods, classifies what happens and reports it to a listener. Events for a
node's children are emitted strictly in declaration order.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

import structlog

from suiterunner.core.builder import CONTEXT_PARAMETER
from suiterunner.core.classify import (
    FIXTURE_SETUP_PHASE,
    FIXTURE_TEARDOWN_PHASE,
    classify_outcome,
    classify_setup_failure,
    fixture_setup_failed,
    with_teardown_failure,
)
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
from suiterunner.core.filters import CategoryFilter, SelectionFilter
from suiterunner.core.model import (
    Case,
    FaultInfo,
    NodeInfo,
    Rollup,
    RunState,
    Suite,
    TestNode,
    TestOutcome,
)
from suiterunner.core.reflect import MethodRef, ModuleReflector, Reflector
from suiterunner.exceptions import TEST_FAULTS, FixtureSetupError
from suiterunner.framework import AssertCounter, Assertions, RunContext

log = structlog.get_logger("suiterunner.engine")


@dataclass
class _Walk:
    """State of one run, owned by the engine."""

    listener: EventListener
    categories: CategoryFilter
    selection: SelectionFilter
    run_explicit: bool
    counter: AssertCounter = field(default_factory=AssertCounter)


@dataclass(frozen=True)
class _Child:
    node: TestNode
    included: bool
    category_matched: bool
    selected: bool


class ExecutionEngine:
    """Runs suites and cases, reporting progress as events."""

    def __init__(self, reflector: Optional[Reflector] = None, emit_empty_suites: bool = False):
        """Initialize the engine.

        Args:
            reflector: Introspection capability used to invoke methods
            emit_empty_suites: Report suites left without matching tests by the
                filters as started and finished, with no children
        """
        self.reflector = reflector or ModuleReflector()
        self.emit_empty_suites = emit_empty_suites

    def run(
        self,
        root: Suite,
        listener: EventListener,
        category_filter: Optional[CategoryFilter] = None,
        selection: Optional[SelectionFilter] = None,
        run_explicit: bool = False,
        counter: Optional[AssertCounter] = None,
    ) -> Rollup:
        """Run every selected test below ``root``.

        Args:
            root: Root of the test model
            listener: Receives the event stream
            category_filter: Only run tests in these categories
            selection: Only run these fixtures/tests (by full name)
            run_explicit: Also run tests marked explicit
            counter: Counts every assertion of the run, including those made
                in fixture hooks; a new one is used if not given

        Returns:
            Rollup for the whole run
        """
        walk = _Walk(
            listener=listener,
            categories=category_filter or CategoryFilter(),
            selection=selection or SelectionFilter(),
            run_explicit=run_explicit,
            counter=counter or AssertCounter(),
        )
        run_log = log.bind(root=root.full_name)
        run_log.info("Starting run", categories=sorted(walk.categories.categories))

        listener.run_started(
            RunStarted(
                name=root.full_name,
                test_count=self._count(root, walk),
                root=root.describe(),
            )
        )
        rollup = self._run_suite(root, walk, category_matched=False, selected=False)
        listener.run_finished(RunFinished(rollup=rollup))

        run_log.info(
            "Run finished",
            total=rollup.total,
            passed=rollup.passed,
            failed=rollup.failed,
            not_run=rollup.not_run,
            asserts=walk.counter.count,
        )
        return rollup

    def _children(self, suite: Suite, walk: _Walk, category_matched: bool, selected: bool) -> Iterator[_Child]:
        for child in suite.children:
            yield _Child(
                node=child,
                included=walk.categories.passes(child, category_matched)
                and walk.selection.passes(child, selected),
                category_matched=category_matched
                or (not walk.categories.is_empty and walk.categories.matches(child)),
                selected=selected or walk.selection.selects(child),
            )

    def _count(self, node: TestNode, walk: _Walk, category_matched: bool = False, selected: bool = False) -> int:
        if not isinstance(node, Suite):
            return 1
        return sum(
            self._count(child.node, walk, child.category_matched, child.selected)
            for child in self._children(node, walk, category_matched, selected)
            if child.included
        )

    def _effective_state(self, node: TestNode, walk: _Walk) -> RunState:
        if node.run_state is RunState.EXPLICIT and (walk.run_explicit or walk.selection.selects(node)):
            return RunState.RUNNABLE
        return node.run_state

    @staticmethod
    def _describe(node: TestNode, state: RunState) -> NodeInfo:
        """Describe a node; an explicit node chosen for this run is reported as runnable."""
        info = node.describe()
        if state is RunState.RUNNABLE and info.run_state is not RunState.RUNNABLE:
            info = info.model_copy(update={"run_state": state, "reason": None})
        return info

    def _run_suite(self, suite: Suite, walk: _Walk, category_matched: bool, selected: bool) -> Rollup:
        state = self._effective_state(suite, walk)
        info = self._describe(suite, state)
        walk.listener.suite_started(SuiteStarted(suite=info))

        if state is not RunState.RUNNABLE:
            log.debug("Suite not run", suite=suite.full_name, run_state=state.value)
            rollup = self._report_not_run(
                suite, walk, TestOutcome.not_run(state, suite.reason), category_matched, selected
            )
            walk.listener.suite_finished(SuiteFinished(suite=info, rollup=rollup))
            return rollup

        fault: Optional[FaultInfo] = None
        try:
            instance = self._enter_fixture(suite, walk)
        except FixtureSetupError as e:
            instance = e.instance
            fault = FaultInfo.from_exception(e.cause, phase=FIXTURE_SETUP_PHASE)
            log.warning("Fixture setup failed", fixture=suite.full_name, error=fault.describe())

        if fault is not None:
            rollup = self._report_not_run(
                suite, walk, fixture_setup_failed(suite.full_name, fault), category_matched, selected
            )
        else:
            rollup = self._run_children(suite, instance, walk, category_matched, selected)

        teardown_fault = self._leave_fixture(suite, instance, walk)
        walk.listener.suite_finished(
            SuiteFinished(suite=info, rollup=rollup, fault=fault or teardown_fault)
        )
        return rollup

    def _run_children(
        self, suite: Suite, instance: Any, walk: _Walk, category_matched: bool, selected: bool
    ) -> Rollup:
        rollups: list[Rollup] = []
        for child in self._children(suite, walk, category_matched, selected):
            if not child.included:
                self._skip_filtered(child.node, walk)
                continue
            if isinstance(child.node, Suite):
                rollups.append(self._run_suite(child.node, walk, child.category_matched, child.selected))
            elif isinstance(child.node, Case):
                outcome = self._run_case(child.node, suite, instance, walk)
                rollups.append(Rollup.of(outcome))
        return Rollup.combine(rollups)

    def _report_not_run(
        self,
        suite: Suite,
        walk: _Walk,
        outcome: TestOutcome,
        category_matched: bool,
        selected: bool,
    ) -> Rollup:
        """Report every selected case below ``suite`` with ``outcome``, running nothing."""
        rollups: list[Rollup] = []
        for child in self._children(suite, walk, category_matched, selected):
            if not child.included:
                self._skip_filtered(child.node, walk)
                continue
            node = child.node
            if isinstance(node, Suite):
                info = node.describe()
                walk.listener.suite_started(SuiteStarted(suite=info))
                rollup = self._report_not_run(node, walk, outcome, child.category_matched, child.selected)
                walk.listener.suite_finished(SuiteFinished(suite=info, rollup=rollup))
                rollups.append(rollup)
            else:
                info = node.describe()
                walk.listener.test_started(TestStarted(test=info))
                walk.listener.test_finished(TestFinished(test=info, outcome=outcome))
                rollups.append(Rollup.of(outcome))
        return Rollup.combine(rollups)

    def _skip_filtered(self, node: TestNode, walk: _Walk) -> None:
        if self.emit_empty_suites and isinstance(node, Suite):
            info = node.describe()
            walk.listener.suite_started(SuiteStarted(suite=info))
            walk.listener.suite_finished(SuiteFinished(suite=info, rollup=Rollup()))

    def _run_case(self, case: Case, suite: Suite, instance: Any, walk: _Walk) -> TestOutcome:
        state = self._effective_state(case, walk)
        info = self._describe(case, state)
        walk.listener.test_started(TestStarted(test=info))

        if state is not RunState.RUNNABLE:
            outcome = TestOutcome.not_run(state, case.reason)
        else:
            outcome = self._execute(case, suite, instance, walk)

        log.debug("Test finished", test=case.full_name, status=outcome.status.value)
        walk.listener.test_finished(TestFinished(test=info, outcome=outcome))
        return outcome

    def _execute(self, case: Case, suite: Suite, instance: Any, walk: _Walk) -> TestOutcome:
        """Run setup, the test method and teardown; teardown runs once setup was entered."""
        context = RunContext(
            asserts=Assertions(walk.counter),
            test_name=case.full_name,
            properties=dict(case.properties),
        )
        asserts_before = walk.counter.count
        started = time.perf_counter()

        try:
            self._invoke(suite.setup, instance, context)
        except TEST_FAULTS as exc:
            outcome = classify_setup_failure(exc)
        else:
            try:
                self._invoke(case.method, instance, context)
            except TEST_FAULTS as exc:
                outcome = classify_outcome(exc, case.expected)
            else:
                outcome = classify_outcome(None, case.expected)

        try:
            self._invoke(suite.teardown, instance, context)
        except TEST_FAULTS as exc:
            outcome = with_teardown_failure(outcome, exc)

        return outcome.model_copy(
            update={
                "elapsed": time.perf_counter() - started,
                "asserts": walk.counter.count - asserts_before,
            }
        )

    def _enter_fixture(self, suite: Suite, walk: _Walk) -> Any:
        """Create the fixture instance and run its fixture setup."""
        if suite.factory is None:
            return None
        try:
            instance = suite.factory()
        except TEST_FAULTS as exc:
            raise FixtureSetupError(suite.full_name, exc) from exc

        try:
            self._invoke(
                suite.fixture_setup,
                instance,
                RunContext(asserts=Assertions(walk.counter), test_name=suite.full_name),
            )
        except TEST_FAULTS as exc:
            raise FixtureSetupError(suite.full_name, exc, instance=instance) from exc
        return instance

    def _leave_fixture(self, suite: Suite, instance: Any, walk: _Walk) -> Optional[FaultInfo]:
        """Run fixture teardown; a failure is reported but changes no case outcome."""
        if instance is None or suite.fixture_teardown is None:
            return None
        try:
            self._invoke(
                suite.fixture_teardown,
                instance,
                RunContext(asserts=Assertions(walk.counter), test_name=suite.full_name),
            )
        except TEST_FAULTS as exc:
            fault = FaultInfo.from_exception(exc, phase=FIXTURE_TEARDOWN_PHASE)
            log.warning("Fixture teardown failed", fixture=suite.full_name, error=fault.describe())
            walk.listener.unhandled_exception(UnhandledException(fault=fault, test_name=suite.full_name))
            return fault
        return None

    def _invoke(self, method: Optional[MethodRef], instance: Any, context: RunContext) -> None:
        if method is None:
            return
        kwargs = {}
        if CONTEXT_PARAMETER in self.reflector.parameters(method):
            kwargs[CONTEXT_PARAMETER] = context
        self.reflector.invoke(method, instance, kwargs=kwargs)
