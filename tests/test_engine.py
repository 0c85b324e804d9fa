"""Tests for the execution engine."""

import pytest

from suiterunner.core.classify import FIXTURE_SETUP_PHASE, FIXTURE_TEARDOWN_PHASE
from suiterunner.core.filters import CategoryFilter, SelectionFilter
from suiterunner.core.model import ResultStatus


def _status(run, name):
    return run.outcome(name).status


class TestBasicRun:
    """Tests for a plain pass, fail and ignore run."""

    def test_rollup(self, run_sample):
        """Test the counts of the basic sample."""
        run = run_sample("sample_basic")
        assert run.rollup.total == 3
        assert run.rollup.run == 2
        assert run.rollup.passed == 1
        assert run.rollup.failures == 1
        assert run.rollup.ignored == 1

    def test_outcomes(self, run_sample):
        """Test each case's outcome."""
        run = run_sample("sample_basic")
        prefix = "sample_basic.BasicFixture."
        assert _status(run, prefix + "passes") is ResultStatus.SUCCESS
        assert run.outcome(prefix + "fails").message == "expected 1 but was 2"
        flaky = run.outcome(prefix + "flaky")
        assert flaky.status is ResultStatus.IGNORED
        assert flaky.reason == "flaky"

    def test_event_order(self, run_sample):
        """Test the order of the event stream."""
        run = run_sample("sample_basic")
        kinds = [event.handler for event in run.events.events]
        assert kinds == [
            "run_started",
            "suite_started",
            "suite_started",
            "test_started",
            "test_finished",
            "test_started",
            "test_finished",
            "test_started",
            "test_finished",
            "suite_finished",
            "suite_finished",
            "run_finished",
        ]
        assert run.started() == [
            "sample_basic.BasicFixture.passes",
            "sample_basic.BasicFixture.fails",
            "sample_basic.BasicFixture.flaky",
        ]

    def test_run_started_count(self, run_sample):
        """Test that the announced test count matches the cases reported."""
        run = run_sample("sample_basic")
        assert run.events.of_kind("run_started")[0].test_count == 3

    def test_started_finished_pairs(self, run_sample):
        """Test one start and one finish per case in the built tree."""
        for name in ("sample_basic", "sample_structure", "sample_lifecycle", "sample_broken"):
            run = run_sample(name)
            assert len(run.events.of_kind("test_started")) == run.root.test_count()
            assert len(run.events.of_kind("test_finished")) == run.root.test_count()
            assert run.tree.leaf_count() == run.root.test_count()

    def test_elapsed_and_asserts(self, run_sample):
        """Test timing and assertion counts on outcomes."""
        run = run_sample("sample_outcomes")
        counted = run.outcome("sample_outcomes.OutcomeFixture.counts_asserts")
        assert counted.asserts == 3
        assert counted.elapsed >= 0
        assert run.outcome("sample_outcomes.OutcomeFixture.passes").asserts == 0


class TestOutcomes:
    """Tests for classification during a run."""

    def test_each_kind(self, run_sample):
        """Test errors, assertion failures, self-ignores and successes."""
        run = run_sample("sample_outcomes")
        prefix = "sample_outcomes.OutcomeFixture."

        errors = run.outcome(prefix + "errors")
        assert errors.status is ResultStatus.ERROR
        assert errors.message == "ValueError : bad value"

        plain = run.outcome(prefix + "plain_assert")
        assert plain.status is ResultStatus.FAILURE
        assert plain.message == "numbers differ"

        ignored = run.outcome(prefix + "ignores_itself")
        assert ignored.status is ResultStatus.IGNORED
        assert ignored.reason == "not today"

        assert _status(run, prefix + "passes") is ResultStatus.SUCCESS

    def test_expected_exceptions(self, run_sample):
        """Test expected exception handling end to end."""
        run = run_sample("sample_expected")
        prefix = "sample_expected.ExpectedFixture."
        expectations = {
            "raises_exact": ResultStatus.SUCCESS,
            "raises_subtype": ResultStatus.FAILURE,
            "raises_unrelated": ResultStatus.FAILURE,
            "raises_nothing": ResultStatus.FAILURE,
            "raises_by_name": ResultStatus.SUCCESS,
            "builtin_by_name": ResultStatus.SUCCESS,
            "message_contains": ResultStatus.SUCCESS,
            "message_mismatch": ResultStatus.FAILURE,
            "message_regex": ResultStatus.SUCCESS,
            "assertion_instead": ResultStatus.FAILURE,
        }
        for name, status in expectations.items():
            assert _status(run, prefix + name) is status, name
        assert run.outcome(prefix + "assertion_instead").message == "expected 1 but was 2"
        assert run.outcome(prefix + "raises_nothing").message == (
            "Expected exception ValueError was not thrown"
        )


class TestLifecycle:
    """Tests for setup and teardown handling."""

    def test_hook_order(self, run_sample, lifecycle_calls):
        """Test that hooks wrap each test and the fixture."""
        run_sample("sample_lifecycle", selection=SelectionFilter(["sample_lifecycle.LifecycleFixture"]))
        assert lifecycle_calls == [
            "fixture_setup",
            "setup",
            "first",
            "teardown",
            "setup",
            "second",
            "teardown",
            "fixture_teardown",
        ]

    def test_fixture_setup_failure(self, run_sample, lifecycle_calls):
        """Test that every case under a failed fixture setup errors without running."""
        run = run_sample("sample_lifecycle")
        fixture = "sample_lifecycle.BrokenSetupFixture"
        cases = [f"{fixture}.one", f"{fixture}.two", f"{fixture}.three", f"{fixture}.Inner.nested"]

        for name in cases:
            outcome = run.outcome(name)
            assert outcome.status is ResultStatus.ERROR
            assert outcome.message == (
                f"TestFixtureSetUp failed in {fixture} : RuntimeError : database unavailable"
            )
        assert not {"one", "two", "three", "nested"} & set(lifecycle_calls)
        assert lifecycle_calls.count("broken_fixture_teardown") == 1

        node = run.tree.find(fixture)
        assert node.fault.phase == FIXTURE_SETUP_PHASE
        assert node.status is ResultStatus.ERROR

    def test_setup_failure(self, run_sample, lifecycle_calls):
        """Test that a failed setup skips the body but still tears down."""
        run = run_sample("sample_lifecycle")
        outcome = run.outcome("sample_lifecycle.SetupFailureFixture.never_runs")
        assert outcome.status is ResultStatus.ERROR
        assert outcome.message == "SetUp : KeyError : 'missing'"
        assert "never_runs" not in lifecycle_calls
        assert "setup_failure_teardown" in lifecycle_calls

    def test_teardown_failure(self, run_sample):
        """Test teardown failures after a pass and after a failure."""
        run = run_sample("sample_lifecycle")
        prefix = "sample_lifecycle.TeardownFailureFixture."

        passes = run.outcome(prefix + "passes")
        assert passes.status is ResultStatus.ERROR
        assert passes.message == "TearDown : OSError : cleanup failed"

        fails = run.outcome(prefix + "fails")
        assert fails.status is ResultStatus.FAILURE
        assert fails.message == "first problem"
        assert fails.teardown_note == "TearDown : OSError : cleanup failed"

    def test_fixture_teardown_failure(self, run_sample):
        """Test that a failed fixture teardown is reported but changes no outcome."""
        run = run_sample("sample_lifecycle")
        fixture = "sample_lifecycle.FixtureTeardownFailureFixture"

        assert _status(run, f"{fixture}.passes") is ResultStatus.SUCCESS
        unhandled = run.events.of_kind("unhandled_exception")
        assert [event.test_name for event in unhandled] == [fixture]
        assert unhandled[0].fault.phase == FIXTURE_TEARDOWN_PHASE
        assert unhandled[0].fault.message == "close failed"

        finished = [e for e in run.events.of_kind("suite_finished") if e.suite.full_name == fixture]
        assert finished[0].fault.phase == FIXTURE_TEARDOWN_PHASE

    def test_context_parameter(self, run_sample):
        """Test that methods asking for a context receive one."""
        run = run_sample("sample_lifecycle")
        outcome = run.outcome("sample_lifecycle.ContextFixture.sees_context")
        assert outcome.status is ResultStatus.SUCCESS
        assert outcome.asserts == 3


class TestRunStates:
    """Tests for ignored, explicit, skipped and not-runnable nodes."""

    def test_structure_outcomes(self, run_sample, structure_ran):
        """Test which tests run and how the rest are reported."""
        run = run_sample("sample_structure")
        prefix = "sample_structure.OuterFixture."

        assert _status(run, prefix + "top") is ResultStatus.SUCCESS
        explicit = run.outcome(prefix + "explicit_test")
        assert explicit.status is ResultStatus.SKIPPED
        assert explicit.reason == "Needs a database"
        assert run.outcome(prefix + "platform_only").reason == "Only supported on no-such-os"
        assert _status(run, prefix + "runs_everywhere") is ResultStatus.SUCCESS
        assert _status(run, prefix + "Nested.inner") is ResultStatus.SUCCESS
        assert structure_ran == ["top", "runs_everywhere", "inner", "own_test"]

    def test_ignored_fixture(self, run_sample, structure_ran):
        """Test that an ignored fixture reports every descendant as ignored."""
        run = run_sample("sample_structure")
        for name in ("sample_structure.IgnoredFixture.a", "sample_structure.IgnoredFixture.Deeper.b"):
            outcome = run.outcome(name)
            assert outcome.status is ResultStatus.IGNORED
            assert outcome.reason == "whole fixture parked"
        assert "ignored.a" not in structure_ran

    def test_run_explicit(self, run_sample, structure_ran):
        """Test that explicit tests run when asked to."""
        run = run_sample("sample_structure", run_explicit=True)
        assert _status(run, "sample_structure.OuterFixture.explicit_test") is ResultStatus.SUCCESS
        assert "explicit_test" in structure_ran
        assert "ignored_and_explicit" in structure_ran

    def test_selected_explicit(self, run_sample, structure_ran):
        """Test that naming an explicit test runs it."""
        name = "sample_structure.OuterFixture.explicit_test"
        run = run_sample("sample_structure", selection=SelectionFilter([name]))
        assert _status(run, name) is ResultStatus.SUCCESS
        assert structure_ran == ["explicit_test"]
        assert run.started() == [name]

    def test_module_ignored(self, run_sample):
        """Test a module-level ignore."""
        run = run_sample("sample_module_ignored")
        assert run.rollup.ignored == 2
        assert run.outcome("sample_module_ignored.ParkedFixture.one").reason == "module parked"

    def test_not_runnable(self, run_sample):
        """Test that malformed fixtures and tests are reported, and siblings still run."""
        run = run_sample("sample_broken")

        assert _status(run, "sample_broken.GoodSibling.works") is ResultStatus.SUCCESS
        assert _status(run, "sample_broken.BadTests.fine") is ResultStatus.SUCCESS
        assert _status(run, "sample_broken.BadTests.needs_argument") is ResultStatus.NOT_RUNNABLE
        assert _status(run, "sample_broken.BadTests.misplaced_marker") is ResultStatus.NOT_RUNNABLE

        ambiguous = run.tree.find("sample_broken.AmbiguousFixture")
        assert ambiguous.status is ResultStatus.NOT_RUNNABLE
        assert "more than one setup method" in ambiguous.display_reason

    def test_not_runnable_fixture_counts_its_cases(self, run_sample):
        """Test that the cases of a fixture that cannot run are reported as not runnable."""
        run = run_sample("sample_broken")
        name = "sample_broken.AmbiguousFixture.t"

        assert name in run.started()
        outcome = run.outcome(name)
        assert outcome.status is ResultStatus.NOT_RUNNABLE
        assert "more than one setup method" in outcome.reason
        assert run.rollup.not_runnable == 3
        assert run.rollup.total == 5

    def test_explicit_fixture_run(self, run_sample):
        """Test that an explicit fixture chosen for the run is reported as run."""
        run = run_sample("sample_explicit", run_explicit=True)
        staging = run.tree.find("sample_explicit.StagingFixture")

        assert staging.status is ResultStatus.FAILURE
        assert staging.executed
        assert staging.display_reason is None
        assert _status(run, "sample_explicit.StagingFixture.healthy") is ResultStatus.FAILURE

    def test_explicit_fixture_not_chosen(self, run_sample):
        """Test that an explicit fixture left out of the run keeps its reason."""
        run = run_sample("sample_explicit")
        staging = run.tree.find("sample_explicit.StagingFixture")

        assert staging.status is ResultStatus.SKIPPED
        assert staging.display_reason == "Talks to staging"
        assert not staging.executed


class TestFiltering:
    """Tests for category and selection filtering."""

    def test_category_slow(self, run_sample):
        """Test running only the slow category."""
        run = run_sample("sample_categories", category_filter=CategoryFilter(["slow"]))
        assert run.started() == [
            "sample_categories.CategoryFixture.slow_test",
            "sample_categories.SlowFixture.inherits_category",
        ]
        assert run.rollup.total == 2
        assert run.events.of_kind("run_started")[0].test_count == 2
        assert run.tree.find("sample_categories.CategoryFixture.fast_test") is None
        assert run.tree.find("sample_categories.CategoryFixture.untagged_test") is None
        assert run.tree.find("sample_categories.FastFixture") is None

    def test_category_union(self, run_sample):
        """Test that several categories select the union of their tests."""
        run = run_sample("sample_categories", category_filter=CategoryFilter(["smoke", "slow"]))
        assert run.rollup.total == 3

    def test_emit_empty_suites(self, run_sample):
        """Test reporting suites the filters left empty."""
        run = run_sample(
            "sample_categories",
            emit_empty_suites=True,
            category_filter=CategoryFilter(["slow"]),
        )
        fast = run.tree.find("sample_categories.FastFixture")
        assert fast is not None
        assert fast.children == []
        assert fast.rollup.total == 0
        assert run.rollup.total == 2

    def test_selection(self, run_sample):
        """Test running a single named test."""
        name = "sample_categories.CategoryFixture.fast_test"
        run = run_sample("sample_categories", selection=SelectionFilter([name]))
        assert run.started() == [name]


class TestEngineErrors:
    """Tests for failures outside test code."""

    def test_listener_errors_propagate(self, build_sample):
        """Test that a listener raising aborts the engine run."""
        from suiterunner.core.engine import ExecutionEngine
        from suiterunner.core.events import EventListener

        class Exploding(EventListener):
            def test_started(self, event):
                raise RuntimeError("listener broke")

        with pytest.raises(RuntimeError, match="listener broke"):
            ExecutionEngine().run(build_sample("sample_basic"), Exploding())


class TestProcessExit:
    """Tests for test code that calls sys.exit."""

    def test_exit_in_test_body(self, run_sample, exit_ran):
        """Test that an exiting test errors and its sibling still runs."""
        run = run_sample("sample_exit", selection=SelectionFilter(["sample_exit.ExitFixture"]))

        exits = run.outcome("sample_exit.ExitFixture.exits")
        assert exits.status is ResultStatus.ERROR
        assert exits.message == "SystemExit : 3"
        assert _status(run, "sample_exit.ExitFixture.after") is ResultStatus.SUCCESS
        assert exit_ran == ["exits", "after"]
        assert run.events.events[-1].handler == "run_finished"

    def test_exit_in_fixture_setup(self, run_sample, exit_ran):
        """Test that an exiting fixture setup is a fixture setup failure."""
        run = run_sample("sample_exit")
        fixture = "sample_exit.ExitingSetupFixture"

        for name in ("one", "two"):
            outcome = run.outcome(f"{fixture}.{name}")
            assert outcome.status is ResultStatus.ERROR
            assert outcome.message == (
                f"TestFixtureSetUp failed in {fixture} : SystemExit : no database"
            )
        assert "one" not in exit_ran
        assert exit_ran.count("close") == 1
        assert run.tree.find(fixture).fault.phase == FIXTURE_SETUP_PHASE


class TestAssertCounter:
    """Tests for the per-run assertion counter."""

    def test_fixture_hooks_count(self, build_sample):
        """Test that assertions in fixture hooks count towards the run."""
        from suiterunner.core.engine import ExecutionEngine
        from suiterunner.core.events import RecordingListener
        from suiterunner.framework import AssertCounter

        counter = AssertCounter()
        events = RecordingListener()
        ExecutionEngine().run(
            build_sample("sample_explicit"),
            events,
            selection=SelectionFilter(["sample_explicit.CheckedHooksFixture"]),
            counter=counter,
        )

        [finished] = events.of_kind("test_finished")
        assert finished.outcome.asserts == 1
        assert counter.count == 4
