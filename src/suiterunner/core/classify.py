"""Turning exceptions raised by test code into outcomes."""

import re
import traceback
from typing import Optional

from suiterunner.core.model import ExpectedException, FaultInfo, TestOutcome
from suiterunner.core.reflect import type_full_name
from suiterunner.framework import IgnoreException

RUN_ABORTED_MESSAGE = "Test run aborted: the test host terminated before the test finished"

FIXTURE_SETUP_PHASE = "fixture-setup"
FIXTURE_TEARDOWN_PHASE = "fixture-teardown"


def is_assertion_failure(exc: BaseException) -> bool:
    """Assertion failures are ``AssertionError`` and its subclasses."""
    return isinstance(exc, AssertionError)


def stack_excerpt(exc: BaseException) -> str:
    return "".join(traceback.format_tb(exc.__traceback__))


def classify_fault(exc: BaseException, prefix: str = "") -> TestOutcome:
    """Classify an exception that no expectation covers."""
    if is_assertion_failure(exc):
        return TestOutcome.failed(f"{prefix}{exc}", stack_excerpt(exc))
    return TestOutcome.errored(
        f"{prefix}{type_full_name(type(exc))} : {exc}", stack_excerpt(exc)
    )


def classify_outcome(
    exc: Optional[BaseException],
    expected: Optional[ExpectedException] = None,
) -> TestOutcome:
    """Classify the result of running a test body.

    Args:
        exc: Exception raised by the body, or None if it returned normally
        expected: Expectation declared on the test, if any

    Returns:
        The outcome, without timing or assertion count
    """
    if isinstance(exc, IgnoreException):
        return TestOutcome.ignored(str(exc))

    if expected is None:
        if exc is None:
            return TestOutcome.succeeded()
        return classify_fault(exc)

    if exc is None:
        return TestOutcome.failed(f"Expected exception {expected.display_name} was not thrown")

    return _match_expected(exc, expected)


def _name_matches(name: str, cls: type) -> bool:
    return name in (type_full_name(cls), f"{cls.__module__}.{cls.__qualname__}")


def _match_expected(exc: BaseException, expected: ExpectedException) -> TestOutcome:
    actual = type(exc)
    if expected.exception_type is not None:
        type_matches = actual is expected.exception_type
        expects_assertion = issubclass(expected.exception_type, AssertionError)
    else:
        type_matches = _name_matches(expected.exception_name or "", actual)
        expects_assertion = False

    if not type_matches:
        if is_assertion_failure(exc) and not expects_assertion:
            return classify_fault(exc)
        return TestOutcome.failed(
            f"Expected exception {expected.display_name} but was "
            f"{type_full_name(actual)} : {exc}",
            stack_excerpt(exc),
        )

    if expected.message is not None:
        try:
            message_matches = expected.match.matches(expected.message, str(exc))
        except re.error as e:
            return TestOutcome.errored(f"Invalid expected message pattern {expected.message!r}: {e}")
        if not message_matches:
            return TestOutcome.failed(
                "The exception message text was incorrect\n"
                f"Expected {expected.match.phrase}: {expected.message}\n"
                f"But was: {exc}",
                stack_excerpt(exc),
            )

    return TestOutcome.succeeded()


def with_teardown_failure(outcome: TestOutcome, exc: BaseException) -> TestOutcome:
    """Fold a teardown exception into an already classified outcome."""
    note = f"TearDown : {type_full_name(type(exc))} : {exc}"
    if outcome.is_success:
        return TestOutcome.errored(note, stack_excerpt(exc)).model_copy(
            update={"asserts": outcome.asserts}
        )
    return outcome.model_copy(update={"teardown_note": note})


def fixture_setup_failed(fixture_name: str, fault: FaultInfo) -> TestOutcome:
    """Outcome given to every case under a fixture whose setup failed."""
    return TestOutcome.errored(
        f"TestFixtureSetUp failed in {fixture_name} : {fault.describe()}",
        fault.stack_trace,
    )


def run_aborted() -> TestOutcome:
    return TestOutcome.errored(RUN_ABORTED_MESSAGE)


def classify_setup_failure(exc: BaseException) -> TestOutcome:
    """Classify an exception raised by a fixture's per-test setup method."""
    if isinstance(exc, IgnoreException):
        return TestOutcome.ignored(str(exc))
    return classify_fault(exc, prefix="SetUp : ")
