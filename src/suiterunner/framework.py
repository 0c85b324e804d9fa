"""Markers, assertions and exceptions used by test authors.

Example:
    from suiterunner import framework as sr

    @sr.fixture
    class CalculatorFixture:
        @sr.setup
        def make_calculator(self):
            self.calc = Calculator()

        @sr.test
        @sr.category("fast")
        def adds(self, context):
            context.asserts.are_equal(3, self.calc.add(1, 2))

        @sr.test
        @sr.expected_exception(ZeroDivisionError)
        def divides_by_zero(self):
            self.calc.divide(1, 0)
"""

import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar, Union

from suiterunner.core import markers
from suiterunner.core.markers import MarkerInstance, MatchType

T = TypeVar("T")


class AssertionException(AssertionError):
    """Raised when an assertion made through :class:`Assertions` fails."""

    pass


class IgnoreException(Exception):
    """Raised from a running test to report it as ignored."""

    pass


def _attach(target: T, marker: MarkerInstance) -> T:
    # Decorators apply bottom-up; prepend so the stored order is top-down.
    existing = list(vars(target).get(markers.MARKERS_ATTR, ()))
    existing.insert(0, marker)
    setattr(target, markers.MARKERS_ATTR, tuple(existing))
    return target


def _marker(name: str, /, **params: Any) -> MarkerInstance:
    return MarkerInstance.create(name, **{k: v for k, v in params.items() if v is not None})


def fixture(cls: Optional[type] = None, *, description: Optional[str] = None):
    """Mark a class as a test fixture."""

    def decorate(target: type) -> type:
        return _attach(target, _marker(markers.FIXTURE, description=description))

    if cls is not None:
        return decorate(cls)
    return decorate


def test(func: Optional[Callable] = None, *, description: Optional[str] = None):
    """Mark a method as a test case."""

    def decorate(target: Callable) -> Callable:
        return _attach(target, _marker(markers.TEST, description=description))

    if func is not None:
        return decorate(func)
    return decorate


# Keep pytest from treating the decorator as a test function.
test.__test__ = False


def setup(func: Callable) -> Callable:
    """Run this method before each test in the fixture."""
    return _attach(func, _marker(markers.SETUP))


def teardown(func: Callable) -> Callable:
    """Run this method after each test in the fixture."""
    return _attach(func, _marker(markers.TEARDOWN))


def fixture_setup(func: Callable) -> Callable:
    """Run this method once before any test in the fixture."""
    return _attach(func, _marker(markers.FIXTURE_SETUP))


def fixture_teardown(func: Callable) -> Callable:
    """Run this method once after all tests in the fixture."""
    return _attach(func, _marker(markers.FIXTURE_TEARDOWN))


def ignore(reason: str):
    """Exclude a test, fixture or module from execution, reporting it as ignored."""
    if not isinstance(reason, str):
        raise TypeError("ignore() requires a reason string")

    def decorate(target: T) -> T:
        return _attach(target, _marker(markers.IGNORE, reason=reason))

    return decorate


def explicit(target: Any = None, *, reason: Optional[str] = None):
    """Only run this test or fixture when it is selected explicitly."""

    def decorate(obj: T) -> T:
        return _attach(obj, _marker(markers.EXPLICIT, reason=reason))

    if target is not None:
        return decorate(target)
    return decorate


def platform(
    include: Optional[str] = None,
    exclude: Optional[str] = None,
    reason: Optional[str] = None,
):
    """Restrict a test to the given comma-separated platforms."""

    def decorate(target: T) -> T:
        return _attach(
            target,
            _marker(markers.PLATFORM, include=include, exclude=exclude, reason=reason),
        )

    return decorate


def category(*names: str):
    """Tag a test or fixture with one or more categories."""

    def decorate(target: T) -> T:
        for name in reversed(names):
            _attach(target, _marker(markers.CATEGORY, name=name))
        return target

    return decorate


def property_(name: str, value: Any):
    """Attach a named property to a test or fixture."""

    def decorate(target: T) -> T:
        return _attach(target, MarkerInstance.create(markers.PROPERTY, name=name, value=value))

    return decorate


def expected_exception(
    expected: Union[type, str],
    message: Optional[str] = None,
    match: Union[MatchType, str] = MatchType.EXACT,
):
    """Declare that a test passes only if it raises the given exception.

    Args:
        expected: Exception class, or its fully qualified name
        message: Optional expected message
        match: How ``message`` is compared with the raised message
    """
    if isinstance(expected, str):
        params = {"exception_name": expected}
    else:
        params = {"exception_type": expected}

    def decorate(func: Callable) -> Callable:
        return _attach(
            func,
            _marker(
                markers.EXPECTED_EXCEPTION,
                message=message,
                match=MatchType(match),
                **params,
            ),
        )

    return decorate


def mark_module(module_name: str, *decorators: Callable[[Any], Any]) -> None:
    """Apply module-level markers, e.g. ``mark_module(__name__, ignore("wip"))``."""
    module = sys.modules[module_name]
    for decorate in reversed(decorators):
        decorate(module)


class AssertCounter:
    """Counts assertions made during one run."""

    def __init__(self) -> None:
        self.count = 0

    def increment(self) -> None:
        self.count += 1


class Assertions:
    """Assertion helpers bound to a run's :class:`AssertCounter`."""

    def __init__(self, counter: Optional[AssertCounter] = None):
        self.counter = counter or AssertCounter()

    def _check(self, condition: bool, detail: str, message: Optional[str]) -> None:
        self.counter.increment()
        if not condition:
            raise AssertionException(f"{message}\n{detail}" if message else detail)

    def are_equal(self, expected: Any, actual: Any, message: Optional[str] = None) -> None:
        self._check(expected == actual, f"expected {expected!r} but was {actual!r}", message)

    def are_not_equal(self, expected: Any, actual: Any, message: Optional[str] = None) -> None:
        self._check(expected != actual, f"expected not {expected!r} but was {actual!r}", message)

    def is_true(self, condition: Any, message: Optional[str] = None) -> None:
        self._check(bool(condition), "expected True but was False", message)

    def is_false(self, condition: Any, message: Optional[str] = None) -> None:
        self._check(not condition, "expected False but was True", message)

    def is_none(self, value: Any, message: Optional[str] = None) -> None:
        self._check(value is None, f"expected None but was {value!r}", message)

    def is_not_none(self, value: Any, message: Optional[str] = None) -> None:
        self._check(value is not None, "expected a value but was None", message)

    def contains(self, item: Any, collection: Any, message: Optional[str] = None) -> None:
        self._check(item in collection, f"expected {collection!r} to contain {item!r}", message)

    def raises(self, exc_type: type, func: Callable, *args: Any, **kwargs: Any) -> BaseException:
        """Call ``func`` and return the exception of ``exc_type`` it raises."""
        self.counter.increment()
        try:
            func(*args, **kwargs)
        except exc_type as exc:
            return exc
        except Exception as exc:
            raise AssertionException(
                f"expected {exc_type.__name__} but was {type(exc).__name__}: {exc}"
            ) from exc
        raise AssertionException(f"expected {exc_type.__name__} but no exception was thrown")

    def fail(self, message: str) -> None:
        self.counter.increment()
        raise AssertionException(message)

    def ignore(self, reason: str) -> None:
        raise IgnoreException(reason)


@dataclass
class RunContext:
    """Handle passed to test methods that declare a ``context`` parameter."""

    asserts: Assertions
    test_name: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
