"""Exceptions raised by SuiteRunner itself.

Assertion failures and unexpected faults inside test code are not raised out
of the runner; they are classified into outcomes. The classes here cover the
runner's own failure modes.
"""

# What test code may raise without ending the run; KeyboardInterrupt still does
TEST_FAULTS = (Exception, SystemExit)


class SuiteRunnerError(Exception):
    """Base class for all SuiteRunner errors."""

    pass


class DiscoveryError(SuiteRunnerError):
    """Raised when a code unit cannot be turned into a test model."""

    pass


class AmbiguousLifecycleMethod(DiscoveryError):
    """Raised when a fixture declares more than one method for a lifecycle role."""

    def __init__(self, fixture_name: str, role: str, methods: list[str]):
        self.fixture_name = fixture_name
        self.role = role
        self.methods = methods
        super().__init__(
            f"{fixture_name} has more than one {role} method: {', '.join(methods)}"
        )


class FixtureSetupError(SuiteRunnerError):
    """Raised when a fixture cannot be instantiated or its fixture setup fails."""

    def __init__(self, fixture_name: str, cause: BaseException, instance: object = None):
        self.fixture_name = fixture_name
        self.cause = cause
        self.instance = instance
        super().__init__(f"Fixture setup failed for {fixture_name}: {cause}")


class BoundaryFault(SuiteRunnerError):
    """Raised when the isolation context itself fails."""

    pass


class ReportError(SuiteRunnerError):
    """Raised when the result document cannot be produced or written."""

    pass
