"""Test run orchestration."""

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog

from suiterunner.config import SuiteRunnerConfig
from suiterunner.core.events import EventBroadcaster, EventListener
from suiterunner.core.isolation import InlineBoundary, IsolationBoundary, ProcessBoundary, RunRequest
from suiterunner.exceptions import ReportError
from suiterunner.report.aggregator import ResultAggregator, ResultTree
from suiterunner.report.serializer import ReportSerializer

log = structlog.get_logger("suiterunner.runner")


class RunStatus(IntEnum):
    """Overall result of a run, doubling as the process exit code."""

    PASSED = 0
    FAILURES = 1
    FATAL = 2
    NO_REPORT = 3

    @property
    def exit_code(self) -> int:
        return int(self)


@dataclass
class RunReport:
    """What a run produced."""

    tree: ResultTree
    status: RunStatus
    document: Optional[str] = None
    path: Optional[Path] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.name,
            "exit_code": self.status.exit_code,
            "path": str(self.path) if self.path else None,
            "error": self.error,
            "tree": self.tree.to_dict(),
        }


class TestRunner:
    """Runs the configured code units and produces the result document."""

    __test__ = False

    def __init__(
        self,
        config: SuiteRunnerConfig,
        base_dir: Optional[Path] = None,
        listeners: Iterable[EventListener] = (),
    ):
        """Initialize the test runner.

        Args:
            config: SuiteRunner configuration
            base_dir: Directory relative paths in the config are resolved against
            listeners: Extra listeners receiving the live event stream
        """
        self.config = config
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.listeners = list(listeners)
        self.serializer = ReportSerializer()

    def make_request(self) -> RunRequest:
        """Build the plain-data request handed to the isolation boundary."""
        return RunRequest(
            units=self.config.resolve_units(self.base_dir),
            fixtures=list(self.config.discovery.fixtures),
            categories=list(self.config.run.categories),
            run_explicit=self.config.run.run_explicit,
            emit_empty_suites=self.config.run.emit_empty_suites,
            name=self.config.project.name,
            log_level=self.config.logging.level,
            json_logs=self.config.logging.json_logs,
        )

    def make_boundary(self) -> IsolationBoundary:
        if self.config.run.isolation == "process":
            return ProcessBoundary(timeout=self.config.run.timeout_seconds)
        return InlineBoundary()

    def run(self, write_report: bool = True) -> RunReport:
        """Execute the run and serialize its results.

        Args:
            write_report: Write the document to the configured report file

        Returns:
            The result tree, document and overall status
        """
        request = self.make_request()
        aggregator = ResultAggregator()
        broadcaster = EventBroadcaster([aggregator, *self.listeners])

        log.info(
            "Starting test run",
            units=request.units,
            isolation=self.config.run.isolation,
            categories=request.categories,
        )
        self.make_boundary().run(request, broadcaster)
        tree = aggregator.tree

        if tree.is_fatal and tree.root is None:
            log.error("Run failed before any test was built", error=tree.fatal.describe())
            return RunReport(tree=tree, status=RunStatus.FATAL, error=tree.fatal.describe())

        report = RunReport(tree=tree, status=self._status(tree))
        try:
            report.document = self.serializer.serialize(tree)
            if write_report:
                report.path = self.serializer.write(
                    tree,
                    self.config.get_absolute_paths(self.base_dir)["report_file"],
                    document=report.document,
                )
        except ReportError as e:
            log.error("Result document not produced", error=str(e))
            report.status = RunStatus.NO_REPORT
            report.error = str(e)

        log.info("Test run complete", status=report.status.name, **tree.rollup.counts())
        return report

    @staticmethod
    def _status(tree: ResultTree) -> RunStatus:
        if tree.is_fatal:
            return RunStatus.FATAL
        if tree.is_failure:
            return RunStatus.FAILURES
        return RunStatus.PASSED
