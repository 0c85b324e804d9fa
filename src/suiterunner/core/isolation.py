"""Isolation boundaries that own loading, building and running test code.

A boundary receives a plain-data :class:`RunRequest` and reports back only
through events. Nothing the test code creates crosses the boundary except
event records, so the same listener works for the in-process and the
child-process variant.
"""

import multiprocessing
import sys
import time
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from suiterunner.core.builder import TestBuilder
from suiterunner.core.engine import ExecutionEngine
from suiterunner.core.events import (
    EventListener,
    QueueSink,
    RunFinished,
    UnhandledException,
    pump_events,
)
from suiterunner.core.filters import CategoryFilter, SelectionFilter
from suiterunner.core.model import FaultInfo, Rollup
from suiterunner.core.reflect import load_code_unit
from suiterunner.exceptions import TEST_FAULTS, BoundaryFault, DiscoveryError

log = structlog.get_logger("suiterunner.isolation")

DISCOVERY_PHASE = "discovery"
RUN_PHASE = "run"
BOUNDARY_PHASE = "boundary"

# Seconds between timeout checks while waiting for child events
POLL_INTERVAL = 0.2


class RunRequest(BaseModel):
    """Everything a boundary needs to perform a run."""

    units: list[str] = Field(default_factory=list)
    fixtures: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    run_explicit: bool = False
    emit_empty_suites: bool = False
    name: str = "suiterunner"
    log_level: str = "WARNING"
    json_logs: bool = False


def execute_request(request: RunRequest, listener: EventListener) -> Optional[Rollup]:
    """Load, build and run a request, reporting only through ``listener``.

    Discovery failures and exceptions escaping the engine end the stream
    with a fatal ``RunFinished``; nothing is raised to the caller.

    Returns:
        The run rollup, or None if the run did not complete
    """
    try:
        units = [load_code_unit(spec) for spec in request.units]
        root = TestBuilder().build_all(units, request.fixtures or None, name=request.name)
    except DiscoveryError as e:
        log.error("Discovery failed", error=str(e))
        listener.run_finished(
            RunFinished(fatal=FaultInfo.from_exception(e, phase=DISCOVERY_PHASE))
        )
        return None

    engine = ExecutionEngine(emit_empty_suites=request.emit_empty_suites)
    try:
        return engine.run(
            root,
            listener,
            category_filter=CategoryFilter(request.categories),
            selection=SelectionFilter.resolve(root, request.fixtures),
            run_explicit=request.run_explicit,
        )
    except TEST_FAULTS as e:
        log.exception("Run aborted by an unhandled exception")
        fault = FaultInfo.from_exception(e, phase=RUN_PHASE)
        listener.unhandled_exception(UnhandledException(fault=fault))
        listener.run_finished(RunFinished(fatal=fault))
        return None


class IsolationBoundary:
    """Execution context that can be torn down independently of its caller."""

    def run(self, request: RunRequest, listener: EventListener) -> None:
        raise NotImplementedError

    def _abort(self, listener: EventListener, message: str) -> None:
        """End the event stream after the boundary itself failed."""
        fault = FaultInfo.from_exception(BoundaryFault(message), phase=BOUNDARY_PHASE)
        log.error("Isolation boundary failed", error=message)
        listener.unhandled_exception(UnhandledException(fault=fault))
        listener.run_finished(RunFinished(fatal=fault))


class InlineBoundary(IsolationBoundary):
    """Runs in the calling process and unloads the test code afterwards."""

    def run(self, request: RunRequest, listener: EventListener) -> None:
        loaded_before = set(sys.modules)
        try:
            execute_request(request, listener)
        finally:
            self.dispose(request, loaded_before)

    def dispose(self, request: RunRequest, loaded_before: set[str]) -> None:
        """Forget the request's code units and their submodules if the run imported them."""
        roots = {_unit_root(spec) for spec in request.units}
        unloaded = [
            name
            for name in list(sys.modules)
            if name not in loaded_before and name.split(".", 1)[0] in roots
        ]
        for name in unloaded:
            sys.modules.pop(name, None)
        log.debug("Disposed inline boundary", unloaded=unloaded)


def _unit_root(spec: str) -> str:
    if spec.endswith(".py"):
        return Path(spec).stem
    return spec.split(".", 1)[0]


def _child_main(request_data: dict[str, Any], channel: Any) -> None:
    """Entry point of the child process."""
    from suiterunner.log import setup_logging

    request = RunRequest.model_validate(request_data)
    setup_logging(request.log_level, request.json_logs)
    try:
        execute_request(request, QueueSink(channel))
    finally:
        channel.close()


class ProcessBoundary(IsolationBoundary):
    """Runs in a freshly spawned child process.

    Events travel back as plain dicts over a one-way pipe and are delivered
    to the listener as they arrive. Each send completes before the child
    moves on, so a crash loses nothing already reported. If the child dies
    or the timeout expires before the run finished, the stream is closed
    with a fatal ``RunFinished``.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.context = multiprocessing.get_context("spawn")

    def run(self, request: RunRequest, listener: EventListener) -> None:
        reader, writer = self.context.Pipe(duplex=False)
        process = self.context.Process(
            target=_child_main,
            args=(request.model_dump(), writer),
            name="suiterunner-child",
            daemon=True,
        )
        process.start()
        # Only the child writes; closing our end lets a dead child show up as EOF
        writer.close()
        log.debug("Started child process", pid=process.pid, units=request.units)

        failure: Optional[str] = "Test process did not report a result"
        try:
            failure = self._pump(reader, process, listener)
            if failure is not None:
                self._abort(listener, failure)
        finally:
            self._stop(process, wait=failure is None)
            reader.close()

    def _pump(self, reader: Any, process: Any, listener: EventListener) -> Optional[str]:
        """Deliver child events until the run finishes; return why it did not."""
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        while True:
            wait = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return f"Test run exceeded the timeout of {self.timeout:g} seconds"
                wait = min(wait, remaining)

            if not reader.poll(wait):
                continue
            try:
                data = reader.recv()
            except EOFError:
                process.join(timeout=5)
                return f"Test process terminated unexpectedly (exit code {process.exitcode})"

            if pump_events([data], listener):
                return None

    def _stop(self, process: Any, wait: bool = True) -> None:
        if wait:
            process.join(timeout=5)
        if process.is_alive():
            log.warning("Child process still running, terminating", pid=process.pid)
            process.terminate()
            process.join(timeout=5)
            if process.is_alive():
                process.kill()
                process.join()
