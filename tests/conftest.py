"""Shared fixtures for the test suite."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytest

from suiterunner.core.builder import TestBuilder
from suiterunner.core.engine import ExecutionEngine
from suiterunner.core.events import EventBroadcaster, RecordingListener
from suiterunner.core.model import Rollup, Suite
from suiterunner.core.reflect import load_code_unit
from suiterunner.report.aggregator import ResultAggregator, ResultTree

SAMPLES_DIR = Path(__file__).parent / "samples"


def sample_path(name: str) -> str:
    return str(SAMPLES_DIR / f"{name}.py")


@dataclass
class SampleRun:
    root: Suite
    rollup: Rollup
    events: RecordingListener
    tree: ResultTree

    def outcome(self, full_name: str):
        node = self.tree.find(full_name)
        assert node is not None, f"{full_name} not in result tree"
        return node.outcome

    def started(self) -> list[str]:
        return [event.test.full_name for event in self.events.of_kind("test_started")]


@pytest.fixture
def samples_dir() -> Path:
    return SAMPLES_DIR


@pytest.fixture
def load_sample():
    """Load a sample code unit by name."""

    def load(name: str):
        return load_code_unit(sample_path(name))

    return load


@pytest.fixture
def build_sample(load_sample):
    """Build the suite for a sample code unit."""

    def build(name: str, fixtures: Optional[list[str]] = None) -> Suite:
        return TestBuilder().build(load_sample(name), fixtures)

    return build


@pytest.fixture
def run_sample(build_sample):
    """Build and run a sample in-process, recording events and results."""

    def run(name: str, emit_empty_suites: bool = False, **kwargs) -> SampleRun:
        root = build_sample(name)
        events = RecordingListener()
        aggregator = ResultAggregator()
        engine = ExecutionEngine(emit_empty_suites=emit_empty_suites)
        rollup = engine.run(root, EventBroadcaster([events, aggregator]), **kwargs)
        return SampleRun(root=root, rollup=rollup, events=events, tree=aggregator.tree)

    return run


@pytest.fixture
def lifecycle_calls(load_sample):
    """The call log of the lifecycle sample, emptied before each test."""
    calls = load_sample("sample_lifecycle").CALLS
    calls.clear()
    return calls


@pytest.fixture
def structure_ran(load_sample):
    ran = load_sample("sample_structure").RAN
    ran.clear()
    return ran


@pytest.fixture
def exit_ran(load_sample):
    ran = load_sample("sample_exit").RAN
    ran.clear()
    return ran
