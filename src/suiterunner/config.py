"""Configuration management for SuiteRunner."""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

CONFIG_NAMES = ["suiterunner.json", ".suiterunner.json"]


class ProjectConfig(BaseModel):
    """Project identification and metadata."""

    name: str = Field(default="suiterunner", description="Project name, used as the root suite name")
    description: str = Field(default="", description="Brief description of the project")


class DiscoveryConfig(BaseModel):
    """Where tests are loaded from."""

    units: list[str] = Field(
        default_factory=list,
        description="Code units to load: importable module names or paths to .py files",
    )
    fixtures: list[str] = Field(
        default_factory=list,
        description="Only build and run these fixtures or tests (full or trailing names)",
    )

    @field_validator("units", "fixtures")
    @classmethod
    def validate_names(cls, v: list[str]) -> list[str]:
        if any(not name.strip() for name in v):
            raise ValueError("Names cannot be empty")
        return [name.strip() for name in v]


class RunConfig(BaseModel):
    """Test execution configuration."""

    categories: list[str] = Field(default_factory=list, description="Only run tests in these categories")
    run_explicit: bool = Field(default=False, description="Also run tests marked explicit")
    isolation: str = Field(default="inline", description="Isolation boundary (inline, process)")
    timeout_seconds: Optional[int] = Field(
        default=None, description="Abort the run after this many seconds (process isolation only)"
    )
    emit_empty_suites: bool = Field(
        default=False, description="Report suites left without tests by the filters"
    )

    @field_validator("isolation")
    @classmethod
    def validate_isolation(cls, v: str) -> str:
        allowed = {"inline", "process"}
        if v.lower() not in allowed:
            raise ValueError(f"Isolation must be one of: {allowed}")
        return v.lower()

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Timeout must be at least 1 second")
        return v


class ReportConfig(BaseModel):
    """Result document configuration."""

    output_dir: str = Field(default=".", description="Directory for the result document")
    filename: str = Field(default="TestResult.xml", description="Result document filename")
    xml_console: bool = Field(default=False, description="Print the document instead of progress")

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Report filename cannot be empty")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING", description="Minimum log level")
    json_logs: bool = Field(default=False, alias="json", description="Emit logs as JSON lines")

    model_config = {"populate_by_name": True}

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if not isinstance(logging.getLevelName(v.upper()), int):
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()


class SuiteRunnerConfig(BaseModel):
    """Main configuration for SuiteRunner."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path | str) -> "SuiteRunnerConfig":
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r") as f:
            data = json.load(f)

        return cls.model_validate(data)

    @classmethod
    def find_and_load(cls, start_dir: Path | str | None = None) -> "SuiteRunnerConfig":
        """Find and load configuration file, searching up the directory tree."""
        if start_dir is None:
            start_dir = Path.cwd()
        else:
            start_dir = Path(start_dir)

        current = start_dir.resolve()
        while True:
            for name in CONFIG_NAMES:
                config_path = current / name
                if config_path.exists():
                    return cls.from_file(config_path)
            if current == current.parent:
                break
            current = current.parent

        raise FileNotFoundError(
            "No configuration file found. Create suiterunner.json or run 'suiterunner init'"
        )

    def to_file(self, path: Path | str) -> None:
        """Save configuration to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(self.model_dump(by_alias=True), f, indent=2)

    def get_absolute_paths(self, base_dir: Path | str | None = None) -> dict[str, Path]:
        """Get absolute paths for various config paths."""
        if base_dir is None:
            base_dir = Path.cwd()
        else:
            base_dir = Path(base_dir)

        output_dir = (base_dir / self.report.output_dir).resolve()
        return {
            "report_output_dir": output_dir,
            "report_file": output_dir / self.report.filename,
        }

    def resolve_units(self, base_dir: Path | str | None = None) -> list[str]:
        """Code units with file paths made absolute against ``base_dir``."""
        base_dir = Path.cwd() if base_dir is None else Path(base_dir)
        resolved = []
        for unit in self.discovery.units:
            if unit.endswith(".py"):
                resolved.append(str((base_dir / unit).resolve()))
            else:
                resolved.append(unit)
        return resolved


def get_default_config() -> SuiteRunnerConfig:
    """Return a default configuration."""
    return SuiteRunnerConfig(
        project=ProjectConfig(name="my-project"),
        discovery=DiscoveryConfig(units=["tests/test_example.py"]),
        run=RunConfig(isolation="process", timeout_seconds=300),
    )


def create_example_config(output_path: Path | str) -> Path:
    """Create an example configuration file."""
    output_path = Path(output_path)
    config = get_default_config()
    config.project.description = "Brief description of your project"
    config.to_file(output_path)
    return output_path
