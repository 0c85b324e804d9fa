"""Command-line interface for SuiteRunner."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from suiterunner import __version__
from suiterunner.config import SuiteRunnerConfig, create_example_config
from suiterunner.core.events import EventListener, TestFinished, TestStarted, UnhandledException
from suiterunner.core.model import RunState, Suite, TestNode
from suiterunner.exceptions import DiscoveryError
from suiterunner.log import setup_logging
from suiterunner.report.aggregator import ResultTree

console = Console(highlight=False)


def print_banner() -> None:
    """Print the SuiteRunner banner."""
    console.print(
        Panel.fit(
            "[bold blue]SuiteRunner[/bold blue] - declarative unit tests",
            subtitle=f"v{__version__}",
        )
    )


class ConsoleListener(EventListener):
    """Prints run progress: ``.`` per started test, ``F`` per failure, ``N`` per test not run."""

    def __init__(self, out: Console, labels: bool = False, quiet: bool = False):
        self.out = out
        self.labels = labels
        self.quiet = quiet
        self.current_test = ""

    def test_started(self, event: TestStarted) -> None:
        self.current_test = event.test.full_name
        if not self.quiet:
            self.out.print(".", end="")
        if self.labels:
            self.out.print(f"[{event.test.full_name}]", markup=False)

    def test_finished(self, event: TestFinished) -> None:
        if not self.quiet:
            if not event.outcome.executed:
                self.out.print("N", end="")
            elif event.outcome.is_failure:
                self.out.print("F", end="")
        self.current_test = ""

    def unhandled_exception(self, event: UnhandledException) -> None:
        name = event.test_name or self.current_test
        if not self.labels:
            self.out.print()
        self.out.print(f"##### Unhandled Exception while running {name}", markup=False)
        self.out.print(event.fault.stack_trace or event.fault.describe(), markup=False)


def _load_config(ctx: click.Context, allow_default: bool) -> tuple[SuiteRunnerConfig, Path]:
    """Load the configuration named on the command line or found nearby."""
    config_path = ctx.obj.get("config_path")
    try:
        if config_path:
            config = SuiteRunnerConfig.from_file(config_path)
            base_dir = Path(config_path).resolve().parent
        else:
            config = SuiteRunnerConfig.find_and_load()
            base_dir = Path.cwd()
    except FileNotFoundError as e:
        if config_path or not allow_default:
            console.print(f"[red]Error:[/red] {e}")
            console.print("Run [bold]suiterunner init[/bold] to create a configuration file")
            sys.exit(2)
        config = SuiteRunnerConfig()
        base_dir = Path.cwd()
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(2)

    level = "DEBUG" if ctx.obj.get("verbose") else config.logging.level
    json_logs = ctx.obj.get("json_logs") or config.logging.json_logs
    config.logging.level = level
    config.logging.json_logs = json_logs
    setup_logging(level, json_logs)
    return config, base_dir


@click.group()
@click.version_option(version=__version__, prog_name="suiterunner")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False),
    help="Path to configuration file (default: suiterunner.json)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit log records as JSON lines")
@click.pass_context
def main(ctx: click.Context, config: Optional[str], verbose: bool, json_logs: bool) -> None:
    """SuiteRunner - declarative unit-test framework and console runner.

    Builds suites from marked classes, runs them in isolation and writes
    an XML result document.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["json_logs"] = json_logs
    ctx.obj["config_path"] = config


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="suiterunner.json",
    help="Output path for configuration file",
)
@click.option("--force", "-f", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def init(ctx: click.Context, output: str, force: bool) -> None:
    """Initialize a new SuiteRunner configuration file."""
    print_banner()

    output_path = Path(output)
    if output_path.exists() and not force:
        console.print(f"[yellow]Configuration file already exists:[/yellow] {output_path}")
        console.print("Use --force to overwrite")
        sys.exit(1)

    try:
        create_example_config(output_path)
        console.print(f"[green]Created configuration file:[/green] {output_path}")
        console.print("\nNext steps:")
        console.print("  1. List your test modules under discovery.units")
        console.print("  2. Run [bold]suiterunner run[/bold] to execute tests")
    except OSError as e:
        console.print(f"[red]Error creating configuration:[/red] {e}")
        sys.exit(1)


@main.command()
@click.argument("units", nargs=-1)
@click.option("--category", "-C", "categories", multiple=True, help="Only run tests in this category")
@click.option("--fixture", "-f", "fixtures", multiple=True, help="Only run this fixture or test")
@click.option("--explicit", is_flag=True, help="Also run tests marked explicit")
@click.option("--isolation", type=click.Choice(["inline", "process"]), help="Isolation boundary")
@click.option("--timeout", type=click.IntRange(min=1), help="Abort the run after this many seconds")
@click.option("--xml", "xml_path", type=click.Path(), help="Result document path (default: TestResult.xml)")
@click.option("--xml-console", is_flag=True, help="Print the result document instead of progress")
@click.option("--labels", is_flag=True, help="Print the name of each test as it starts")
@click.option("--emit-empty-suites", is_flag=True, help="Report suites left empty by the filters")
@click.pass_context
def run(
    ctx: click.Context,
    units: tuple[str, ...],
    categories: tuple[str, ...],
    fixtures: tuple[str, ...],
    explicit: bool,
    isolation: Optional[str],
    timeout: Optional[int],
    xml_path: Optional[str],
    xml_console: bool,
    labels: bool,
    emit_empty_suites: bool,
) -> None:
    """Run the tests in UNITS (module names or .py files)."""
    from suiterunner.core.runner import RunStatus, TestRunner

    config, base_dir = _load_config(ctx, allow_default=bool(units))

    if units:
        config.discovery.units = list(units)
    if fixtures:
        config.discovery.fixtures = list(fixtures)
    if categories:
        config.run.categories = [c for value in categories for c in value.split(",") if c.strip()]
    if explicit:
        config.run.run_explicit = True
    if isolation:
        config.run.isolation = isolation
    if timeout:
        config.run.timeout_seconds = timeout
    if emit_empty_suites:
        config.run.emit_empty_suites = True
    if xml_path:
        config.report.output_dir = str(Path(xml_path).parent)
        config.report.filename = Path(xml_path).name
    xml_console = xml_console or config.report.xml_console

    if not config.discovery.units:
        console.print("[red]Error:[/red] No code units given")
        sys.exit(RunStatus.FATAL.exit_code)

    if not xml_console:
        print_banner()

    listener = ConsoleListener(console, labels=labels, quiet=xml_console)
    runner = TestRunner(config, base_dir, listeners=[listener])
    report = runner.run()

    if xml_console:
        if report.document:
            click.echo(report.document, nl=False)
    else:
        console.print()
        _display_results_summary(report.tree)

    if report.status is RunStatus.FATAL and report.error:
        console.print(f"[red]Run failed:[/red] {escape(report.error)}")
    elif report.status is RunStatus.NO_REPORT:
        console.print(f"[red]Error writing result document:[/red] {escape(report.error or '')}")
    elif report.path and not xml_console:
        console.print(f"[dim]Results written to[/dim] {report.path}")

    sys.exit(report.status.exit_code)


@main.command(name="list")
@click.argument("units", nargs=-1)
@click.option("--fixture", "-f", "fixtures", multiple=True, help="Only list this fixture")
@click.pass_context
def list_tests(ctx: click.Context, units: tuple[str, ...], fixtures: tuple[str, ...]) -> None:
    """Show the test tree built from UNITS."""
    from suiterunner.core.builder import TestBuilder
    from suiterunner.core.reflect import load_code_unit

    config, base_dir = _load_config(ctx, allow_default=bool(units))
    if units:
        config.discovery.units = list(units)

    try:
        loaded = [load_code_unit(unit) for unit in config.resolve_units(base_dir)]
        root = TestBuilder().build_all(
            loaded,
            list(fixtures) or config.discovery.fixtures or None,
            name=config.project.name,
        )
    except DiscoveryError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(2)

    tree = Tree(f"[bold]{escape(root.full_name)}[/bold]")
    _add_branch(tree, root)
    console.print(tree)
    console.print(f"\n{root.test_count()} test(s)")


def _label(node: TestNode) -> str:
    label = escape(node.name)
    if node.categories:
        label += f" [cyan]({escape(', '.join(sorted(node.categories)))})[/cyan]"
    if node.run_state is not RunState.RUNNABLE:
        label += f" [yellow]{node.run_state.value}: {escape(node.reason or '')}[/yellow]"
    return label


def _add_branch(branch: Tree, suite: Suite) -> None:
    for child in suite.children:
        sub = branch.add(_label(child))
        if isinstance(child, Suite):
            _add_branch(sub, child)


def _display_results_summary(tree: ResultTree) -> None:
    """Display a summary of test results."""
    rollup = tree.rollup

    console.print("\n" + "=" * 50)
    console.print("[bold]Test Results Summary[/bold]")
    console.print("=" * 50)

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Tests Run", str(rollup.run))
    table.add_row("Passed", f"[green]{rollup.passed}[/green]")
    table.add_row("Failures", f"[red]{rollup.failures}[/red]")
    table.add_row("Errors", f"[red]{rollup.errors}[/red]")
    table.add_row("Not Run", f"[yellow]{rollup.not_run}[/yellow]")
    table.add_row("Time", f"{rollup.elapsed:.3f}s")

    console.print(table)

    failed = [
        node for node in (tree.root.iter_cases() if tree.root else []) if node.outcome and node.outcome.is_failure
    ]
    if failed:
        console.print("\n[red]Some tests failed![/red]")
        console.print("\nFailed tests:")
        for node in failed[:10]:
            console.print(f"  [red]✗[/red] {escape(node.full_name)}: {escape(node.message or '')}")
        if len(failed) > 10:
            console.print(f"  ... and {len(failed) - 10} more")
    elif tree.is_fatal:
        console.print("\n[red]The run did not complete[/red]")
    else:
        console.print("\n[green]All tests passed![/green]")


if __name__ == "__main__":
    main()
