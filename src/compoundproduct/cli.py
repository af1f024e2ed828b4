"""CLI entrypoint for compound.

Commands map onto the pipeline stages:
- analyze: pick the priority item from one report
- run: the full report -> pull request pipeline
- loop: only the execution loop over an existing task manifest
- status: show the active task manifest
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .agents import AgentRunner, create_agent_runner
from .config import LOOP_MAX_ITERATIONS, PIPELINE_MAX_ITERATIONS, RunConfig, load_config
from .errors import CompoundError, ConfigError, NoReportFoundError
from .loop import LoopState, run_loop_for_config
from .pipeline import Pipeline, create_analyzer
from .state import RunStore

# Initialize Typer app
app = typer.Typer(
    name="compound",
    help="Turn the latest product report into a pull request, one priority item at a time.",
    add_completion=False,
)

console = Console()
# Logs and errors go to stderr so stdout stays machine-readable.
err_console = Console(stderr=True)

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to compound.config.json (default: <root>/compound.config.json).",
)
ROOT_OPTION = typer.Option(
    None,
    "--root",
    "-r",
    help="Project root (default: current directory).",
)
VERBOSE_OPTION = typer.Option(False, "--verbose", help="Enable debug logging.")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"compound version {__version__}")
        raise typer.Exit()


def fail(message: str) -> None:
    """Print a one-line error and exit 1."""
    err_console.print(f"[red]Error:[/red] {escape(message)}")
    raise typer.Exit(1)


def build_runner(config: RunConfig) -> AgentRunner:
    """Create the agent runner for a config, checking the CLI is installed."""
    runner = create_agent_runner(
        config.tool,
        cwd=config.project_root,
        model=config.model,
        timeout=config.agent_timeout,
    )
    if not runner.check_installed():
        raise ConfigError(f"{runner.executable} CLI not found in PATH (tool: {config.tool})")
    return runner


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Compound product: report in, pull request out."""
    pass


@app.command()
def analyze(
    report_path: Path = typer.Argument(..., help="Report file to analyze."),
    config_path: Optional[Path] = CONFIG_OPTION,
    root: Optional[Path] = ROOT_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Analyze a report and print the chosen priority item as JSON."""
    setup_logging(verbose)

    try:
        config = load_config(config_path, root)
        if not report_path.is_file():
            raise NoReportFoundError(f"Report not found: {report_path}")

        runner = build_runner(config)
        store = RunStore(config.output_dir)
        analyzer = create_analyzer(config, runner, store)
        decision = analyzer.analyze(report_path.read_text(encoding="utf-8"), report_path.resolve())
    except CompoundError as e:
        fail(str(e))

    typer.echo(decision.to_json())


@app.command()
def run(
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Stop after analysis and print the decision.",
    ),
    publish_incomplete: bool = typer.Option(
        False,
        "--publish-incomplete",
        help="Open the pull request even if the loop runs out of iterations.",
    ),
    config_path: Optional[Path] = CONFIG_OPTION,
    root: Optional[Path] = ROOT_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run the full pipeline: report -> tasks -> loop -> pull request.

    Examples:
        compound run
        compound run --dry-run
        compound run --root ~/src/my-app --publish-incomplete
    """
    setup_logging(verbose)

    try:
        config = load_config(config_path, root, default_max_iterations=PIPELINE_MAX_ITERATIONS)
        runner = build_runner(config)
        result = Pipeline(config, runner).run(dry_run=dry_run, publish_incomplete=publish_incomplete)
    except CompoundError as e:
        fail(str(e))

    if result.dry_run:
        typer.echo(result.decision.to_json())
        return

    console.print("\n[green]Compound Product complete![/green]")
    console.print(f"Priority item: {escape(result.decision.priority_item)}")
    if result.loop_result:
        console.print(f"Iterations: {result.loop_result.iterations}/{result.loop_result.max_iterations}")
    console.print(f"[bold]PR:[/bold] {result.pr_url}")


@app.command()
def loop(
    max_iterations: Optional[int] = typer.Argument(
        None,
        help=f"Maximum iterations (default: {LOOP_MAX_ITERATIONS}, or maxIterations from config).",
    ),
    tool: Optional[str] = typer.Option(
        None,
        "--tool",
        "-t",
        help="Agent backend: amp, claude or opencode.",
    ),
    config_path: Optional[Path] = CONFIG_OPTION,
    root: Optional[Path] = ROOT_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run only the execution loop over the existing task manifest.

    Exits 0 when every task is complete, 1 when the iteration cap is hit.
    """
    setup_logging(verbose)

    try:
        config = load_config(config_path, root, default_max_iterations=LOOP_MAX_ITERATIONS)
        config = config.with_overrides(max_iterations=max_iterations, tool=tool)
        runner = build_runner(config)
        result = run_loop_for_config(config, runner)
    except CompoundError as e:
        fail(str(e))

    if result.state is LoopState.COMPLETE:
        console.print(
            f"\n[green]All tasks complete![/green] Finished at iteration "
            f"{result.iterations} of {result.max_iterations}"
        )
    else:
        console.print(
            f"\n[yellow]Reached max iterations ({result.max_iterations}) without completing all tasks.[/yellow]"
        )
        console.print(f"Check {config.progress_file} for status.")
    raise typer.Exit(result.exit_code)


@app.command()
def status(
    config_path: Optional[Path] = CONFIG_OPTION,
    root: Optional[Path] = ROOT_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the active task manifest."""
    setup_logging(verbose)

    try:
        config = load_config(config_path, root)
    except CompoundError as e:
        fail(str(e))

    store = RunStore(config.output_dir)
    manifest = store.read_manifest()
    if manifest is None:
        console.print(f"[yellow]No task manifest at {config.manifest_file}[/yellow]")
        return

    table = Table(title=f"Tasks on {manifest.branch_name or '(no branch)'}")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Passes", justify="center")

    for task in manifest.tasks:
        table.add_row(
            escape(task.id),
            escape(task.title),
            "[green]yes[/green]" if task.passes else "[red]no[/red]",
        )

    console.print(table)
    console.print(f"{manifest.passing_count}/{len(manifest.tasks)} tasks passing")

    decision = store.load_decision()
    if decision:
        console.print(f"Last decision: {escape(decision.priority_item)}")


if __name__ == "__main__":
    app()
