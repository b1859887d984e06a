from __future__ import annotations

import os
from typing import Optional

import typer
from dotenv import load_dotenv

from opencoder.core.config import ConfigError, Paths, Settings

app = typer.Typer(add_completion=False, help="Autonomous plan, build and eval loop for a project.")


def _load_env(project_dir: Optional[str]) -> None:
    load_dotenv()
    if project_dir:
        load_dotenv(os.path.join(project_dir, ".env"))


def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from opencoder.core.logging_config import setup_logging

    setup_logging(log_dir=settings.paths.log_dir, log_level=settings.log_level)


@app.command()
def run(
    hint: Optional[str] = typer.Argument(None, help="Optional instruction for the planning phase"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model for both plan and build (provider/model)"),
    plan_model: Optional[str] = typer.Option(None, "--plan-model", "-P", help="Model for planning and evaluation"),
    build_model: Optional[str] = typer.Option(None, "--build-model", "-B", help="Model for running tasks"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show verbose event output"),
    auto_commit: Optional[bool] = typer.Option(None, "--auto-commit/--no-auto-commit", help="Commit after each task"),
    auto_push: Optional[bool] = typer.Option(None, "--auto-push/--no-auto-push", help="Push after each cycle"),
    signoff: bool = typer.Option(False, "--signoff", "-s", help="Add Signed-off-by to commits"),
) -> None:
    """Run the loop until interrupted (Ctrl+C once to stop, twice to force)."""
    _load_env(project)
    try:
        settings = Settings.load(
            project_dir=project,
            hint=hint,
            plan_model=plan_model or model,
            build_model=build_model or model,
            verbose=verbose or None,
            auto_commit=auto_commit,
            auto_push=auto_push,
            commit_signoff=signoff or None,
        )
    except ConfigError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    settings.paths.ensure_directories()
    _setup_logging(settings)

    from opencoder.core.console import ConsoleLogger
    from opencoder.core.loop import CycleOrchestrator, ShutdownController, install_signal_handlers

    console = ConsoleLogger(settings.paths.alerts_file, verbose=settings.verbose)
    shutdown = ShutdownController()
    install_signal_handlers(shutdown, console)
    CycleOrchestrator(settings, console=console, shutdown=shutdown).run()


@app.command()
def status(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    alerts: int = typer.Option(5, help="Number of recent alerts to show"),
) -> None:
    """Show the persisted cycle state, metrics and recent alerts."""
    from opencoder.core.alerts import read_alerts
    from opencoder.core.ideas import count_ideas
    from opencoder.core.metrics import format_metrics_summary, load_metrics
    from opencoder.core.state import load_state

    paths = Paths.for_project(project or os.getcwd())
    if not os.path.isdir(paths.opencoder_dir):
        typer.echo(f"No opencoder workspace in {paths.opencoder_dir}")
        raise typer.Exit(code=1)

    state = load_state(paths.state_file)
    typer.secho(f"Cycle {state.cycle}, phase: {state.phase}", bold=True)
    if state.phase == "build":
        typer.echo(f"Next task index: {state.task_index}")
    if state.current_idea_filename:
        typer.echo(f"Working on idea: {state.current_idea_filename}")
    if state.retry_count:
        typer.echo(f"Retries since last success: {state.retry_count} (last error {state.last_error_time})")
    typer.echo(f"Ideas queued: {count_ideas(paths.ideas_dir)}")
    typer.echo("")
    typer.echo(format_metrics_summary(load_metrics(paths.metrics_file)))

    recent = read_alerts(paths.alerts_file, limit=alerts) if alerts > 0 else []
    if recent:
        typer.echo("")
        typer.secho("Recent alerts:", fg=typer.colors.YELLOW)
        for record in recent:
            typer.echo(f"  {record.get('ts', '?')} [{record.get('level', '?')}] {record.get('message', '')}")


@app.command("reset-metrics")
def reset_metrics_cmd(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Reset all cumulative metrics to zero."""
    from opencoder.core.metrics import reset_metrics, save_metrics

    paths = Paths.for_project(project or os.getcwd())
    if not yes and not typer.confirm("Reset all metrics?"):
        typer.echo("Cancelled.")
        raise typer.Exit()
    save_metrics(paths.metrics_file, reset_metrics())
    typer.echo("Metrics reset.")


@app.command("reset-state")
def reset_state_cmd(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Start over from cycle 1.  The current plan is archived to history."""
    from opencoder.core.loop import archive_plan
    from opencoder.core.state import load_state, reset_state, save_state

    paths = Paths.for_project(project or os.getcwd())
    if not yes and not typer.confirm("Reset cycle state?"):
        typer.echo("Cancelled.")
        raise typer.Exit()
    archived = archive_plan(paths, load_state(paths.state_file).cycle)
    save_state(paths.state_file, reset_state())
    if archived:
        typer.echo(f"Plan archived to {archived}")
    typer.echo("State reset.")


@app.command()
def version() -> None:
    from opencoder import __version__
    from opencoder.integrations.opencode_cli import OpencodeCli, OpencodeCliError

    typer.echo(f"opencoder {__version__}")
    try:
        typer.echo(f"opencode {OpencodeCli().version()}")
    except OpencodeCliError:
        typer.echo("opencode: not found")


if __name__ == "__main__":
    app()
