"""
TaskPilot CLI

Click-based command-line interface for TaskPilot.
Provides commands for projects, tasks, requirements analysis, the agent
scheduler, review automation and the background runner.
"""

import json
import sys
import threading
from dataclasses import asdict, is_dataclass
from typing import Any, Optional

import click

from taskpilot import __version__
from taskpilot.errors import ConfigError, TaskPilotError
from taskpilot.logging import EXIT_CONFIG_ERROR, EXIT_RUNTIME_ERROR, get_logger, init_cli_logging

logger = get_logger(__name__)


def get_service_context():
    """Create a ServiceContext for CLI operations."""
    from taskpilot.config import load_config
    from taskpilot.services.base import ServiceContext

    return ServiceContext(config=load_config())


def get_db(context=None):
    """Open the configured database, creating tables on first use."""
    from taskpilot.db.database import get_database

    context = context or get_service_context()
    db = get_database(context.config.db_path)
    db.init_schema()
    return db


def get_container():
    from taskpilot.services.container import build_services

    context = get_service_context()
    return build_services(context, get_db(context))


def wants_json(ctx: click.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("JSON"))


def to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def echo_json(value: Any) -> None:
    click.echo(json.dumps(to_jsonable(value), default=str))


def fail(ctx: click.Context, exc: TaskPilotError) -> None:
    """Report a TaskPilot error and exit non-zero."""
    if wants_json(ctx):
        echo_json({"success": False, "error": str(exc), "category": exc.category})
    else:
        click.echo(click.style(f"Error: {exc}", fg="red"), err=True)
    ctx.exit(EXIT_CONFIG_ERROR if isinstance(exc, ConfigError) else EXIT_RUNTIME_ERROR)


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def cli(ctx, verbose, json_output):
    """TaskPilot - autonomous task board orchestration."""
    ctx.ensure_object(dict)
    ctx.obj["VERBOSE"] = verbose
    ctx.obj["JSON"] = json_output

    if verbose:
        init_cli_logging(level="DEBUG")


@cli.command()
def version():
    """Show version information."""
    click.echo(f"TaskPilot v{__version__}")


# =============================================================================
# Database Commands
# =============================================================================

@cli.group()
def db():
    """Database commands."""
    pass


@db.command("init")
@click.pass_context
def db_init(ctx):
    """Create the database schema (safe to run repeatedly)."""
    try:
        context = get_service_context()
        get_db(context)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json({"success": True, "db_path": str(context.config.db_path)})
    else:
        click.echo(f"Initialized database at {context.config.db_path}")


# =============================================================================
# Runner / Server
# =============================================================================

@cli.command("run")
@click.option("--once", is_flag=True, help="Run each loop once and exit")
@click.pass_context
def run(ctx, once):
    """Run the scheduler, review sweep and stalled-task watch in the foreground."""
    init_cli_logging()
    try:
        container = get_container()
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    runner = container.build_runner()

    if once:
        fired = runner.run_scheduler_once()
        processed = runner.run_review_sweep_once()
        stalled = runner.check_timeouts_once()
        container.shutdown(wait=True)
        summary = {"ticks": fired, "review_passes": processed, "stalled_tasks": [t.id for t in stalled]}
        if wants_json(ctx):
            echo_json(summary)
        else:
            click.echo(
                f"Ticks fired: {len(fired)}, review passes: {processed}, stalled tasks: {len(stalled)}"
            )
        return

    stop = threading.Event()
    runner.start()
    click.echo("Runner started; press Ctrl+C to stop")
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        click.echo("Stopping runner...")
    finally:
        runner.stop()
        container.shutdown(wait=True)


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--no-runner", is_flag=True, help="Do not start the background runner with the API")
def serve(host, port, no_runner):
    """Serve the HTTP API."""
    import uvicorn

    from taskpilot.api.app import create_app

    init_cli_logging()
    app = create_app(start_runner=False if no_runner else None)
    uvicorn.run(app, host=host, port=port, log_config=None)


from taskpilot.cli.projects import project, task  # noqa: E402
from taskpilot.cli.automation import agent, requirements, review  # noqa: E402

cli.add_command(project)
cli.add_command(task)
cli.add_command(requirements)
cli.add_command(agent)
cli.add_command(review)


def main(argv: Optional[list] = None) -> None:
    cli.main(args=argv, prog_name="taskpilot", obj={})


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
