import click
from rich.console import Console
from rich.table import Table

from taskpilot.cli.main import echo_json, fail, get_container, to_jsonable, wants_json
from taskpilot.errors import TaskPilotError

console = Console()


# =============================================================================
# Requirements
# =============================================================================

@click.group()
def requirements():
    """Requirements analysis commands."""
    pass


@requirements.command("submit")
@click.argument("project_id", type=int)
@click.option("--file", "-f", "source", type=click.File("r"), default=None,
              help="Read requirements from a file ('-' for stdin)")
@click.option("--text", "-t", default=None, help="Requirements text")
@click.option("--prd", type=click.File("r"), default=None, help="Optional PRD document")
@click.option("--wait/--no-wait", default=True, show_default=True, help="Wait for the analysis to finish")
@click.pass_context
def submit_requirements(ctx, project_id, source, text, prd, wait):
    """Submit requirements and generate tasks from them."""
    raw = text if text is not None else (source.read() if source else "")
    container = get_container()
    try:
        request = container.requirements.submit(
            project_id, raw, prd.read() if prd else None, wait=wait
        )
        if wait:
            request = container.requirements.get_request(request.id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    finally:
        container.shutdown(wait=True)

    if wants_json(ctx):
        echo_json(request)
        return
    color = {"completed": "green", "failed": "red"}.get(request.generation_status, "yellow")
    console.print(
        f"Requirements {request.id}: [{color}]{request.generation_status}[/{color}]"
    )
    if request.error_message:
        console.print(f"[red]{request.error_message}[/red]")
    elif request.features:
        console.print(f"Extracted {len(request.features)} feature(s)")


@requirements.command("status")
@click.argument("project_id", type=int)
@click.pass_context
def requirements_status(ctx, project_id):
    """Show the latest requirements request for a project."""
    container = get_container()
    try:
        container.db.get_project(project_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    request = container.requirements.get_status(project_id)
    if wants_json(ctx):
        echo_json(request)
        return
    if request is None:
        console.print("No requirements submitted")
        return
    console.print(f"Requirements {request.id}: {request.generation_status}")
    if request.error_message:
        console.print(f"[red]{request.error_message}[/red]")
    for feature in request.features:
        console.print(f"  - [{feature.get('priority')}] {feature.get('name')}")


@requirements.command("delete")
@click.argument("project_id", type=int)
@click.pass_context
def delete_requirements(ctx, project_id):
    """Remove a project's requirements records (generated tasks are kept)."""
    removed = get_container().requirements.delete(project_id)
    if wants_json(ctx):
        echo_json({"project_id": project_id, "deleted": removed})
    else:
        console.print(f"Removed {removed} requirements record(s)")


# =============================================================================
# Agent scheduler
# =============================================================================

@click.group()
def agent():
    """Autonomous agent scheduling commands."""
    pass


@agent.command("enable")
@click.argument("project_id", type=int)
@click.pass_context
def agent_enable(ctx, project_id):
    """Enable automatic task selection for a project."""
    _agent_settings(ctx, project_id, enabled=True)


@agent.command("disable")
@click.argument("project_id", type=int)
@click.pass_context
def agent_disable(ctx, project_id):
    """Disable automatic task selection for a project."""
    _agent_settings(ctx, project_id, enabled=False)


@agent.command("settings")
@click.argument("project_id", type=int)
@click.option("--interval", "interval_seconds", type=click.IntRange(min=1), default=None)
@click.option("--max-depth", "max_breakdown_depth", type=click.IntRange(min=0), default=None)
@click.pass_context
def agent_settings(ctx, project_id, interval_seconds, max_breakdown_depth):
    """Change the tick interval or breakdown depth limit."""
    _agent_settings(
        ctx, project_id, interval_seconds=interval_seconds, max_breakdown_depth=max_breakdown_depth
    )


def _agent_settings(ctx, project_id, **changes):
    try:
        settings = get_container().scheduler.update_settings(project_id, **changes)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(settings)
    else:
        state = "[green]enabled[/green]" if settings.enabled else "[red]disabled[/red]"
        console.print(
            f"Agent for project {project_id} {state} "
            f"(interval {settings.interval_seconds}s, max depth {settings.max_breakdown_depth})"
        )


@agent.command("status")
@click.argument("project_id", type=int)
@click.pass_context
def agent_status(ctx, project_id):
    """Show agent settings and the last tick."""
    try:
        status = get_container().scheduler.get_status(project_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(status)
        return
    console.print(f"[bold]Agent for project {project_id}[/bold]")
    console.print(f"  Enabled: {status.enabled}")
    console.print(f"  Interval: {status.interval_seconds}s")
    console.print(f"  Max breakdown depth: {status.max_breakdown_depth}")
    if status.last_run:
        console.print(f"  Last run: {status.last_run} ({status.last_action})")
        if status.last_reasoning:
            console.print(f"  Reasoning: {status.last_reasoning}")


@agent.command("trigger")
@click.argument("project_id", type=int)
@click.pass_context
def agent_trigger(ctx, project_id):
    """Run one scheduling tick now."""
    try:
        result = get_container().scheduler.trigger(project_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json({**to_jsonable(result), "logged": result.logged})
        return
    console.print(f"Action: [cyan]{result.action}[/cyan]")
    if result.task_id is not None:
        console.print(f"Task: {result.task_id}")
    if result.reasoning:
        console.print(f"Reasoning: {result.reasoning}")


@agent.command("logs")
@click.argument("project_id", type=int)
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def agent_logs(ctx, project_id, limit):
    """Show the agent activity log."""
    try:
        logs = get_container().scheduler.list_logs(project_id, limit=limit)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(logs)
        return
    table = Table(title=f"Agent activity for project {project_id}")
    table.add_column("When")
    table.add_column("Action", style="cyan")
    table.add_column("Task", justify="right")
    table.add_column("Reasoning")
    for entry in logs:
        table.add_row(
            entry.created_at,
            entry.action,
            "" if entry.task_id is None else str(entry.task_id),
            entry.reasoning or "",
        )
    console.print(table)


# =============================================================================
# Review automation
# =============================================================================

@click.group()
def review():
    """Review automation commands."""
    pass


@review.command("enable")
@click.argument("project_id", type=int)
@click.pass_context
def review_enable(ctx, project_id):
    """Enable review automation for a project."""
    _review_settings(ctx, project_id, enabled=True)


@review.command("disable")
@click.argument("project_id", type=int)
@click.pass_context
def review_disable(ctx, project_id):
    """Disable review automation for a project."""
    _review_settings(ctx, project_id, enabled=False)


@review.command("settings")
@click.argument("project_id", type=int)
@click.option("--auto-merge/--no-auto-merge", "auto_merge_enabled", default=None)
@click.option("--run-tests/--no-run-tests", "run_tests_enabled", default=None)
@click.pass_context
def review_settings(ctx, project_id, auto_merge_enabled, run_tests_enabled):
    """Toggle test runs and automatic merges."""
    _review_settings(
        ctx, project_id, auto_merge_enabled=auto_merge_enabled, run_tests_enabled=run_tests_enabled
    )


def _review_settings(ctx, project_id, **changes):
    try:
        settings = get_container().review.update_settings(project_id, **changes)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(settings)
    else:
        state = "[green]enabled[/green]" if settings.enabled else "[red]disabled[/red]"
        console.print(
            f"Review automation for project {project_id} {state} "
            f"(tests: {settings.run_tests_enabled}, auto-merge: {settings.auto_merge_enabled})"
        )


@review.command("status")
@click.argument("project_id", type=int)
@click.pass_context
def review_status(ctx, project_id):
    """Show review automation settings and the last action."""
    try:
        status = get_container().review.get_status(project_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(status)
        return
    console.print(f"[bold]Review automation for project {project_id}[/bold]")
    console.print(f"  Enabled: {status.enabled}")
    console.print(f"  Run tests: {status.run_tests_enabled}")
    console.print(f"  Auto-merge: {status.auto_merge_enabled}")
    if status.last_action:
        console.print(f"  Last action: {status.last_action} on task {status.last_task_id} at {status.last_run_at}")


def _print_outcomes(outcomes):
    table = Table(title="Review outcomes")
    table.add_column("Task", justify="right", style="cyan")
    table.add_column("Action")
    table.add_column("Message")
    for outcome in outcomes:
        table.add_row(str(outcome.task_id), outcome.action or "-", outcome.message or "")
    console.print(table)


@review.command("process")
@click.argument("task_id", type=int)
@click.pass_context
def review_process(ctx, task_id):
    """Run one review pass for a task in review."""
    container = get_container()
    try:
        outcome = container.review.process_task(task_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    finally:
        container.shutdown(wait=True)
    if wants_json(ctx):
        echo_json(outcome)
    else:
        _print_outcomes([outcome])


@review.command("trigger")
@click.argument("project_id", type=int)
@click.pass_context
def review_trigger(ctx, project_id):
    """Review every in-review task of a project now."""
    container = get_container()
    try:
        outcomes = container.review.sweep_project(project_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    finally:
        container.shutdown(wait=True)
    if wants_json(ctx):
        echo_json(outcomes)
    else:
        _print_outcomes(outcomes)


@review.command("logs")
@click.argument("project_id", type=int)
@click.option("--task", "task_id", type=int, default=None, help="Only show one task's log")
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def review_logs(ctx, project_id, task_id, limit):
    """Show the review automation log."""
    service = get_container().review
    try:
        if task_id is not None:
            logs = service.list_task_logs(task_id, limit=limit)
        else:
            logs = service.list_logs(project_id, limit=limit)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(logs)
        return
    table = Table(title=f"Review automation log for project {project_id}")
    table.add_column("When")
    table.add_column("Task", justify="right", style="cyan")
    table.add_column("Action")
    table.add_column("Error", style="red")
    for entry in logs:
        table.add_row(entry.created_at, str(entry.task_id), entry.action, entry.error_message or "")
    console.print(table)
