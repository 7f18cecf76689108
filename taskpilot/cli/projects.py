import click
from rich.console import Console
from rich.table import Table

from taskpilot.cli.main import echo_json, fail, get_container, get_db, wants_json
from taskpilot.errors import TaskPilotError
from taskpilot.models.domain import TaskLayer, TaskStatus, TaskType

console = Console()


def _task_table(title, tasks) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Seq", justify="right")
    table.add_column("Title", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Type")
    table.add_column("Layer")
    table.add_column("Cx", justify="right")
    table.add_column("Parent", justify="right")
    for t in tasks:
        table.add_row(
            str(t.id),
            "" if t.sequence is None else str(t.sequence),
            t.title,
            t.status,
            t.task_type,
            t.layer or "",
            "" if t.complexity_score is None else str(t.complexity_score),
            "" if t.parent_task_id is None else str(t.parent_task_id),
        )
    return table


# =============================================================================
# Projects
# =============================================================================

@click.group()
def project():
    """Project management commands."""
    pass


@project.command("list")
@click.pass_context
def list_projects(ctx):
    """List all projects."""
    projects = get_db().list_projects()
    if wants_json(ctx):
        echo_json(projects)
        return

    table = Table(title="Projects")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Created")
    for p in projects:
        table.add_row(str(p.id), p.name, p.created_at)
    console.print(table)


@project.command("create")
@click.argument("name")
@click.pass_context
def create_project(ctx, name):
    """Create a new project."""
    try:
        p = get_db().create_project(name)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(p)
    else:
        console.print(f"[green]Created project {p.id}[/green]: {p.name}")


@project.command("show")
@click.argument("project_id", type=int)
@click.pass_context
def show_project(ctx, project_id):
    """Show a project and its tasks."""
    db = get_db()
    try:
        p = db.get_project(project_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    tasks = db.list_tasks(project_id)
    if wants_json(ctx):
        echo_json({"project": p, "tasks": tasks})
        return
    console.print(f"[bold]Project: {p.name}[/bold] (ID: {p.id})")
    console.print(_task_table("Tasks", tasks))


@project.command("delete")
@click.argument("project_id", type=int)
@click.confirmation_option(prompt="Delete the project and all of its tasks?")
@click.pass_context
def delete_project(ctx, project_id):
    """Delete a project with its tasks, requirements, settings and logs."""
    try:
        get_db().delete_project(project_id)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json({"success": True, "project_id": project_id})
    else:
        console.print(f"Deleted project {project_id}")


# =============================================================================
# Tasks
# =============================================================================

@click.group()
def task():
    """Task board commands."""
    pass


@task.command("create")
@click.argument("project_id", type=int)
@click.argument("title")
@click.option("--description", "-d", default=None)
@click.option("--type", "task_type", type=click.Choice(TaskType.ALL), default=TaskType.IMPLEMENTATION)
@click.option("--layer", type=click.Choice(TaskLayer.ALL), default=None)
@click.option("--sequence", type=int, default=None)
@click.option("--complexity", type=click.IntRange(1, 10), default=None)
@click.pass_context
def create_task(ctx, project_id, title, description, task_type, layer, sequence, complexity):
    """Create a manual task."""
    try:
        t = get_db().create_task(
            project_id,
            title,
            description=description,
            task_type=task_type,
            layer=layer,
            sequence=sequence,
            complexity_score=complexity,
        )
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(t)
    else:
        console.print(f"[green]Created task {t.id}[/green]: {t.title}")


@task.command("list")
@click.argument("project_id", type=int)
@click.option("--status", "statuses", multiple=True, type=click.Choice(TaskStatus.ALL))
@click.pass_context
def list_tasks(ctx, project_id, statuses):
    """List a project's tasks in board order."""
    tasks = get_db().list_tasks(project_id, statuses=list(statuses) or None)
    if wants_json(ctx):
        echo_json(tasks)
    else:
        console.print(_task_table(f"Tasks for project {project_id}", tasks))


@task.command("status")
@click.argument("task_id", type=int)
@click.argument("status", type=click.Choice(TaskStatus.ALL))
@click.option("--expect", "expected_status", type=click.Choice(TaskStatus.ALL), default=None,
              help="Only update if the task is currently in this status")
@click.pass_context
def set_status(ctx, task_id, status, expected_status):
    """Move a task to a new status."""
    try:
        t = get_container().hierarchy.transition_status(task_id, status, expected_status=expected_status)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(t)
    else:
        console.print(f"Task {t.id} is now [green]{t.status}[/green]")


@task.command("complexity")
@click.argument("task_id", type=int)
@click.argument("score", type=int)
@click.pass_context
def set_complexity(ctx, task_id, score):
    """Set a task's complexity score (1-10)."""
    try:
        t = get_container().hierarchy.set_complexity_score(task_id, score)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(t)
    else:
        console.print(f"Task {t.id} complexity set to {t.complexity_score}")


@task.command("breakdown")
@click.argument("task_id", type=int)
@click.option("--max-depth", type=click.IntRange(min=0), default=None)
@click.pass_context
def breakdown(ctx, task_id, max_depth):
    """Split a complex task into subtasks."""
    try:
        subtasks = get_container().hierarchy.breakdown(task_id, max_depth=max_depth)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(subtasks)
    else:
        console.print(_task_table(f"Subtasks of {task_id}", subtasks))


@task.command("timed-out")
@click.argument("project_id", type=int)
@click.option("--minutes", type=float, default=None, help="Stage threshold (default: in-progress timeout)")
@click.pass_context
def timed_out(ctx, project_id, minutes):
    """List tasks stuck in their current stage."""
    container = get_container()
    threshold = minutes * 60 if minutes is not None else container.context.config.in_progress_timeout_seconds
    tasks = container.hierarchy.find_timed_out(project_id, threshold)
    if wants_json(ctx):
        echo_json(tasks)
    else:
        console.print(_task_table("Timed-out tasks", tasks))


@task.command("workspace")
@click.argument("task_id", type=int)
@click.argument("path", type=click.Path(file_okay=False))
@click.option("--branch", default=None)
@click.option("--target-branch", default=None)
@click.pass_context
def add_workspace(ctx, task_id, path, branch, target_branch):
    """Register the working copy holding a task's changes."""
    try:
        ws = get_db().create_workspace(task_id, path, branch=branch, target_branch=target_branch)
    except TaskPilotError as exc:
        fail(ctx, exc)
        return
    if wants_json(ctx):
        echo_json(ws)
    else:
        console.print(f"Workspace {ws.id} registered for task {task_id}: {ws.path}")
