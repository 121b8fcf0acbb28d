"""Main CLI entry point for taskreview."""

import asyncio
import difflib
import logging
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .audit import AuditAction, get_logs
from .config import settings
from .diff import ChangeType, DiffChange, TaskDiff, get_diff
from .errors import NotFoundError
from .history import get_task_history
from .models import Task, User
from .resubmission import get_latest_diff
from .reviews import get_reviewer_tasks, get_reviews, start_review, submit_review
from .schemas import ReviewSubmit, TaskCreate, TaskUpdate, validate_input
from .states import Difficulty, ReviewDecision, TaskState, difficulty_label, parse_categories, state_label
from .tasks import (
    create_task,
    delete_task,
    duplicate_task,
    get_task,
    list_tasks_by_author,
    submit_task,
    update_task,
)

console = Console()

STATE_STYLES: dict[TaskState, str] = {
    TaskState.DRAFT: "dim",
    TaskState.SUBMITTED: "cyan",
    TaskState.IN_REVIEW: "blue",
    TaskState.APPROVED: "green",
    TaskState.REJECTED: "red",
    TaskState.CHANGES_REQUESTED: "yellow",
}

CHANGE_STYLES: dict[ChangeType, str] = {
    ChangeType.ADDED: "green",
    ChangeType.REMOVED: "red",
    ChangeType.MODIFIED: "yellow",
}

# Content file options shared by `task create` and `task update`.
FILE_FIELDS: dict[str, str] = {
    "task_yaml": "--task-yaml",
    "docker_compose_yaml": "--docker-compose",
    "solution_sh": "--solution",
    "run_tests_sh": "--run-tests",
    "tests_json": "--tests-json",
}


T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a command's coroutine, releasing pooled connections before the loop closes."""

    async def wrapper() -> T:
        try:
            return await coro
        finally:
            await db.engine.dispose()

    return asyncio.run(wrapper())


def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _styled_state(state: TaskState) -> str:
    style = STATE_STYLES.get(TaskState(state), "white")
    return f"[{style}]{state_label(state)}[/{style}]"


def _fmt_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


async def _acting_user(ctx: click.Context) -> User:
    email = ctx.obj.get("user_email") if ctx.obj else None
    if not email:
        raise click.UsageError("No acting user. Pass --as EMAIL or set TASKREVIEW_USER.")
    async with db.get_session() as session:
        user = await db.get_user_by_email(session, email)
    if user is None:
        raise NotFoundError(f"User {email}")
    return user


async def _ensure_history_access(task_id: str, user: User) -> None:
    """Authors see their own task's history; reviewers see any, even after deletion."""
    try:
        await get_task(task_id, user)
    except NotFoundError:
        if not user.is_reviewer:
            raise


def _read_files(values: dict[str, Path | None]) -> dict[str, str]:
    return {name: path.read_text() for name, path in values.items() if path is not None}


def _file_options(func: Any) -> Any:
    for name, flag in reversed(FILE_FIELDS.items()):
        func = click.option(
            flag,
            name,
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            default=None,
            help=f"File with the {name} content",
        )(func)
    return func


def text_diff_lines(old: str | None, new: str | None) -> list[str]:
    """Line-by-line rendering of a modified text field, as rich markup."""
    lines: list[str] = []
    for line in difflib.unified_diff(
        (old or "").splitlines(),
        (new or "").splitlines(),
        fromfile="before",
        tofile="after",
        lineterm="",
    ):
        if line.startswith(("---", "+++")):
            continue
        if line.startswith("@@"):
            lines.append(f"[cyan]{escape(line)}[/cyan]")
        elif line.startswith("+"):
            lines.append(f"[green]{escape(line)}[/green]")
        elif line.startswith("-"):
            lines.append(f"[red]{escape(line)}[/red]")
        else:
            lines.append(escape(line))
    return lines


def _render_change(change: DiffChange) -> None:
    style = CHANGE_STYLES[change.type]
    console.print(f"[bold]{change.field}[/bold] [{style}]({change.type})[/{style}]")
    old, new = change.old_value, change.new_value
    multiline = isinstance(old, str) and isinstance(new, str) and ("\n" in old or "\n" in new)
    if change.type == ChangeType.MODIFIED and multiline:
        for line in text_diff_lines(old, new):
            console.print(f"  {line}")
        return
    if old is not None:
        console.print(f"  [red]- {escape(str(old))}[/red]")
    if new is not None:
        console.print(f"  [green]+ {escape(str(new))}[/green]")


def _render_diff(diff: TaskDiff) -> None:
    console.print(
        Panel(
            f"Versions: {diff.from_version} → {diff.to_version}\n"
            f"State: {_styled_state(diff.from_state)} → {_styled_state(diff.to_state)}\n"
            f"Changed by: {diff.changed_by or '-'}\n"
            f"Changed at: {_fmt_time(diff.changed_at)}",
            title="Diff",
        )
    )
    if not diff.changes:
        console.print("[yellow]No changes yet[/yellow]")
        return
    for change in diff.changes:
        _render_change(change)


def _render_task(task: Task) -> None:
    console.print(
        Panel(
            f"[bold]{escape(task.title)}[/bold]\n\n"
            f"State: {_styled_state(task.state)}\n"
            f"Difficulty: {difficulty_label(task.difficulty)}\n"
            f"Categories: {', '.join(parse_categories(task.categories))}\n"
            f"Timeouts: agent {task.max_agent_timeout_sec}s, tests {task.max_test_timeout_sec}s\n"
            f"Author: {task.author_id}\n"
            f"Reviewer: {task.reviewer_id or '-'}\n"
            f"Created: {_fmt_time(task.created_at)}  Updated: {_fmt_time(task.updated_at)}",
            title=f"Task: {task.id}",
        )
    )
    console.print(escape(task.instruction))


def _tasks_table(title: str, tasks: list[Task]) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("State")
    table.add_column("Difficulty")
    table.add_column("Updated")
    for t in tasks:
        table.add_row(
            t.id,
            escape(t.title[:40] + "..." if len(t.title) > 40 else t.title),
            _styled_state(t.state),
            difficulty_label(t.difficulty),
            _fmt_time(t.updated_at),
        )
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--as", "user_email", envvar="TASKREVIEW_USER", default=None, help="Acting user's email")
@click.pass_context
def main(ctx: click.Context, user_email: str | None) -> None:
    """Task review workflow CLI.

    Authors draft and submit tasks; reviewers approve, reject or request changes.
    Every change is versioned and audited.
    """
    _configure_logging()
    ctx.ensure_object(dict)
    ctx.obj["user_email"] = user_email


# =============================================================================
# Database
# =============================================================================


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (local/dev databases; use alembic elsewhere)."""
    _run(db.init_db())
    console.print("[green]✓[/green] Database tables created")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> set[str]:
        from sqlalchemy import inspect

        from .models import Base

        async with db.engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        return set(Base.metadata.tables) - tables

    missing = _run(check())
    if missing:
        console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
        console.print("Run: `alembic upgrade head`")
        raise SystemExit(1)
    console.print("[green]Schema ready[/green]")


@main.command(name="db-info")
def db_info() -> None:
    """Show database connection info."""
    if settings.db_url:
        body = f"URL: {settings.db_url}"
    else:
        body = (
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}"
        )
    body += f"\nRedis locks: {'on' if settings.redis_lock_enabled else 'off'} ({settings.redis_url})"
    console.print(Panel(body, title="Database Configuration"))


# =============================================================================
# Users
# =============================================================================


@main.group(name="user")
def user_group() -> None:
    """Manage authors and reviewers."""
    pass


@user_group.command(name="add")
@click.argument("email")
@click.option("--name", default=None, help="Display name")
@click.option("--reviewer", is_flag=True, help="Grant the reviewer role")
def user_add(email: str, name: str | None, reviewer: bool) -> None:
    """Add a user.

    EMAIL: The user's email (used with --as)
    """

    async def do_add() -> User:
        async with db.get_session() as session:
            return await db.create_user(session, email, name=name, role="REVIEWER" if reviewer else "USER")

    user = _run(do_add())
    console.print(f"[green]✓[/green] Added {user.email} ({user.role}) as {user.id}")


@user_group.command(name="list")
def user_list() -> None:
    """List users."""

    async def do_list() -> list[User]:
        async with db.get_session() as session:
            return await db.list_users(session)

    users = _run(do_list())
    if not users:
        console.print("[yellow]No users found[/yellow]")
        return

    table = Table(title="Users")
    table.add_column("ID", style="cyan")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Role")
    for u in users:
        table.add_row(u.id, u.email, u.name or "-", u.role)
    console.print(table)


# =============================================================================
# Tasks
# =============================================================================


@main.group(name="task")
def task_group() -> None:
    """Create and manage your tasks."""
    pass


@task_group.command(name="create")
@click.option("--title", required=True)
@click.option("--instruction", required=True)
@click.option("--difficulty", type=click.Choice([d.value for d in Difficulty]), required=True)
@click.option("--categories", required=True, help="Comma-separated categories")
@click.option("--agent-timeout", "max_agent_timeout_sec", type=int, default=None)
@click.option("--test-timeout", "max_test_timeout_sec", type=int, default=None)
@_file_options
@click.pass_context
def task_create(ctx: click.Context, **options: Any) -> None:
    """Create a DRAFT task."""
    files = {name: options.pop(name) for name in FILE_FIELDS}
    data = {k: v for k, v in options.items() if v is not None}
    data.update(_read_files(files))
    payload = validate_input(TaskCreate, data)

    async def do_create() -> Task:
        user = await _acting_user(ctx)
        return await create_task(payload, user)

    task = _run(do_create())
    console.print(f"[green]✓[/green] Created task {task.id}")


@task_group.command(name="show")
@click.argument("task_id")
@click.pass_context
def task_show(ctx: click.Context, task_id: str) -> None:
    """Show a task and its reviews.

    TASK_ID: The task identifier
    """

    async def do_show() -> None:
        user = await _acting_user(ctx)
        task = await get_task(task_id, user)
        reviews = await get_reviews(task_id)
        _render_task(task)
        if reviews:
            table = Table(title="Reviews")
            table.add_column("When")
            table.add_column("Reviewer", style="cyan")
            table.add_column("Decision")
            table.add_column("Comment")
            for r in reviews:
                table.add_row(_fmt_time(r.created_at), r.reviewer_id, str(r.decision), r.comment or "-")
            console.print(table)

    _run(do_show())


@task_group.command(name="list")
@click.option("--limit", default=20, help="Number of tasks to show")
@click.pass_context
def task_list(ctx: click.Context, limit: int) -> None:
    """List your tasks, newest first."""

    async def do_list() -> list[Task]:
        user = await _acting_user(ctx)
        return await list_tasks_by_author(user.id, limit=limit)

    tasks = _run(do_list())
    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return
    console.print(_tasks_table("My Tasks", tasks))


@task_group.command(name="update")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--instruction", default=None)
@click.option("--difficulty", type=click.Choice([d.value for d in Difficulty]), default=None)
@click.option("--categories", default=None, help="Comma-separated categories")
@click.option("--agent-timeout", "max_agent_timeout_sec", type=int, default=None)
@click.option("--test-timeout", "max_test_timeout_sec", type=int, default=None)
@_file_options
@click.pass_context
def task_update(ctx: click.Context, task_id: str, **options: Any) -> None:
    """Edit a DRAFT or CHANGES_REQUESTED task.

    TASK_ID: The task identifier
    """
    files = {name: options.pop(name) for name in FILE_FIELDS}
    data = {k: v for k, v in options.items() if v is not None}
    data.update(_read_files(files))
    payload = validate_input(TaskUpdate, data)

    async def do_update() -> Task:
        user = await _acting_user(ctx)
        return await update_task(task_id, payload, user)

    task = _run(do_update())
    console.print(f"[green]✓[/green] Updated task {task.id}")


@task_group.command(name="submit")
@click.argument("task_id")
@click.pass_context
def task_submit(ctx: click.Context, task_id: str) -> None:
    """Submit a task for review.

    TASK_ID: The task identifier
    """

    async def do_submit() -> Task:
        user = await _acting_user(ctx)
        return await submit_task(task_id, user)

    task = _run(do_submit())
    console.print(f"[green]✓[/green] Task {task.id} is now {_styled_state(task.state)}")


@task_group.command(name="duplicate")
@click.argument("task_id")
@click.pass_context
def task_duplicate(ctx: click.Context, task_id: str) -> None:
    """Copy a task into a new DRAFT.

    TASK_ID: The task to copy
    """

    async def do_duplicate() -> Task:
        user = await _acting_user(ctx)
        return await duplicate_task(task_id, user)

    task = _run(do_duplicate())
    console.print(f"[green]✓[/green] Created {task.id}: {escape(task.title)}")


@task_group.command(name="delete")
@click.argument("task_id")
@click.confirmation_option(prompt="Delete this task? History is kept.")
@click.pass_context
def task_delete(ctx: click.Context, task_id: str) -> None:
    """Delete a DRAFT or REJECTED task.

    TASK_ID: The task identifier
    """

    async def do_delete() -> None:
        user = await _acting_user(ctx)
        await delete_task(task_id, user)

    _run(do_delete())
    console.print(f"[green]✓[/green] Deleted task {task_id}")


# =============================================================================
# Reviews
# =============================================================================


@main.group(name="review")
def review_group() -> None:
    """Reviewer actions."""
    pass


@review_group.command(name="queue")
@click.option(
    "--filter",
    "filter_",
    type=click.Choice(["pending", "history", "all"]),
    default="pending",
    help="Which tasks to list",
)
@click.option("--limit", default=20, help="Number of tasks to show")
@click.pass_context
def review_queue(ctx: click.Context, filter_: str, limit: int) -> None:
    """List tasks awaiting review (or your review history)."""

    async def do_queue() -> list[Task]:
        user = await _acting_user(ctx)
        return await get_reviewer_tasks(user.id, filter_=filter_, limit=limit)

    tasks = _run(do_queue())
    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return
    console.print(_tasks_table(f"Review Queue ({filter_})", tasks))


@review_group.command(name="start")
@click.argument("task_id")
@click.pass_context
def review_start(ctx: click.Context, task_id: str) -> None:
    """Claim a SUBMITTED task for review.

    TASK_ID: The task identifier
    """

    async def do_start() -> Task:
        user = await _acting_user(ctx)
        return await start_review(task_id, user)

    task = _run(do_start())
    console.print(f"[green]✓[/green] Task {task.id} is now {_styled_state(task.state)}")


@review_group.command(name="submit")
@click.argument("task_id")
@click.argument("decision", type=click.Choice([d.value for d in ReviewDecision]))
@click.option("--comment", "-m", default=None, help="Feedback for the author")
@click.pass_context
def review_submit(ctx: click.Context, task_id: str, decision: str, comment: str | None) -> None:
    """Record a review decision.

    TASK_ID: The task identifier
    DECISION: APPROVE, REJECT or REQUEST_CHANGES
    """
    payload = validate_input(ReviewSubmit, {"decision": decision, "comment": comment})

    async def do_submit() -> tuple[Task, Any]:
        user = await _acting_user(ctx)
        return await submit_review(task_id, payload, user)

    task, review = _run(do_submit())
    console.print(
        f"[green]✓[/green] Review {review.id} recorded; task is now {_styled_state(task.state)}"
    )


# =============================================================================
# History, diffs and audit
# =============================================================================


@main.command()
@click.argument("task_id")
@click.pass_context
def history(ctx: click.Context, task_id: str) -> None:
    """Show the version history of a task.

    TASK_ID: The task identifier
    """

    async def do_history() -> list[Any]:
        user = await _acting_user(ctx)
        await _ensure_history_access(task_id, user)
        async with db.get_session() as session:
            return await get_task_history(session, task_id)

    versions = _run(do_history())
    if not versions:
        console.print("[yellow]No history recorded[/yellow]")
        return

    table = Table(title=f"History: {task_id}")
    table.add_column("Version", style="cyan")
    table.add_column("State")
    table.add_column("Change")
    table.add_column("By")
    table.add_column("When")
    for v in versions:
        table.add_row(str(v.version), _styled_state(v.state), v.change_type, v.changed_by, _fmt_time(v.created_at))
    console.print(table)


@main.command()
@click.argument("task_id")
@click.argument("from_version", type=int)
@click.argument("to_version", type=int)
@click.pass_context
def diff(ctx: click.Context, task_id: str, from_version: int, to_version: int) -> None:
    """Compare two versions of a task.

    TASK_ID: The task identifier
    FROM_VERSION / TO_VERSION: Version numbers (either order)
    """

    async def do_diff() -> TaskDiff | None:
        user = await _acting_user(ctx)
        await _ensure_history_access(task_id, user)
        async with db.get_session() as session:
            return await get_diff(session, task_id, from_version, to_version)

    result = _run(do_diff())
    if result is None:
        console.print("[yellow]No diff available[/yellow]")
        return
    _render_diff(result)


@main.command(name="latest-diff")
@click.argument("task_id")
@click.pass_context
def latest_diff(ctx: click.Context, task_id: str) -> None:
    """Show what changed since the last version with different content.

    TASK_ID: The task identifier
    """

    async def do_latest() -> TaskDiff | None:
        user = await _acting_user(ctx)
        await _ensure_history_access(task_id, user)
        async with db.get_session() as session:
            return await get_latest_diff(session, task_id)

    result = _run(do_latest())
    if result is None:
        console.print("[yellow]No prior version[/yellow]")
        return
    _render_diff(result)


@main.command()
@click.option("--task", "task_id", default=None, help="Only entries for this task")
@click.option("--user", "user_email", default=None, help="Only entries by this user")
@click.option("--action", type=click.Choice([a.value for a in AuditAction]), default=None)
@click.option("--limit", default=50, help="Page size")
@click.option("--offset", default=0, help="Entries to skip")
@click.pass_context
def audit(
    ctx: click.Context,
    task_id: str | None,
    user_email: str | None,
    action: str | None,
    limit: int,
    offset: int,
) -> None:
    """Show the audit trail."""

    async def do_audit() -> Any:
        await _acting_user(ctx)
        async with db.get_session() as session:
            user_id = None
            if user_email:
                user = await db.get_user_by_email(session, user_email)
                if user is None:
                    raise NotFoundError(f"User {user_email}")
                user_id = user.id
            return await get_logs(
                session,
                entity_id=task_id,
                user_id=user_id,
                action=action,
                limit=limit,
                offset=offset,
            )

    page = _run(do_audit())
    if not page.logs:
        console.print("[yellow]No audit entries[/yellow]")
        return

    table = Table(title=f"Audit Log ({page.offset + 1}-{page.offset + len(page.logs)} of {page.total})")
    table.add_column("When")
    table.add_column("Action", style="cyan")
    table.add_column("Entity")
    table.add_column("User")
    table.add_column("Details")
    for log in page.logs:
        details = log.parsed_details.model_dump(exclude={"kind"}, exclude_none=True)
        table.add_row(
            _fmt_time(log.created_at),
            log.action,
            f"{log.entity_type} {log.entity_id}",
            log.user_email or log.user_id,
            escape(", ".join(f"{k}={v}" for k, v in details.items())),
        )
    console.print(table)


if __name__ == "__main__":
    main()
