"""
Review Cycle Example

Walks one task through request-changes and resubmission, then prints its
history and the diff a reviewer would see on the second pass.

Usage:
    TASKREVIEW_DB_URL=sqlite+aiosqlite:///review-demo.db python examples/review_cycle.py
"""

import asyncio

from rich.console import Console
from rich.table import Table

from taskreview import db
from taskreview.history import get_task_history
from taskreview.resubmission import get_latest_diff
from taskreview.reviews import start_review, submit_review
from taskreview.schemas import ReviewSubmit, TaskCreate, TaskUpdate
from taskreview.states import Difficulty, ReviewDecision
from taskreview.tasks import create_task, submit_task, update_task

console = Console()


async def main() -> None:
    await db.init_db()
    async with db.get_session() as session:
        author = await db.get_user_by_email(session, "demo-author@example.com") or await db.create_user(
            session, "demo-author@example.com", name="Demo Author"
        )
        reviewer = await db.get_user_by_email(session, "demo-reviewer@example.com") or await db.create_user(
            session, "demo-reviewer@example.com", name="Demo Reviewer", role="REVIEWER"
        )

    task = await create_task(
        TaskCreate(
            title="Summarise a CSV",
            instruction="Print the row count and column means of data.csv.",
            difficulty=Difficulty.EASY,
            categories="data, csv",
        ),
        author,
    )
    console.print(f"[green]✓ Created task: {task.id}[/green]")

    await submit_task(task.id, author)
    await start_review(task.id, reviewer)
    await submit_review(
        task.id,
        ReviewSubmit(decision=ReviewDecision.REQUEST_CHANGES, comment="Specify how to handle blank cells."),
        reviewer,
    )
    await update_task(
        task.id,
        TaskUpdate(instruction="Print the row count and column means of data.csv, skipping blank cells."),
        author,
    )
    await submit_task(task.id, author)

    async with db.get_session() as session:
        versions = await get_task_history(session, task.id)
        diff = await get_latest_diff(session, task.id)
    await db.engine.dispose()

    table = Table(title="History")
    table.add_column("Version", style="cyan")
    table.add_column("State")
    table.add_column("Change")
    for v in reversed(versions):
        table.add_row(str(v.version), str(v.state), v.change_type)
    console.print(table)

    if diff is None:
        console.print("[yellow]No prior version[/yellow]")
        return
    console.print(f"\n[bold]Changes since version {diff.from_version}:[/bold]")
    for change in diff.changes:
        console.print(f"  {change.field} ({change.type})")


if __name__ == "__main__":
    asyncio.run(main())
