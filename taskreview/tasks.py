"""Task authoring: create, edit, submit, duplicate and delete.

Each mutation runs inside ``db.task_transaction`` so the task write, its
history snapshot and its audit entry commit together or not at all.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import delete

from . import db
from .audit import AuditAction, EntityType, log_audit
from .errors import (
    ForbiddenError,
    NotFoundError,
    TaskNotDeletableError,
    TaskNotEditableError,
    TaskNotSubmittableError,
    ValidationError,
)
from .history import create_snapshot
from .models import CONTENT_FIELDS, Review, Task, User
from .schemas import (
    TITLE_MAX,
    TaskCreate,
    TaskCreatedDetails,
    TaskDeletedDetails,
    TaskUpdate,
    TaskUpdatedDetails,
    TransitionDetails,
)
from .states import TaskState, can_delete_task, can_edit_task, can_submit_task

logger = logging.getLogger(__name__)

COPY_SUFFIX = " (Copy)"


def can_view_task(task: Task, user: User) -> bool:
    return task.author_id == user.id or user.is_reviewer


def _ensure_author(task: Task, user: User, action: str) -> None:
    if task.author_id != user.id:
        raise ForbiddenError(f"Only the author can {action} this task")


async def create_task(data: TaskCreate, user: User) -> Task:
    """Create a DRAFT task owned by ``user`` and record version 1."""
    task_id = str(uuid4())
    async with db.task_transaction(task_id) as session:
        task = Task(id=task_id, author_id=user.id, state=TaskState.DRAFT, **data.model_dump())
        session.add(task)
        await session.flush()

        await create_snapshot(session, task, user.id, "created")
        await log_audit(
            session,
            AuditAction.TASK_CREATED,
            EntityType.TASK,
            task.id,
            user,
            TaskCreatedDetails(title=task.title, state=task.state),
        )

    logger.info("Task %s created by %s", task.id, user.email)
    return task


async def get_task(task_id: str, user: User) -> Task:
    """Load a task the user may view (its author, or any reviewer)."""
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, task_id)
    if task is None:
        raise NotFoundError("Task")
    if not can_view_task(task, user):
        raise ForbiddenError()
    return task


async def update_task(task_id: str, data: TaskUpdate, user: User) -> Task:
    """Apply the provided fields to an editable task the user authored."""
    updates = data.changes()
    async with db.task_transaction(task_id) as session:
        task = await db.get_task_for_update(session, task_id)
        _ensure_author(task, user, "edit")
        if not can_edit_task(task.state):
            raise TaskNotEditableError(task.state)

        for name, value in updates.items():
            setattr(task, name, value)
        await session.flush()

        await create_snapshot(session, task, user.id, "updated")
        await log_audit(
            session,
            AuditAction.TASK_UPDATED,
            EntityType.TASK,
            task.id,
            user,
            TaskUpdatedDetails(
                updates=list(updates),
                previous_state=task.state,
                current_state=task.state,
            ),
        )

    logger.info("Task %s updated by %s (%s)", task.id, user.email, ", ".join(updates) or "no fields")
    return task


async def submit_task(task_id: str, user: User) -> Task:
    """Send a task to the review queue."""
    async with db.task_transaction(task_id) as session:
        task = await db.get_task_for_update(session, task_id)
        _ensure_author(task, user, "submit")
        if not can_submit_task(task.state):
            raise TaskNotSubmittableError(task.state)
        if not (task.title or "").strip() or not (task.instruction or "").strip():
            raise ValidationError("Task must have a title and instruction before submission")

        previous_state = task.state
        task.state = TaskState.SUBMITTED
        task.reviewer_id = None
        await session.flush()

        await create_snapshot(session, task, user.id, "submitted")
        await log_audit(
            session,
            AuditAction.TASK_SUBMITTED,
            EntityType.TASK,
            task.id,
            user,
            TransitionDetails(previous_state=previous_state, current_state=task.state),
        )

    logger.info("Task %s submitted by %s (from %s)", task.id, user.email, previous_state)
    return task


async def duplicate_task(task_id: str, user: User) -> Task:
    """Copy a viewable task's content into a new DRAFT owned by ``user``."""
    source = await get_task(task_id, user)

    content = {name: getattr(source, name) for name in CONTENT_FIELDS}
    # Keep the copy within the title column limit.
    content["title"] = source.title[: TITLE_MAX - len(COPY_SUFFIX)] + COPY_SUFFIX

    new_id = str(uuid4())
    async with db.task_transaction(new_id) as session:
        task = Task(id=new_id, author_id=user.id, state=TaskState.DRAFT, **content)
        session.add(task)
        await session.flush()

        await create_snapshot(session, task, user.id, "created")
        await log_audit(
            session,
            AuditAction.TASK_CREATED,
            EntityType.TASK,
            task.id,
            user,
            TaskCreatedDetails(title=task.title, state=task.state, duplicated_from=source.id),
        )

    logger.info("Task %s duplicated from %s by %s", task.id, source.id, user.email)
    return task


async def delete_task(task_id: str, user: User) -> None:
    """Delete a DRAFT or REJECTED task and its reviews. History is kept."""
    async with db.task_transaction(task_id) as session:
        task = await db.get_task_for_update(session, task_id)
        _ensure_author(task, user, "delete")
        if not can_delete_task(task.state):
            raise TaskNotDeletableError(task.state)

        title, state = task.title, task.state
        await session.execute(delete(Review).where(Review.task_id == task_id))
        await session.execute(delete(Task).where(Task.id == task_id))

        await log_audit(
            session,
            AuditAction.TASK_DELETED,
            EntityType.TASK,
            task_id,
            user,
            TaskDeletedDetails(title=title, state=state),
        )

    logger.info("Task %s deleted by %s", task_id, user.email)


async def list_tasks_by_author(author_id: str, limit: int | None = None) -> list[Task]:
    async with db.get_session() as session:
        return await db.list_tasks_by_author(session, author_id, limit=limit)


async def list_tasks_for_review(limit: int | None = None) -> list[Task]:
    async with db.get_session() as session:
        return await db.list_tasks_for_review(session, limit=limit)
