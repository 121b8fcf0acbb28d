"""Task history snapshots.

Every create, edit and state transition appends a full copy of the task's
content fields and state as the next per-task version. Versions start at 1,
are gap-free and are never edited or deleted.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import VersionConflictError
from .models import CONTENT_FIELDS, Task, TaskVersion

logger = logging.getLogger(__name__)


async def get_latest_version_number(session: AsyncSession, task_id: str) -> int:
    """Highest version recorded for a task, 0 when it has none."""
    result = await session.execute(
        select(func.max(TaskVersion.version)).where(TaskVersion.task_id == task_id)
    )
    return result.scalar_one_or_none() or 0


async def create_snapshot(
    session: AsyncSession,
    task: Task,
    changed_by: str,
    change_type: str,
) -> TaskVersion:
    """Append the task's current content and state as version max+1.

    Call inside ``db.task_transaction(task.id)`` so the read-max/insert pair is
    serialised per task. The insert runs in a savepoint; if another writer took
    the same number (unique constraint on task_id, version) the savepoint is
    rolled back and the number re-read.
    """
    attempts = settings.snapshot_max_attempts
    for attempt in range(1, attempts + 1):
        next_version = await get_latest_version_number(session, task.id) + 1
        snapshot = TaskVersion(
            task_id=task.id,
            version=next_version,
            state=task.state,
            changed_by=changed_by,
            change_type=change_type,
            **{name: getattr(task, name) for name in CONTENT_FIELDS},
        )
        try:
            async with session.begin_nested():
                session.add(snapshot)
        except IntegrityError:
            logger.warning(
                "Version %s of task %s already taken (attempt %s/%s), retrying",
                next_version,
                task.id,
                attempt,
                attempts,
            )
            continue

        logger.debug("Recorded task %s version %s (%s)", task.id, next_version, change_type)
        return snapshot

    raise VersionConflictError(task.id, attempts)


async def get_task_history(session: AsyncSession, task_id: str) -> list[TaskVersion]:
    """All snapshots of a task, newest version first."""
    result = await session.execute(
        select(TaskVersion).where(TaskVersion.task_id == task_id).order_by(TaskVersion.version.desc())
    )
    return list(result.scalars().all())


async def get_version(session: AsyncSession, task_id: str, version: int) -> TaskVersion | None:
    """A single snapshot, or None when the task has no such version."""
    result = await session.execute(
        select(TaskVersion).where(TaskVersion.task_id == task_id, TaskVersion.version == version)
    )
    return result.scalar_one_or_none()
