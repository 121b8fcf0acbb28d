"""Find the version a reviewer last saw before the author resubmitted.

State-only snapshots (submit, review start, decisions) carry the same content
as the version before them, so "what changed since last time" means: the
newest older version whose content differs from the latest one.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from .diff import TaskDiff, build_diff, has_content_difference
from .history import get_task_history
from .models import TaskVersion


@dataclass
class ResubmissionPair:
    previous: TaskVersion
    current: TaskVersion


def find_resubmission_pair(versions: Sequence[TaskVersion]) -> ResubmissionPair | None:
    """Pair the latest version with the newest older version that differs in content.

    ``versions`` must be ordered newest first, as returned by
    ``get_task_history``.
    """
    if len(versions) < 2:
        return None

    current = versions[0]
    for candidate in versions[1:]:
        if has_content_difference(candidate, current):
            return ResubmissionPair(previous=candidate, current=current)
    return None


async def get_latest_before_resubmission(session: AsyncSession, task_id: str) -> ResubmissionPair | None:
    versions = await get_task_history(session, task_id)
    return find_resubmission_pair(versions)


async def get_latest_diff(session: AsyncSession, task_id: str) -> TaskDiff | None:
    """Diff between the latest version and the last content-different one.

    None means there is no prior version to compare against.
    """
    pair = await get_latest_before_resubmission(session, task_id)
    if pair is None:
        return None
    return build_diff(pair.previous, pair.current)


async def has_content_changes(session: AsyncSession, task_id: str) -> bool:
    return await get_latest_before_resubmission(session, task_id) is not None
