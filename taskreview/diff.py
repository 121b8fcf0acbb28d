"""Field-level diffs between two task versions.

Comparison is plain ``!=`` per content field; long text is not decomposed
into lines here (that is a presentation concern).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidVersionError
from .history import get_version
from .models import CONTENT_FIELDS
from .states import TaskState


class ChangeType(StrEnum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class VersionLike(Protocol):
    version: int
    state: TaskState
    changed_by: str
    created_at: datetime


@dataclass(frozen=True)
class DiffChange:
    """One changed field between two versions."""

    field: str
    old_value: Any
    new_value: Any
    type: ChangeType

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "old_value": _jsonable(self.old_value),
            "new_value": _jsonable(self.new_value),
            "type": self.type.value,
        }


@dataclass
class TaskDiff:
    """Diff between two versions of one task.

    ``from_version``/``to_version`` echo what the caller asked for, even when
    the comparison itself ran oldest to newest. Everything else describes the
    oldest to newest direction: ``from_state`` is the older snapshot's state,
    ``to_state`` and ``changed_by`` come from the newer one, so on a
    descending request ``from_state`` belongs to ``to_version``.
    """

    from_version: int
    to_version: int
    from_state: TaskState
    to_state: TaskState
    changes: list[DiffChange] = field(default_factory=list)
    changed_by: str | None = None
    changed_at: datetime | None = None

    @property
    def changed_fields(self) -> list[str]:
        return [c.field for c in self.changes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "from_state": str(self.from_state),
            "to_state": str(self.to_state),
            "changes": [c.to_dict() for c in self.changes],
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }


def _jsonable(value: Any) -> Any:
    return str(value) if isinstance(value, StrEnum) else value


def classify_change(old: Any, new: Any) -> ChangeType:
    """Classify a differing pair.

    Presence is ``is not None``: an empty string or 0 is a present value, so
    "" -> "text" is a modification, not an addition.
    """
    if old is None and new is not None:
        return ChangeType.ADDED
    if old is not None and new is None:
        return ChangeType.REMOVED
    return ChangeType.MODIFIED


def compute_changes(old: Any, new: Any, fields: tuple[str, ...] = CONTENT_FIELDS) -> list[DiffChange]:
    """Changed content fields between two version-like objects, in field order."""
    changes: list[DiffChange] = []
    for name in fields:
        old_value = getattr(old, name)
        new_value = getattr(new, name)
        if old_value != new_value:
            changes.append(
                DiffChange(
                    field=name,
                    old_value=old_value,
                    new_value=new_value,
                    type=classify_change(old_value, new_value),
                )
            )
    return changes


def has_content_difference(old: Any, new: Any, fields: tuple[str, ...] = CONTENT_FIELDS) -> bool:
    return any(getattr(old, name) != getattr(new, name) for name in fields)


def build_diff(
    older: VersionLike,
    newer: VersionLike,
    *,
    from_version: int | None = None,
    to_version: int | None = None,
) -> TaskDiff:
    """Diff two loaded snapshots, oldest first."""
    return TaskDiff(
        from_version=from_version if from_version is not None else older.version,
        to_version=to_version if to_version is not None else newer.version,
        from_state=older.state,
        to_state=newer.state,
        changes=compute_changes(older, newer),
        changed_by=newer.changed_by,
        changed_at=newer.created_at,
    )


def _validate_version(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidVersionError(name, value)
    return value


async def get_diff(
    session: AsyncSession,
    task_id: str,
    from_version: int,
    to_version: int,
) -> TaskDiff | None:
    """Diff two versions of a task.

    Invalid version numbers raise InvalidVersionError before any query. A
    missing version is not an error: None means "no diff available".
    Descending requests are compared oldest to newest; the response keeps the
    requested numbers.
    """
    _validate_version("from_version", from_version)
    _validate_version("to_version", to_version)

    older_number, newer_number = sorted((from_version, to_version))
    older = await get_version(session, task_id, older_number)
    newer = await get_version(session, task_id, newer_number)
    if older is None or newer is None:
        return None

    return build_diff(older, newer, from_version=from_version, to_version=to_version)
