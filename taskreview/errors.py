"""Error types and helpers for the task review workflow."""

from __future__ import annotations

import re
from typing import Any

import click


class TaskReviewError(click.ClickException):
    """Base error for task and review operations.

    ``status_code`` mirrors the HTTP status an API layer would answer with.
    """

    status_code: int = 500
    exit_code = 1

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.details = details


class BadRequestError(TaskReviewError):
    status_code = 400


class ForbiddenError(TaskReviewError):
    status_code = 403
    exit_code = 3

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class NotFoundError(TaskReviewError):
    status_code = 404
    exit_code = 4

    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictError(TaskReviewError):
    status_code = 409


class ValidationError(TaskReviewError):
    status_code = 422
    exit_code = 2


class InvalidTransitionError(BadRequestError):
    """Raised when a requested state change is not in the transition table."""

    def __init__(self, current: str, requested: str, message: str | None = None) -> None:
        super().__init__(message or f"Invalid state transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class TaskNotEditableError(BadRequestError):
    def __init__(self, state: str) -> None:
        super().__init__(
            f"Task cannot be edited in {state} state. "
            "Only DRAFT and CHANGES_REQUESTED tasks can be edited."
        )


class TaskNotSubmittableError(InvalidTransitionError):
    def __init__(self, current: str) -> None:
        super().__init__(
            current,
            "SUBMITTED",
            f"Task cannot be submitted from {current} state. "
            "Only DRAFT, REJECTED, and CHANGES_REQUESTED tasks can be submitted.",
        )


class ReviewNotStartableError(InvalidTransitionError):
    def __init__(self, current: str) -> None:
        super().__init__(
            current,
            "IN_REVIEW",
            f"Task must be in SUBMITTED state to start review. Current state: {current}",
        )


class TaskNotReviewableError(InvalidTransitionError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            current,
            requested,
            f"Task is not in a reviewable state. Current state: {current}, requested: {requested}",
        )


class TaskNotDeletableError(BadRequestError):
    def __init__(self, state: str) -> None:
        super().__init__(
            f"Task cannot be deleted in {state} state. Only DRAFT and REJECTED tasks can be deleted."
        )


class InvalidVersionError(ValidationError):
    """Raised when a diff is requested with a non-positive or non-integer version."""

    def __init__(self, name: str, value: Any) -> None:
        super().__init__(f"{name} must be a positive integer, got {value!r}")
        self.value = value


class VersionConflictError(ConflictError):
    """Raised when a snapshot version could not be allocated after retrying."""

    def __init__(self, task_id: str, attempts: int) -> None:
        super().__init__(f"Could not allocate a history version for task {task_id} after {attempts} attempts")
        self.task_id = task_id


class TaskLockTimeoutError(ConflictError):
    """Raised when another process held the task lock for the whole wait."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is locked by another writer, try again")
        self.task_id = task_id


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _PG_MISSING_RELATION_RE.search(str(e)) or _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Drivers don't format this consistently.
    return any("undefinedtableerror" in str(e).lower() for e in _unwrap_exception_chain(exc))


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    return "\n".join(
        [
            f"Database schema is not initialized{table_hint}.",
            "Run: `alembic upgrade head` (or `taskreview init-db` for a local database)",
            "Or validate with: `taskreview schema-check`",
        ]
    )
