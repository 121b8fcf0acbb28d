"""SQLAlchemy models for the task review database."""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .schemas import AuditDetails, parse_details
from .states import Difficulty, ReviewDecision, TaskState

# Content fields copied into every history snapshot and compared by the diff engine.
CONTENT_FIELDS: tuple[str, ...] = (
    "title",
    "instruction",
    "difficulty",
    "categories",
    "max_agent_timeout_sec",
    "max_test_timeout_sec",
    "task_yaml",
    "docker_compose_yaml",
    "solution_sh",
    "run_tests_sh",
    "tests_json",
)


_task_state_enum = Enum(TaskState, name="task_state")
_difficulty_enum = Enum(Difficulty, name="difficulty")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


class User(Base):
    """Authors and reviewers. Identity-provider sync is handled elsewhere."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default="USER")  # 'USER', 'REVIEWER'
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    @property
    def is_reviewer(self) -> bool:
        return self.role == "REVIEWER"


# =============================================================================
# TASK-SCOPED TABLES
# =============================================================================


class Task(Base):
    """A benchmark task moving through the review lifecycle."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    instruction: Mapped[str] = mapped_column(Text, nullable=False)
    difficulty: Mapped[Difficulty] = mapped_column(_difficulty_enum, nullable=False)
    categories: Mapped[str] = mapped_column(String(200), nullable=False)
    max_agent_timeout_sec: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    max_test_timeout_sec: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    task_yaml: Mapped[str | None] = mapped_column(Text, nullable=True)
    docker_compose_yaml: Mapped[str | None] = mapped_column(Text, nullable=True)
    solution_sh: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_tests_sh: Mapped[str | None] = mapped_column(Text, nullable=True)
    tests_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[TaskState] = mapped_column(
        _task_state_enum, nullable=False, default=TaskState.DRAFT, index=True
    )
    author_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    reviewer_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )

    reviews: Mapped[list["Review"]] = relationship(back_populates="task", passive_deletes=True)

    def content(self) -> dict[str, Any]:
        """Return the content fields as a plain dict."""
        return {name: getattr(self, name) for name in CONTENT_FIELDS}


class TaskVersion(Base):
    """Immutable snapshot of a task's content and state.

    No foreign key to ``tasks``: history is kept when a task is deleted.
    """

    __tablename__ = "task_history"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
    task_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[TaskState] = mapped_column(_task_state_enum, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    instruction: Mapped[str] = mapped_column(Text, nullable=False)
    difficulty: Mapped[Difficulty] = mapped_column(_difficulty_enum, nullable=False)
    categories: Mapped[str] = mapped_column(String(200), nullable=False)
    max_agent_timeout_sec: Mapped[int] = mapped_column(Integer, nullable=False)
    max_test_timeout_sec: Mapped[int] = mapped_column(Integer, nullable=False)
    task_yaml: Mapped[str | None] = mapped_column(Text, nullable=True)
    docker_compose_yaml: Mapped[str | None] = mapped_column(Text, nullable=True)
    solution_sh: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_tests_sh: Mapped[str | None] = mapped_column(Text, nullable=True)
    tests_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str] = mapped_column(String, nullable=False)
    change_type: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("task_id", "version", name="uq_task_history_task_version"),
        Index("ix_task_history_task_created", "task_id", "created_at"),
    )

    def content(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in CONTENT_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "version": self.version,
            "state": str(self.state),
            **{
                name: str(value) if name == "difficulty" else value
                for name, value in self.content().items()
            },
            "changed_by": self.changed_by,
            "change_type": self.change_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Review(Base):
    """A reviewer's decision on a task; many accumulate across resubmissions."""

    __tablename__ = "reviews"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
    task_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tasks.id", ondelete="CASCADE"), index=True
    )
    reviewer_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    decision: Mapped[ReviewDecision] = mapped_column(
        Enum(ReviewDecision, name="review_decision"), nullable=False
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    task: Mapped[Task] = relationship(back_populates="reviews")


# =============================================================================
# AUDIT
# =============================================================================


class AuditLog(Base):
    """Append-only record of who did what."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_uuid)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    user_name: Mapped[str | None] = mapped_column(String, nullable=True)
    user_email: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )

    __table_args__ = (Index("ix_audit_logs_entity", "entity_type", "entity_id"),)

    @property
    def parsed_details(self) -> AuditDetails:
        return parse_details(self.details)
