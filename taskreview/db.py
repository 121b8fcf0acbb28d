"""Async database connection and operations for the task review workflow."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import NotFoundError, SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .locks import task_lock
from .models import Base, Review, Task, User
from .states import COMPLETED_REVIEW_STATES, REVIEWABLE_STATES


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own transactions on SQLite so SAVEPOINT works, and enable FKs."""

    def on_connect(dbapi_conn: Any, _conn_record: Any) -> None:
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.execute("PRAGMA busy_timeout=30000;")  # 30s
        cur.close()

    def on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    sync_engine: Engine = engine.sync_engine
    event.listen(sync_engine, "connect", on_connect)
    event.listen(sync_engine, "begin", on_begin)


# Create async engine and session factory
engine = create_async_engine(settings.async_database_url, echo=settings.db_echo, pool_pre_ping=True)
if engine.dialect.name == "sqlite":
    _install_sqlite_hooks(engine)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


@asynccontextmanager
async def task_transaction(task_id: str) -> AsyncGenerator[AsyncSession]:
    """Unit of work for one task: per-task lock around a single committed transaction.

    The task write, its history snapshot and its audit entry commit together,
    and the lock is released only after the commit so the next writer sees the
    new version number.
    """
    async with task_lock(task_id):
        async with get_session() as session:
            yield session


# =============================================================================
# User Operations
# =============================================================================


async def create_user(
    session: AsyncSession,
    email: str,
    name: str | None = None,
    role: str = "USER",
) -> User:
    """Create a user record."""
    if role not in ("USER", "REVIEWER"):
        raise ValueError(f"Unknown role: {role}")
    user = User(email=email, name=name, role=role)
    session.add(user)
    await session.flush()
    return user


async def get_user_by_id(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def list_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).order_by(User.created_at))
    return list(result.scalars().all())


# =============================================================================
# Task Operations
# =============================================================================


async def get_task_by_id(session: AsyncSession, task_id: str) -> Task | None:
    """Get a task by its ID."""
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def get_task_for_update(session: AsyncSession, task_id: str) -> Task:
    """Load and row-lock a task for mutation; raises NotFoundError if missing."""
    result = await session.execute(select(Task).where(Task.id == task_id).with_for_update())
    task = result.scalar_one_or_none()
    if task is None:
        raise NotFoundError("Task")
    return task


async def list_tasks_by_author(
    session: AsyncSession, author_id: str, limit: int | None = None
) -> list[Task]:
    """Tasks owned by an author, newest first."""
    query = select(Task).where(Task.author_id == author_id).order_by(Task.created_at.desc())
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_tasks_for_review(session: AsyncSession, limit: int | None = None) -> list[Task]:
    """Tasks awaiting review, oldest first."""
    query = select(Task).where(Task.state.in_(list(REVIEWABLE_STATES))).order_by(Task.created_at.asc())
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_reviewer_tasks(
    session: AsyncSession,
    reviewer_id: str,
    filter_: str = "all",
    limit: int | None = None,
) -> list[Task]:
    """Tasks visible to a reviewer.

    ``pending``: everything awaiting review. ``history``: completed tasks the
    reviewer decided on or is assigned to. ``all``: both.
    """
    reviewed_by_me = select(Review.task_id).where(Review.reviewer_id == reviewer_id)
    history_clause = Task.state.in_(list(COMPLETED_REVIEW_STATES)) & (
        Task.id.in_(reviewed_by_me) | (Task.reviewer_id == reviewer_id)
    )
    pending_clause = Task.state.in_(list(REVIEWABLE_STATES))

    if filter_ == "pending":
        where = pending_clause
    elif filter_ == "history":
        where = history_clause
    elif filter_ == "all":
        where = pending_clause | history_clause
    else:
        raise ValueError(f"Unknown reviewer task filter: {filter_}")

    query = select(Task).where(where).order_by(Task.updated_at.desc())
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_reviews_for_task(session: AsyncSession, task_id: str) -> list[Review]:
    """Reviews for a task, newest first."""
    result = await session.execute(
        select(Review).where(Review.task_id == task_id).order_by(Review.created_at.desc())
    )
    return list(result.scalars().all())


async def has_reviewed(session: AsyncSession, task_id: str, reviewer_id: str) -> bool:
    result = await session.execute(
        select(Review.id).where(Review.task_id == task_id, Review.reviewer_id == reviewer_id).limit(1)
    )
    return result.first() is not None

