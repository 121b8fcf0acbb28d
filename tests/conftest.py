"""Shared test fixtures and configuration for pytest."""

import os
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

# Point the engine at a throwaway SQLite file before taskreview is imported.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="taskreview-tests-"))
os.environ["TASKREVIEW_DB_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR / 'taskreview-test.db'}"
os.environ["TASKREVIEW_REDIS_LOCK_ENABLED"] = "false"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from taskreview import db  # noqa: E402
from taskreview.models import Task, User  # noqa: E402
from taskreview.schemas import TaskCreate  # noqa: E402
from taskreview.states import Difficulty  # noqa: E402
from taskreview.tasks import create_task  # noqa: E402


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None]:
    """Fresh tables for every test; pooled connections are dropped afterwards."""
    await db.drop_db()
    await db.init_db()
    yield
    await db.engine.dispose()


async def _add_user(email: str, name: str, role: str = "USER") -> User:
    async with db.get_session() as session:
        return await db.create_user(session, email, name=name, role=role)


@pytest_asyncio.fixture
async def author(database: None) -> User:
    return await _add_user("author@example.com", "Author")


@pytest_asyncio.fixture
async def other_author(database: None) -> User:
    return await _add_user("other@example.com", "Other Author")


@pytest_asyncio.fixture
async def reviewer(database: None) -> User:
    return await _add_user("reviewer@example.com", "Reviewer", role="REVIEWER")


@pytest_asyncio.fixture
async def other_reviewer(database: None) -> User:
    return await _add_user("reviewer2@example.com", "Second Reviewer", role="REVIEWER")


@pytest.fixture
def task_input() -> TaskCreate:
    return TaskCreate(
        title="Fix the flaky scheduler",
        instruction="Make the cron scheduler deterministic under load.",
        difficulty=Difficulty.MEDIUM,
        categories="backend, scheduling",
        task_yaml="version: 1\n",
        solution_sh="#!/bin/bash\necho fix\n",
    )


@pytest_asyncio.fixture
async def draft_task(author: User, task_input: TaskCreate) -> Task:
    return await create_task(task_input, author)
