import pytest
from sqlalchemy import select

from taskreview import db
from taskreview.audit import AuditAction, get_entity_logs
from taskreview.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    TaskNotDeletableError,
    TaskNotEditableError,
    TaskNotSubmittableError,
    ValidationError,
)
from taskreview.history import get_task_history
from taskreview.models import Review, Task, User
from taskreview.reviews import start_review, submit_review
from taskreview.schemas import ReviewSubmit, TaskCreate, TaskCreatedDetails, TaskUpdate, TaskUpdatedDetails
from taskreview.states import ReviewDecision, TaskState
from taskreview.tasks import (
    create_task,
    delete_task,
    duplicate_task,
    get_task,
    list_tasks_by_author,
    list_tasks_for_review,
    submit_task,
    update_task,
)

MISSING_ID = "00000000-0000-0000-0000-000000000000"


async def _history(task_id: str) -> list[tuple[int, TaskState, str]]:
    async with db.get_session() as session:
        versions = await get_task_history(session, task_id)
    return [(v.version, v.state, v.change_type) for v in reversed(versions)]


async def _actions(task_id: str) -> list[str]:
    async with db.get_session() as session:
        logs = await get_entity_logs(session, "Task", task_id)
    return sorted(log.action for log in logs)


@pytest.mark.asyncio
async def test_create_task(draft_task: Task, author: User) -> None:
    assert draft_task.state == TaskState.DRAFT
    assert draft_task.author_id == author.id
    assert draft_task.max_agent_timeout_sec == 300

    async with db.get_session() as session:
        logs = await get_entity_logs(session, "Task", draft_task.id)
    assert [log.action for log in logs] == [AuditAction.TASK_CREATED]
    details = logs[0].parsed_details
    assert isinstance(details, TaskCreatedDetails)
    assert details.title == draft_task.title
    assert details.duplicated_from is None
    assert logs[0].user_email == author.email


@pytest.mark.asyncio
async def test_get_task_visibility(draft_task: Task, author: User, other_author: User, reviewer: User) -> None:
    assert (await get_task(draft_task.id, author)).id == draft_task.id
    assert (await get_task(draft_task.id, reviewer)).id == draft_task.id
    with pytest.raises(ForbiddenError):
        await get_task(draft_task.id, other_author)
    with pytest.raises(NotFoundError):
        await get_task(MISSING_ID, author)


@pytest.mark.asyncio
async def test_update_task_applies_only_provided_fields(draft_task: Task, author: User) -> None:
    updated = await update_task(
        draft_task.id, TaskUpdate(title="Sharper title", task_yaml=None), author
    )

    assert updated.title == "Sharper title"
    assert updated.task_yaml is None
    assert updated.instruction == draft_task.instruction
    assert await _history(draft_task.id) == [
        (1, TaskState.DRAFT, "created"),
        (2, TaskState.DRAFT, "updated"),
    ]

    async with db.get_session() as session:
        logs = await get_entity_logs(session, "Task", draft_task.id)
    update_log = next(log for log in logs if log.action == AuditAction.TASK_UPDATED)
    details = update_log.parsed_details
    assert isinstance(details, TaskUpdatedDetails)
    assert details.updates == ["title", "task_yaml"]


@pytest.mark.asyncio
async def test_update_requires_author(draft_task: Task, other_author: User) -> None:
    with pytest.raises(ForbiddenError):
        await update_task(draft_task.id, TaskUpdate(title="Hijack"), other_author)
    assert len(await _history(draft_task.id)) == 1


@pytest.mark.asyncio
async def test_update_rejected_outside_editable_states(draft_task: Task, author: User) -> None:
    await submit_task(draft_task.id, author)

    with pytest.raises(TaskNotEditableError):
        await update_task(draft_task.id, TaskUpdate(title="Too late"), author)


@pytest.mark.asyncio
async def test_submit_task(draft_task: Task, author: User) -> None:
    submitted = await submit_task(draft_task.id, author)

    assert submitted.state == TaskState.SUBMITTED
    assert submitted.reviewer_id is None
    assert await _history(draft_task.id) == [
        (1, TaskState.DRAFT, "created"),
        (2, TaskState.SUBMITTED, "submitted"),
    ]
    assert AuditAction.TASK_SUBMITTED in await _actions(draft_task.id)


@pytest.mark.asyncio
async def test_submit_twice_is_rejected(draft_task: Task, author: User) -> None:
    await submit_task(draft_task.id, author)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await submit_task(draft_task.id, author)

    assert isinstance(exc_info.value, TaskNotSubmittableError)
    assert (exc_info.value.current, exc_info.value.requested) == (TaskState.SUBMITTED, TaskState.SUBMITTED)
    assert len(await _history(draft_task.id)) == 2


@pytest.mark.asyncio
async def test_submit_requires_title_and_instruction(draft_task: Task, author: User) -> None:
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, draft_task.id)
        assert task is not None
        task.instruction = "   "

    with pytest.raises(ValidationError):
        await submit_task(draft_task.id, author)


@pytest.mark.asyncio
async def test_submit_requires_author(draft_task: Task, reviewer: User) -> None:
    with pytest.raises(ForbiddenError):
        await submit_task(draft_task.id, reviewer)


@pytest.mark.asyncio
async def test_resubmit_after_changes_requested(draft_task: Task, author: User, reviewer: User) -> None:
    await submit_task(draft_task.id, author)
    await start_review(draft_task.id, reviewer)
    await submit_review(
        draft_task.id, ReviewSubmit(decision=ReviewDecision.REQUEST_CHANGES, comment="Add tests"), reviewer
    )
    await update_task(draft_task.id, TaskUpdate(tests_json='["test_one"]'), author)
    resubmitted = await submit_task(draft_task.id, author)

    assert resubmitted.state == TaskState.SUBMITTED
    assert resubmitted.reviewer_id is None
    assert [state for _, state, _ in await _history(draft_task.id)] == [
        TaskState.DRAFT,
        TaskState.SUBMITTED,
        TaskState.IN_REVIEW,
        TaskState.CHANGES_REQUESTED,
        TaskState.CHANGES_REQUESTED,
        TaskState.SUBMITTED,
    ]


@pytest.mark.asyncio
async def test_duplicate_task(draft_task: Task, author: User, reviewer: User) -> None:
    copy = await duplicate_task(draft_task.id, reviewer)

    assert copy.id != draft_task.id
    assert copy.state == TaskState.DRAFT
    assert copy.author_id == reviewer.id
    assert copy.title == f"{draft_task.title} (Copy)"
    assert copy.solution_sh == draft_task.solution_sh
    assert await _history(copy.id) == [(1, TaskState.DRAFT, "created")]

    async with db.get_session() as session:
        logs = await get_entity_logs(session, "Task", copy.id)
    details = logs[0].parsed_details
    assert isinstance(details, TaskCreatedDetails)
    assert details.duplicated_from == draft_task.id


@pytest.mark.asyncio
async def test_duplicate_requires_view_access(draft_task: Task, other_author: User) -> None:
    with pytest.raises(ForbiddenError):
        await duplicate_task(draft_task.id, other_author)


@pytest.mark.asyncio
async def test_duplicate_keeps_title_within_limit(author: User, task_input: TaskCreate) -> None:
    long_task = await create_task(task_input.model_copy(update={"title": "x" * 200}), author)

    copy = await duplicate_task(long_task.id, author)

    assert len(copy.title) == 200
    assert copy.title.endswith(" (Copy)")


@pytest.mark.asyncio
async def test_delete_task_keeps_history(draft_task: Task, author: User) -> None:
    await delete_task(draft_task.id, author)

    async with db.get_session() as session:
        assert await db.get_task_by_id(session, draft_task.id) is None
    assert await _history(draft_task.id) == [(1, TaskState.DRAFT, "created")]
    assert await _actions(draft_task.id) == [AuditAction.TASK_CREATED, AuditAction.TASK_DELETED]


@pytest.mark.asyncio
async def test_delete_rejected_task_removes_reviews(draft_task: Task, author: User, reviewer: User) -> None:
    await submit_task(draft_task.id, author)
    await submit_review(draft_task.id, ReviewSubmit(decision=ReviewDecision.REJECT), reviewer)

    await delete_task(draft_task.id, author)

    async with db.get_session() as session:
        result = await session.execute(select(Review).where(Review.task_id == draft_task.id))
        assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_delete_rules(draft_task: Task, author: User, other_author: User) -> None:
    with pytest.raises(ForbiddenError):
        await delete_task(draft_task.id, other_author)

    await submit_task(draft_task.id, author)
    with pytest.raises(TaskNotDeletableError):
        await delete_task(draft_task.id, author)

    with pytest.raises(NotFoundError):
        await delete_task(MISSING_ID, author)


@pytest.mark.asyncio
async def test_listing(author: User, other_author: User, task_input: TaskCreate) -> None:
    first = await create_task(task_input, author)
    second = await create_task(task_input.model_copy(update={"title": "Second"}), author)
    await create_task(task_input, other_author)
    await submit_task(first.id, author)

    mine = await list_tasks_by_author(author.id)
    queue = await list_tasks_for_review()

    assert {t.id for t in mine} == {first.id, second.id}
    assert [t.id for t in queue] == [first.id]
    assert len(await list_tasks_by_author(author.id, limit=1)) == 1
