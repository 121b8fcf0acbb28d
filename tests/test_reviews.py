import pytest

from taskreview import db
from taskreview.audit import AuditAction, get_entity_logs, get_logs
from taskreview.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ReviewNotStartableError,
    TaskNotReviewableError,
)
from taskreview.history import get_task_history
from taskreview.models import Task, User
from taskreview.reviews import get_reviewer_tasks, get_reviews, get_task_for_review, start_review, submit_review
from taskreview.schemas import DecisionDetails, ReviewSubmit, ReviewSubmittedDetails, TaskCreate, TransitionDetails
from taskreview.states import ReviewDecision, TaskState, ensure_transition
from taskreview.tasks import create_task, submit_task


async def _change_types(task_id: str) -> list[str]:
    async with db.get_session() as session:
        versions = await get_task_history(session, task_id)
    return [v.change_type for v in reversed(versions)]


@pytest.fixture
def approve() -> ReviewSubmit:
    return ReviewSubmit(decision=ReviewDecision.APPROVE, comment="Looks good")


@pytest.mark.asyncio
async def test_start_review(draft_task: Task, author: User, reviewer: User) -> None:
    await submit_task(draft_task.id, author)

    task = await start_review(draft_task.id, reviewer)

    assert task.state == TaskState.IN_REVIEW
    assert task.reviewer_id == reviewer.id
    assert await _change_types(draft_task.id) == ["created", "submitted", "review_started"]

    async with db.get_session() as session:
        logs = await get_entity_logs(session, "Task", draft_task.id)
    started = next(log for log in logs if log.action == AuditAction.REVIEW_STARTED)
    assert started.parsed_details == TransitionDetails(
        previous_state=TaskState.SUBMITTED, current_state=TaskState.IN_REVIEW
    )


@pytest.mark.asyncio
async def test_start_review_requires_submitted(draft_task: Task, reviewer: User) -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        await start_review(draft_task.id, reviewer)

    assert isinstance(exc_info.value, ReviewNotStartableError)
    assert (exc_info.value.current, exc_info.value.requested) == (TaskState.DRAFT, TaskState.IN_REVIEW)
    assert await _change_types(draft_task.id) == ["created"]


@pytest.mark.asyncio
async def test_reviewer_role_required(draft_task: Task, author: User, approve: ReviewSubmit) -> None:
    await submit_task(draft_task.id, author)

    with pytest.raises(ForbiddenError):
        await start_review(draft_task.id, author)
    with pytest.raises(ForbiddenError):
        await submit_review(draft_task.id, approve, author)


@pytest.mark.asyncio
async def test_approve_in_review_task(
    draft_task: Task, author: User, reviewer: User, approve: ReviewSubmit
) -> None:
    await submit_task(draft_task.id, author)
    await start_review(draft_task.id, reviewer)

    task, review = await submit_review(draft_task.id, approve, reviewer)

    assert task.state == TaskState.APPROVED
    assert task.reviewer_id is None
    assert review.decision == ReviewDecision.APPROVE
    assert review.comment == "Looks good"
    assert await _change_types(draft_task.id) == ["created", "submitted", "review_started", "review_approve"]

    async with db.get_session() as session:
        task_logs = await get_entity_logs(session, "Task", draft_task.id)
        review_logs = await get_entity_logs(session, "Review", review.id)
    decision = next(log for log in task_logs if log.action == AuditAction.TASK_APPROVED).parsed_details
    assert isinstance(decision, DecisionDetails)
    assert decision.previous_state == TaskState.IN_REVIEW
    assert decision.current_state == TaskState.APPROVED
    assert decision.review_id == review.id
    assert decision.feedback_only is False
    submitted = review_logs[0].parsed_details
    assert isinstance(submitted, ReviewSubmittedDetails)
    assert submitted.task_id == draft_task.id
    assert submitted.has_comment is True


@pytest.mark.asyncio
async def test_decision_on_submitted_task_starts_review_first(
    draft_task: Task, author: User, reviewer: User
) -> None:
    await submit_task(draft_task.id, author)

    task, _ = await submit_review(
        draft_task.id, ReviewSubmit(decision=ReviewDecision.REQUEST_CHANGES), reviewer
    )

    assert task.state == TaskState.CHANGES_REQUESTED
    assert task.reviewer_id == reviewer.id
    assert await _change_types(draft_task.id) == [
        "created",
        "submitted",
        "review_started",
        "review_request_changes",
    ]
    async with db.get_session() as session:
        page = await get_logs(session, entity_id=draft_task.id, action=AuditAction.REVIEW_STARTED)
    assert page.total == 1


@pytest.mark.asyncio
async def test_other_reviewers_task_is_forbidden(
    draft_task: Task, author: User, reviewer: User, other_reviewer: User, approve: ReviewSubmit
) -> None:
    await submit_task(draft_task.id, author)
    await start_review(draft_task.id, reviewer)

    with pytest.raises(ForbiddenError):
        await submit_review(draft_task.id, approve, other_reviewer)
    assert await _change_types(draft_task.id) == ["created", "submitted", "review_started"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("decision", "state", "action"),
    [
        (ReviewDecision.REJECT, TaskState.REJECTED, AuditAction.TASK_REJECTED),
        (ReviewDecision.REQUEST_CHANGES, TaskState.CHANGES_REQUESTED, AuditAction.TASK_CHANGES_REQUESTED),
    ],
)
async def test_same_state_decision_is_feedback_only(
    draft_task: Task,
    author: User,
    reviewer: User,
    decision: ReviewDecision,
    state: TaskState,
    action: AuditAction,
) -> None:
    await submit_task(draft_task.id, author)
    await submit_review(draft_task.id, ReviewSubmit(decision=decision), reviewer)

    task, review = await submit_review(
        draft_task.id, ReviewSubmit(decision=decision, comment="Also: no tests"), reviewer
    )

    assert task.state == state
    assert len(await get_reviews(draft_task.id)) == 2
    async with db.get_session() as session:
        page = await get_logs(session, entity_id=draft_task.id, action=action)
    feedback = [log.parsed_details for log in page.logs]
    assert sorted(d.feedback_only for d in feedback) == [False, True]  # type: ignore[union-attr]
    assert any(d.review_id == review.id and d.feedback_only for d in feedback)  # type: ignore[union-attr]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("first", "second", "current", "requested"),
    [
        (ReviewDecision.REJECT, ReviewDecision.APPROVE, TaskState.REJECTED, TaskState.APPROVED),
        (ReviewDecision.REJECT, ReviewDecision.REQUEST_CHANGES, TaskState.REJECTED, TaskState.CHANGES_REQUESTED),
        (ReviewDecision.REQUEST_CHANGES, ReviewDecision.REJECT, TaskState.CHANGES_REQUESTED, TaskState.REJECTED),
    ],
)
async def test_changing_a_completed_decision_is_an_invalid_transition(
    draft_task: Task,
    author: User,
    reviewer: User,
    first: ReviewDecision,
    second: ReviewDecision,
    current: TaskState,
    requested: TaskState,
) -> None:
    await submit_task(draft_task.id, author)
    await submit_review(draft_task.id, ReviewSubmit(decision=first), reviewer)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await submit_review(draft_task.id, ReviewSubmit(decision=second), reviewer)

    assert isinstance(exc_info.value, TaskNotReviewableError)
    assert (exc_info.value.current, exc_info.value.requested) == (current, requested)
    assert str(requested) in exc_info.value.message
    assert len(await get_reviews(draft_task.id)) == 1


@pytest.mark.asyncio
async def test_draft_task_is_not_reviewable(draft_task: Task, reviewer: User, approve: ReviewSubmit) -> None:
    with pytest.raises(TaskNotReviewableError) as exc_info:
        await submit_review(draft_task.id, approve, reviewer)
    assert exc_info.value.requested == TaskState.APPROVED
    with pytest.raises(NotFoundError):
        await submit_review("00000000-0000-0000-0000-000000000000", approve, reviewer)


@pytest.mark.asyncio
async def test_approved_is_final(draft_task: Task, author: User, reviewer: User, approve: ReviewSubmit) -> None:
    await submit_task(draft_task.id, author)
    await submit_review(draft_task.id, approve, reviewer)

    # Approving again only adds feedback; any other decision has nowhere to go.
    task, _ = await submit_review(draft_task.id, approve, reviewer)
    assert task.state == TaskState.APPROVED
    with pytest.raises(InvalidTransitionError) as exc_info:
        await submit_review(draft_task.id, ReviewSubmit(decision=ReviewDecision.REJECT), reviewer)
    assert (exc_info.value.current, exc_info.value.requested) == (TaskState.APPROVED, TaskState.REJECTED)
    with pytest.raises(InvalidTransitionError):
        ensure_transition(task.state, TaskState.SUBMITTED)


@pytest.mark.asyncio
async def test_get_task_for_review_access(
    draft_task: Task, author: User, reviewer: User, other_reviewer: User
) -> None:
    with pytest.raises(TaskNotReviewableError):
        await get_task_for_review(draft_task.id, reviewer)

    await submit_task(draft_task.id, author)
    assert (await get_task_for_review(draft_task.id, other_reviewer)).id == draft_task.id

    await submit_review(draft_task.id, ReviewSubmit(decision=ReviewDecision.REQUEST_CHANGES), reviewer)
    assert (await get_task_for_review(draft_task.id, reviewer)).id == draft_task.id
    with pytest.raises(TaskNotReviewableError):
        await get_task_for_review(draft_task.id, other_reviewer)


@pytest.mark.asyncio
async def test_reviewer_task_filters(
    draft_task: Task, author: User, reviewer: User, other_reviewer: User, task_input: TaskCreate
) -> None:
    pending = await create_task(task_input.model_copy(update={"title": "Pending"}), author)
    await submit_task(pending.id, author)
    await submit_task(draft_task.id, author)
    await submit_review(draft_task.id, ReviewSubmit(decision=ReviewDecision.REJECT), reviewer)

    assert [t.id for t in await get_reviewer_tasks(reviewer.id, "pending")] == [pending.id]
    assert [t.id for t in await get_reviewer_tasks(reviewer.id, "history")] == [draft_task.id]
    assert {t.id for t in await get_reviewer_tasks(reviewer.id, "all")} == {pending.id, draft_task.id}
    assert await get_reviewer_tasks(other_reviewer.id, "history") == []
    with pytest.raises(ValueError):
        await get_reviewer_tasks(reviewer.id, "everything")
