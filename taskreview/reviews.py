"""Reviewer actions: start a review, submit a decision, browse the queue."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .audit import AuditAction, EntityType, log_audit
from .errors import ForbiddenError, NotFoundError, ReviewNotStartableError, TaskNotReviewableError
from .history import create_snapshot
from .models import Review, Task, User
from .schemas import DecisionDetails, ReviewSubmit, ReviewSubmittedDetails, TransitionDetails
from .states import (
    COMPLETED_REVIEW_STATES,
    ReviewDecision,
    TaskState,
    ensure_transition,
    get_state_from_decision,
    is_task_reviewable,
)

logger = logging.getLogger(__name__)

DECISION_ACTIONS: dict[ReviewDecision, AuditAction] = {
    ReviewDecision.APPROVE: AuditAction.TASK_APPROVED,
    ReviewDecision.REJECT: AuditAction.TASK_REJECTED,
    ReviewDecision.REQUEST_CHANGES: AuditAction.TASK_CHANGES_REQUESTED,
}


def _ensure_reviewer(user: User) -> None:
    if not user.is_reviewer:
        raise ForbiddenError("Reviewer role required")


async def _begin_review(session: AsyncSession, task: Task, reviewer: User) -> None:
    """SUBMITTED -> IN_REVIEW with the reviewer assigned, snapshotted and audited."""
    previous_state = task.state
    ensure_transition(previous_state, TaskState.IN_REVIEW)
    task.state = TaskState.IN_REVIEW
    task.reviewer_id = reviewer.id
    await session.flush()

    await create_snapshot(session, task, reviewer.id, "review_started")
    await log_audit(
        session,
        AuditAction.REVIEW_STARTED,
        EntityType.TASK,
        task.id,
        reviewer,
        TransitionDetails(previous_state=previous_state, current_state=task.state),
    )


async def start_review(task_id: str, reviewer: User) -> Task:
    """Claim a SUBMITTED task for review."""
    _ensure_reviewer(reviewer)
    async with db.task_transaction(task_id) as session:
        task = await db.get_task_for_update(session, task_id)
        if task.state != TaskState.SUBMITTED:
            raise ReviewNotStartableError(task.state)
        await _begin_review(session, task, reviewer)

    logger.info("Review of task %s started by %s", task.id, reviewer.email)
    return task


async def submit_review(task_id: str, data: ReviewSubmit, reviewer: User) -> tuple[Task, Review]:
    """Record a review decision and move the task to the state it implies."""
    _ensure_reviewer(reviewer)
    decision = data.decision
    target = get_state_from_decision(decision)

    async with db.task_transaction(task_id) as session:
        task = await db.get_task_for_update(session, task_id)
        previous_state = task.state

        # A decision naming the state the task is already in only adds
        # feedback. This looks at the current state alone, not at earlier
        # versions, so e.g. a second REJECT on a REJECTED task is accepted.
        feedback_only = target == task.state

        if not feedback_only:
            if not is_task_reviewable(task.state):
                raise TaskNotReviewableError(task.state, target)
            if task.state == TaskState.IN_REVIEW and task.reviewer_id not in (None, reviewer.id):
                raise ForbiddenError("This task is being reviewed by another reviewer")
            if task.state == TaskState.SUBMITTED:
                await _begin_review(session, task, reviewer)
            ensure_transition(task.state, target)

        review = Review(task_id=task.id, reviewer_id=reviewer.id, decision=decision, comment=data.comment or None)
        session.add(review)

        task.state = target
        task.reviewer_id = None if target == TaskState.APPROVED else (task.reviewer_id or reviewer.id)
        await session.flush()

        await create_snapshot(session, task, reviewer.id, f"review_{decision.lower()}")
        await log_audit(
            session,
            AuditAction.REVIEW_SUBMITTED,
            EntityType.REVIEW,
            review.id,
            reviewer,
            ReviewSubmittedDetails(task_id=task.id, decision=decision, has_comment=bool(data.comment)),
        )
        await log_audit(
            session,
            DECISION_ACTIONS[decision],
            EntityType.TASK,
            task.id,
            reviewer,
            DecisionDetails(
                decision=decision,
                previous_state=previous_state,
                current_state=task.state,
                review_id=review.id,
                feedback_only=feedback_only,
            ),
        )

    logger.info(
        "Task %s reviewed by %s: %s (%s -> %s)",
        task.id,
        reviewer.email,
        decision,
        previous_state,
        task.state,
    )
    return task, review


async def get_task_for_review(task_id: str, reviewer: User) -> Task:
    """Load a task the reviewer may look at.

    Allowed when the task awaits review, the reviewer has reviewed it before,
    or the reviewer is assigned to it and the review is complete.
    """
    _ensure_reviewer(reviewer)
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, task_id)
        if task is None:
            raise NotFoundError("Task")

        if is_task_reviewable(task.state):
            return task
        if await db.has_reviewed(session, task.id, reviewer.id):
            return task
        if task.reviewer_id == reviewer.id and task.state in COMPLETED_REVIEW_STATES:
            return task

    raise TaskNotReviewableError(task.state, TaskState.IN_REVIEW)


async def get_reviewer_tasks(reviewer_id: str, filter_: str = "all", limit: int | None = None) -> list[Task]:
    async with db.get_session() as session:
        return await db.list_reviewer_tasks(session, reviewer_id, filter_=filter_, limit=limit)


async def get_reviews(task_id: str) -> list[Review]:
    async with db.get_session() as session:
        return await db.get_reviews_for_task(session, task_id)
