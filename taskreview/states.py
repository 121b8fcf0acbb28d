"""Task lifecycle state machine.

Pure functions over task states. Nothing here knows about users or
permissions; services check author/reviewer identity before calling in.
"""

from __future__ import annotations

from enum import StrEnum

from .errors import InvalidTransitionError


class TaskState(StrEnum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"


class ReviewDecision(StrEnum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_CHANGES = "REQUEST_CHANGES"


class Difficulty(StrEnum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


VALID_TASK_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.DRAFT: frozenset({TaskState.SUBMITTED}),
    TaskState.SUBMITTED: frozenset({TaskState.IN_REVIEW}),
    TaskState.IN_REVIEW: frozenset(
        {TaskState.APPROVED, TaskState.REJECTED, TaskState.CHANGES_REQUESTED}
    ),
    TaskState.APPROVED: frozenset(),  # final
    TaskState.REJECTED: frozenset({TaskState.SUBMITTED}),
    TaskState.CHANGES_REQUESTED: frozenset({TaskState.SUBMITTED}),
}

DECISION_TO_STATE: dict[ReviewDecision, TaskState] = {
    ReviewDecision.APPROVE: TaskState.APPROVED,
    ReviewDecision.REJECT: TaskState.REJECTED,
    ReviewDecision.REQUEST_CHANGES: TaskState.CHANGES_REQUESTED,
}

EDITABLE_STATES = frozenset({TaskState.DRAFT, TaskState.CHANGES_REQUESTED})
SUBMITTABLE_STATES = frozenset({TaskState.DRAFT, TaskState.REJECTED, TaskState.CHANGES_REQUESTED})
REVIEWABLE_STATES = frozenset({TaskState.SUBMITTED, TaskState.IN_REVIEW})
DELETABLE_STATES = frozenset({TaskState.DRAFT, TaskState.REJECTED})
COMPLETED_REVIEW_STATES = frozenset(
    {TaskState.APPROVED, TaskState.REJECTED, TaskState.CHANGES_REQUESTED}
)

STATE_LABELS: dict[TaskState, str] = {
    TaskState.DRAFT: "Draft",
    TaskState.SUBMITTED: "Submitted",
    TaskState.IN_REVIEW: "In Review",
    TaskState.APPROVED: "Approved",
    TaskState.REJECTED: "Rejected",
    TaskState.CHANGES_REQUESTED: "Changes Requested",
}

DECISION_LABELS: dict[ReviewDecision, str] = {
    ReviewDecision.APPROVE: "Approve",
    ReviewDecision.REJECT: "Reject",
    ReviewDecision.REQUEST_CHANGES: "Request Changes",
}

DIFFICULTY_LABELS: dict[Difficulty, str] = {
    Difficulty.EASY: "Easy",
    Difficulty.MEDIUM: "Medium",
    Difficulty.HARD: "Hard",
}


def is_valid_task_transition(current: TaskState, new: TaskState) -> bool:
    """Check if a state transition is in the transition table."""
    return TaskState(new) in VALID_TASK_TRANSITIONS[TaskState(current)]


def ensure_transition(current: TaskState, new: TaskState) -> None:
    """Raise InvalidTransitionError unless current -> new is a legal transition."""
    if not is_valid_task_transition(current, new):
        raise InvalidTransitionError(str(current), str(new))


def get_state_from_decision(decision: ReviewDecision) -> TaskState:
    """Get the state a review decision moves the task into."""
    return DECISION_TO_STATE[ReviewDecision(decision)]


def can_edit_task(state: TaskState) -> bool:
    return state in EDITABLE_STATES


def can_submit_task(state: TaskState) -> bool:
    return state in SUBMITTABLE_STATES


def is_task_reviewable(state: TaskState) -> bool:
    return state in REVIEWABLE_STATES


def can_delete_task(state: TaskState) -> bool:
    return state in DELETABLE_STATES


def is_final_state(state: TaskState) -> bool:
    """A state is final when no transition leaves it."""
    return not VALID_TASK_TRANSITIONS[TaskState(state)]


def state_label(state: TaskState) -> str:
    return STATE_LABELS[TaskState(state)]


def decision_label(decision: ReviewDecision) -> str:
    return DECISION_LABELS[ReviewDecision(decision)]


def difficulty_label(difficulty: Difficulty) -> str:
    return DIFFICULTY_LABELS[Difficulty(difficulty)]


def parse_categories(categories: str) -> list[str]:
    """Split a comma-separated categories string, dropping blanks."""
    return [c.strip() for c in categories.split(",") if c.strip()]


def format_categories(categories: list[str]) -> str:
    return ", ".join(c.strip() for c in categories if c.strip())
