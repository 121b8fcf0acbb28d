"""Pydantic schemas for task/review input and typed audit details."""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .states import Difficulty, ReviewDecision, TaskState

TITLE_MAX = 200
INSTRUCTION_MAX = 10_000
CATEGORIES_MAX = 200
COMMENT_MAX = 2_000

DEFAULT_AGENT_TIMEOUT = 300
DEFAULT_TEST_TIMEOUT = 60
MAX_AGENT_TIMEOUT = 3_600
MAX_TEST_TIMEOUT = 600

# Required columns can't be cleared by an update; optional blobs can be set to None.
REQUIRED_TASK_FIELDS = frozenset(
    {"title", "instruction", "difficulty", "categories", "max_agent_timeout_sec", "max_test_timeout_sec"}
)


# =============================================================================
# Input
# =============================================================================


class TaskCreate(BaseModel):
    """Fields accepted when creating a task."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=TITLE_MAX)
    instruction: str = Field(min_length=1, max_length=INSTRUCTION_MAX)
    difficulty: Difficulty
    categories: str = Field(min_length=1, max_length=CATEGORIES_MAX)
    max_agent_timeout_sec: int = Field(default=DEFAULT_AGENT_TIMEOUT, ge=1, le=MAX_AGENT_TIMEOUT)
    max_test_timeout_sec: int = Field(default=DEFAULT_TEST_TIMEOUT, ge=1, le=MAX_TEST_TIMEOUT)
    task_yaml: str | None = None
    docker_compose_yaml: str | None = None
    solution_sh: str | None = None
    run_tests_sh: str | None = None
    tests_json: str | None = None


class TaskUpdate(BaseModel):
    """Partial update; only fields explicitly provided are applied."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=TITLE_MAX)
    instruction: str | None = Field(default=None, min_length=1, max_length=INSTRUCTION_MAX)
    difficulty: Difficulty | None = None
    categories: str | None = Field(default=None, min_length=1, max_length=CATEGORIES_MAX)
    max_agent_timeout_sec: int | None = Field(default=None, ge=1, le=MAX_AGENT_TIMEOUT)
    max_test_timeout_sec: int | None = Field(default=None, ge=1, le=MAX_TEST_TIMEOUT)
    task_yaml: str | None = None
    docker_compose_yaml: str | None = None
    solution_sh: str | None = None
    run_tests_sh: str | None = None
    tests_json: str | None = None

    def changes(self) -> dict[str, Any]:
        provided = self.model_dump(exclude_unset=True)
        return {k: v for k, v in provided.items() if v is not None or k not in REQUIRED_TASK_FIELDS}


class ReviewSubmit(BaseModel):
    model_config = ConfigDict(extra="forbid")

    decision: ReviewDecision
    comment: str | None = Field(default=None, max_length=COMMENT_MAX)


ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_input(model: type[ModelT], data: dict[str, Any]) -> ModelT:
    """Validate raw input, converting pydantic errors into ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        messages = [
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in exc.errors()
        ]
        raise ValidationError("Validation error: " + "; ".join(messages), details=exc.errors()) from exc


# =============================================================================
# Audit details (tagged by ``kind``)
# =============================================================================


class TaskCreatedDetails(BaseModel):
    kind: Literal["task_created"] = "task_created"
    title: str
    state: TaskState
    duplicated_from: str | None = None


class TaskUpdatedDetails(BaseModel):
    kind: Literal["task_updated"] = "task_updated"
    updates: list[str]
    previous_state: TaskState
    current_state: TaskState


class TransitionDetails(BaseModel):
    kind: Literal["transition"] = "transition"
    previous_state: TaskState
    current_state: TaskState


class DecisionDetails(BaseModel):
    kind: Literal["decision"] = "decision"
    decision: ReviewDecision
    previous_state: TaskState
    current_state: TaskState
    review_id: str
    feedback_only: bool = False


class ReviewSubmittedDetails(BaseModel):
    kind: Literal["review_submitted"] = "review_submitted"
    task_id: str
    decision: ReviewDecision
    has_comment: bool


class TaskDeletedDetails(BaseModel):
    kind: Literal["task_deleted"] = "task_deleted"
    title: str
    state: TaskState


AuditDetails = Annotated[
    TaskCreatedDetails
    | TaskUpdatedDetails
    | TransitionDetails
    | DecisionDetails
    | ReviewSubmittedDetails
    | TaskDeletedDetails,
    Field(discriminator="kind"),
]

_details_adapter: TypeAdapter[AuditDetails] = TypeAdapter(AuditDetails)


def parse_details(data: dict[str, Any]) -> AuditDetails:
    """Rebuild the typed details variant from its stored JSON form."""
    return _details_adapter.validate_python(data)
