"""
Task Review Workflow

Authors draft benchmark tasks and submit them for review; reviewers approve,
reject or request changes. Every change is kept as an immutable version that
can be diffed, and every action lands in an audit log.
"""

__version__ = "0.1.0"

# Configuration
from taskreview.config import Settings

# Diffs and history
from taskreview.diff import ChangeType, DiffChange, TaskDiff, compute_changes, get_diff
from taskreview.errors import (
    ForbiddenError,
    InvalidTransitionError,
    InvalidVersionError,
    NotFoundError,
    TaskReviewError,
    ValidationError,
    VersionConflictError,
)
from taskreview.history import create_snapshot, get_task_history, get_version

# Core models
from taskreview.models import AuditLog, Review, Task, TaskVersion, User
from taskreview.resubmission import ResubmissionPair, find_resubmission_pair, get_latest_before_resubmission

# State machine
from taskreview.states import (
    Difficulty,
    ReviewDecision,
    TaskState,
    get_state_from_decision,
    is_valid_task_transition,
)

__all__ = [
    # Version
    "__version__",
    # Models
    "User",
    "Task",
    "TaskVersion",
    "Review",
    "AuditLog",
    # Config
    "Settings",
    # States
    "TaskState",
    "ReviewDecision",
    "Difficulty",
    "is_valid_task_transition",
    "get_state_from_decision",
    # History
    "create_snapshot",
    "get_task_history",
    "get_version",
    # Diff
    "ChangeType",
    "DiffChange",
    "TaskDiff",
    "compute_changes",
    "get_diff",
    # Resubmission
    "ResubmissionPair",
    "find_resubmission_pair",
    "get_latest_before_resubmission",
    # Errors
    "TaskReviewError",
    "ForbiddenError",
    "NotFoundError",
    "ValidationError",
    "InvalidTransitionError",
    "InvalidVersionError",
    "VersionConflictError",
]
