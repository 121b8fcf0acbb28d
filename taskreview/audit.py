"""Append-only audit trail for task and review mutations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog, User
from .schemas import (
    DecisionDetails,
    ReviewSubmittedDetails,
    TaskCreatedDetails,
    TaskDeletedDetails,
    TaskUpdatedDetails,
    TransitionDetails,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class AuditAction(StrEnum):
    TASK_CREATED = "TASK_CREATED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_SUBMITTED = "TASK_SUBMITTED"
    TASK_APPROVED = "TASK_APPROVED"
    TASK_REJECTED = "TASK_REJECTED"
    TASK_CHANGES_REQUESTED = "TASK_CHANGES_REQUESTED"
    TASK_DELETED = "TASK_DELETED"
    REVIEW_STARTED = "REVIEW_STARTED"
    REVIEW_SUBMITTED = "REVIEW_SUBMITTED"


class EntityType(StrEnum):
    TASK = "Task"
    REVIEW = "Review"


# Which details variant each action carries.
ACTION_DETAILS: dict[AuditAction, type[BaseModel]] = {
    AuditAction.TASK_CREATED: TaskCreatedDetails,
    AuditAction.TASK_UPDATED: TaskUpdatedDetails,
    AuditAction.TASK_SUBMITTED: TransitionDetails,
    AuditAction.TASK_APPROVED: DecisionDetails,
    AuditAction.TASK_REJECTED: DecisionDetails,
    AuditAction.TASK_CHANGES_REQUESTED: DecisionDetails,
    AuditAction.TASK_DELETED: TaskDeletedDetails,
    AuditAction.REVIEW_STARTED: TransitionDetails,
    AuditAction.REVIEW_SUBMITTED: ReviewSubmittedDetails,
}


@dataclass
class AuditPage:
    logs: list[AuditLog] = field(default_factory=list)
    total: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.logs) < self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "logs": [
                {
                    "id": log.id,
                    "action": log.action,
                    "entity_type": log.entity_type,
                    "entity_id": log.entity_id,
                    "user_id": log.user_id,
                    "user_name": log.user_name,
                    "user_email": log.user_email,
                    "details": log.details,
                    "created_at": log.created_at.isoformat() if log.created_at else None,
                }
                for log in self.logs
            ],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


async def log_audit(
    session: AsyncSession,
    action: AuditAction,
    entity_type: EntityType | str,
    entity_id: str,
    user: User,
    details: BaseModel,
) -> AuditLog:
    """Record an audit entry in the caller's transaction.

    Raises ValueError when ``details`` is not the variant ``action`` carries.
    """
    action = AuditAction(action)
    expected = ACTION_DETAILS[action]
    if not isinstance(details, expected):
        raise ValueError(f"{action} expects {expected.__name__}, got {type(details).__name__}")

    entry = AuditLog(
        action=str(action),
        entity_type=str(entity_type),
        entity_id=entity_id,
        user_id=user.id,
        user_name=user.name,
        user_email=user.email,
        details=details.model_dump(mode="json"),
    )
    session.add(entry)
    await session.flush()
    logger.debug("Audit %s on %s %s by %s", action, entity_type, entity_id, user.email)
    return entry


async def get_logs(
    session: AsyncSession,
    entity_type: str | None = None,
    entity_id: str | None = None,
    user_id: str | None = None,
    action: AuditAction | str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> AuditPage:
    """Filtered audit entries, newest first."""
    conditions = []
    if entity_type:
        conditions.append(AuditLog.entity_type == str(entity_type))
    if entity_id:
        conditions.append(AuditLog.entity_id == entity_id)
    if user_id:
        conditions.append(AuditLog.user_id == user_id)
    if action:
        conditions.append(AuditLog.action == str(action))

    total_result = await session.execute(select(func.count(AuditLog.id)).where(*conditions))
    total = total_result.scalar_one()

    result = await session.execute(
        select(AuditLog)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return AuditPage(logs=list(result.scalars().all()), total=total, limit=limit, offset=offset)


async def get_entity_logs(session: AsyncSession, entity_type: str, entity_id: str) -> list[AuditLog]:
    """Full trail for one entity, newest first."""
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == str(entity_type), AuditLog.entity_id == entity_id)
        .order_by(AuditLog.created_at.desc())
    )
    return list(result.scalars().all())


async def get_user_logs(session: AsyncSession, user_id: str, limit: int = DEFAULT_PAGE_SIZE) -> list[AuditLog]:
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.user_id == user_id)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
