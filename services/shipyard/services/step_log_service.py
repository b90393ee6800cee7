"""Append-only step history.

Every step invocation against a known application adds exactly one row.
Rows are never updated or deleted; the current status of a step is the most
recent row for that (application, step) pair.
"""

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.db.models import StepLog
from shipyard.logging_config import get_logger

logger = get_logger(__name__)

STEP_SUCCESS = "success"
STEP_FAILED = "failed"


async def append_step_log(
    db: AsyncSession,
    application_id: uuid.UUID,
    step: str,
    status: str,
    message: str,
    detail: dict[str, Any] | None = None,
) -> StepLog:
    if status not in (STEP_SUCCESS, STEP_FAILED):
        raise ValueError(f"Invalid step status: {status}")
    log = StepLog(
        application_id=application_id,
        step=step,
        status=status,
        message=message,
        detail=detail or {},
    )
    db.add(log)
    await db.flush()
    logger.info(
        "Step log appended",
        application_id=str(application_id),
        step=step,
        status=status,
    )
    return log


async def list_step_logs(db: AsyncSession, application_id: uuid.UUID) -> list[StepLog]:
    """Full history for one application, oldest first.

    Ties on created_at are broken by id, which is time-ordered (UUIDv7).
    """
    result = await db.execute(
        select(StepLog)
        .where(StepLog.application_id == application_id)
        .order_by(StepLog.created_at.asc(), StepLog.id.asc())
    )
    return list(result.scalars().all())


def current_statuses(logs: list[StepLog]) -> dict[str, str]:
    """Latest status per step from an oldest-first history."""
    statuses: dict[str, str] = {}
    for log in logs:
        statuses[log.step] = log.status
    return statuses


async def latest_step_statuses(db: AsyncSession, application_id: uuid.UUID) -> dict[str, str]:
    return current_statuses(await list_step_logs(db, application_id))


def step_log_to_dict(log: StepLog) -> dict:
    return {
        "id": str(log.id),
        "step": log.step,
        "status": log.status,
        "message": log.message,
        "detail": log.detail or {},
        "createdAt": log.created_at.isoformat() if log.created_at else None,
    }
