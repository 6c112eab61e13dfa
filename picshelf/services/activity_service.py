import json
import logging
from typing import Any, Sequence

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from picshelf.core import models
from picshelf.worker.jobs import get_current_task_id

logger = logging.getLogger("picshelf")
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


async def log_activity(session: AsyncSession, level: str, message: str, payload: Any | None = None):
    if payload is None:
        payload_obj = {}
    elif isinstance(payload, dict):
        payload_obj = dict(payload)
    else:
        payload_obj = {"data": payload}
    task_id = payload_obj.get("task_id") or get_current_task_id()
    if task_id:
        payload_obj["task_id"] = task_id
    payload_json = json.dumps(payload_obj, default=str)
    entry = models.Activity(level=level.upper(), message=message, payload_json=payload_json)
    session.add(entry)
    await session.commit()
    logger.log(_LEVELS.get(level.upper(), logging.INFO), "%s :: %s", message, payload_json)


async def fetch_recent_activity(session: AsyncSession, limit: int = 100, level: str | None = None) -> Sequence[models.Activity]:
    stmt = select(models.Activity)
    if level:
        stmt = stmt.where(models.Activity.level == level.upper())
    stmt = stmt.order_by(desc(models.Activity.ts)).limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()
