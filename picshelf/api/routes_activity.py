from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from picshelf.api.schemas import ActivityOut
from picshelf.core.db import get_session
from picshelf.services.activity_service import fetch_recent_activity

router = APIRouter(prefix="/activity", tags=["activity"])

@router.get("/", response_model=list[ActivityOut])
async def recent_activity(
    limit: int = Query(default=50, ge=1, le=500),
    level: Optional[str] = Query(default=None, description="Only entries at this level, e.g. WARN"),
    session: AsyncSession = Depends(get_session),
):
    return await fetch_recent_activity(session, limit=limit, level=level)
