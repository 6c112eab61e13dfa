from fastapi import APIRouter, Request
from picshelf.core.config import APP_VERSION

router = APIRouter(tags=["health"])

@router.get("/health")
async def health(request: Request):
    manager = getattr(request.app.state, "task_manager", None)
    active = manager.active_task_id() if manager else None
    return {"status": "ok", "version": APP_VERSION, "active_scan": active}
