from fastapi import APIRouter, HTTPException, Request, status

from picshelf.api.schemas import ScanRequest, TaskCreated, TaskOut
from picshelf.core.errors import ScanConflictError, TaskNotFoundError
from picshelf.worker.jobs import TaskManager

router = APIRouter(prefix="/tasks", tags=["tasks"])


def _manager(request: Request) -> TaskManager:
    return request.app.state.task_manager


@router.post("/scan", response_model=TaskCreated, status_code=status.HTTP_202_ACCEPTED)
async def start_scan(request: Request, payload: ScanRequest | None = None):
    scan_path = (payload.path if payload else None) or request.app.state.default_scan_path
    try:
        task_id = _manager(request).start_scan(scan_path)
    except ScanConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return TaskCreated(task_id=task_id, status="pending")


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(task_id: str, request: Request):
    try:
        return _manager(request).get_task(task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
