import asyncio
import subprocess
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request

from picshelf.api.schemas import CatalogCheckResult, MaintenanceResult
from picshelf.core.errors import BackupToolMissingError
from picshelf.services.catalog_service import CatalogStore, get_store
from picshelf.services.maintenance_service import MaintenanceService

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/manifest", response_model=MaintenanceResult)
async def generate_manifest(request: Request):
    config = request.app.state.scanner_config
    service = MaintenanceService(config)
    manifest = await asyncio.to_thread(
        service.generate_file_manifest,
        Path(config.final_library_path),
        Path(config.backup_path),
    )
    return MaintenanceResult(path=str(manifest))


@router.post("/backup", response_model=MaintenanceResult)
async def backup_database(request: Request):
    config = request.app.state.scanner_config
    service = MaintenanceService(config)
    try:
        target = await asyncio.to_thread(service.backup_database, Path(request.app.state.db_path), Path(config.backup_path))
    except BackupToolMissingError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except subprocess.CalledProcessError as exc:
        raise HTTPException(status_code=500, detail=f"Database dump failed with exit code {exc.returncode}")
    return MaintenanceResult(path=str(target))


@router.post("/verify", response_model=CatalogCheckResult)
async def verify_catalog(request: Request, store: CatalogStore = Depends(get_store)):
    return await MaintenanceService(request.app.state.scanner_config).verify_catalog(store)


@router.post("/reset")
async def reset_catalog(request: Request, store: CatalogStore = Depends(get_store)):
    active = request.app.state.task_manager.active_task_id()
    if active is not None:
        raise HTTPException(status_code=409, detail=f"Scan {active} is running")
    await MaintenanceService(request.app.state.scanner_config).reset_catalog(store)
    return {"status": "reset"}
