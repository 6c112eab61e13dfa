import logging
from pathlib import Path

from fastapi import FastAPI

from picshelf.api.routes_activity import router as activity_router
from picshelf.api.routes_health import router as health_router
from picshelf.api.routes_maintenance import router as maintenance_router
from picshelf.api.routes_search import router as search_router
from picshelf.api.routes_series import router as series_router
from picshelf.api.routes_tasks import router as tasks_router
from picshelf.core.config import APP_VERSION, settings as env_settings
from picshelf.core.db import configure, init_db
from picshelf.core.logging_utils import setup_logging
from picshelf.services.scan_service import make_scan_runner
from picshelf.worker.jobs import TaskManager

app = FastAPI(title="PicShelf", version=APP_VERSION)


def _ensure_dir(path: Path, allow_failure: bool = False) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
        return True
    except OSError as exc:  # pragma: no cover - startup safety
        logging.warning("Failed to create directory %s: %s", path, exc)
        if not allow_failure:
            raise
        return False


@app.on_event("startup")
async def startup():
    setup_logging(Path(env_settings.log_dir), debug_enabled=env_settings.debug_logging)
    _ensure_dir(Path(env_settings.config_root))
    for raw in (env_settings.staging_path, env_settings.final_library_path, env_settings.quarantine_path, env_settings.backup_path):
        _ensure_dir(Path(raw), allow_failure=True)

    db_path = Path(env_settings.db_path)
    configure(db_path)
    await init_db()

    scanner_config = env_settings.scanner_config()
    app.state.scanner_config = scanner_config
    app.state.db_path = str(db_path)
    app.state.default_scan_path = scanner_config.scan_path
    app.state.task_manager = TaskManager(make_scan_runner(scanner_config, db_path))
    app.state.task_manager.start()
    logging.getLogger("picshelf").info("PicShelf %s started, catalog at %s", APP_VERSION, db_path)


app.include_router(tasks_router, prefix="/api")
app.include_router(series_router, prefix="/api")
app.include_router(search_router, prefix="/api")
app.include_router(activity_router, prefix="/api")
app.include_router(maintenance_router, prefix="/api")
app.include_router(health_router, prefix="/api")
