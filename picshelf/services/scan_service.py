import asyncio
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from picshelf.api.schemas import ScanReport, StageError
from picshelf.core.config import ScannerConfig
from picshelf.core.db import build_engine, build_sessionmaker, init_db
from picshelf.core.errors import ConfigError, StructureError
from picshelf.services.activity_service import log_activity
from picshelf.services.aggregate_service import Aggregator
from picshelf.services.backup_service import BackupResult, BackupService
from picshelf.services.catalog_service import CatalogStore
from picshelf.services.classify_service import Classifier
from picshelf.services.ingest_service import Ingestor
from picshelf.services.preprocess_service import Preprocessor
from picshelf.services.reconcile_service import Reconciler

logger = logging.getLogger("picshelf.scan")

ProgressCallback = Callable[[int], None]


def _report_progress(progress: Optional[ProgressCallback], value: int):
    if progress is None:
        return
    try:
        progress(value)
    except Exception:
        logger.exception("Progress callback failed at %d%%", value)


def prepare_directories(config: ScannerConfig):
    """Create working directories and empty staging; any failure is structural."""
    scan_root = Path(config.scan_path)
    if not scan_root.is_dir():
        raise StructureError(f"Scan path does not exist or is not a directory: {scan_root}")
    for raw in (config.staging_path, config.final_library_path, config.quarantine_path, config.backup_path, config.log_dir):
        try:
            Path(raw).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StructureError(f"Cannot create working directory {raw}: {exc}") from exc

    staging = Path(config.staging_path)
    for child in staging.iterdir():
        try:
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        except OSError as exc:
            raise StructureError(f"Cannot clear staging entry {child}: {exc}") from exc


async def _record(store: CatalogStore, level: str, message: str, payload=None):
    try:
        async with store.session() as session:
            await log_activity(session, level, message, payload)
    except SQLAlchemyError as exc:
        logger.error("Could not record activity %r: %s", message, exc)


async def _pre_scan_backup(config: ScannerConfig, store: CatalogStore, report: ScanReport) -> BackupResult:
    try:
        return await BackupService(config, store).backup_for_new_files(Path(config.scan_path))
    except (OSError, SQLAlchemyError) as exc:
        logger.error("Pre-scan backup failed: %s", exc)
        report.stage_errors.append(StageError(stage="backup", message=str(exc)))
        return BackupResult()


def _finish(report: ScanReport) -> ScanReport:
    report.finished_at = datetime.utcnow()
    if report.fatal:
        report.status = "failed"
    elif report.stage_errors:
        report.status = "partial"
    else:
        report.status = "success"
    return report


async def run_full_scan(
    config: ScannerConfig,
    store: CatalogStore,
    progress: Optional[ProgressCallback] = None,
) -> ScanReport:
    """Preprocess, classify, aggregate and ingest one scan root."""
    report = ScanReport(scan_path=config.scan_path, started_at=datetime.utcnow())
    _report_progress(progress, 0)
    logger.info("Scan started for %s", config.scan_path)

    stage = "prepare"
    try:
        prepare_directories(config)

        stage = "backup"
        backup = await _pre_scan_backup(config, store, report)
        report.file_name_duplicates = backup.file_name_duplicates
        report.hash_duplicates = backup.hash_duplicates
        report.backup_path = backup.backup_path
        _report_progress(progress, 10)

        stage = "preprocess"
        healthy = await asyncio.to_thread(Preprocessor(config).process, Path(config.scan_path))
        report.files_preprocessed = len(healthy)
        _report_progress(progress, 30)

        stage = "classify"
        classified = await asyncio.to_thread(Classifier(config).classify_and_move, healthy)
        report.series_classified = len(classified.series_names)
        report.files_classified = len(classified.file_names)
        _report_progress(progress, 50)

        stage = "aggregate"
        aggregated = await asyncio.to_thread(
            Aggregator(config).aggregate_and_archive,
            Path(config.staging_path),
            Path(config.final_library_path),
        )
        report.changelog = aggregated.changelog
        report.quarantined = aggregated.quarantined
        _report_progress(progress, 70)

        stage = "ingest"
        ingestor = Ingestor(config, store)
        ingested = await ingestor.sync(aggregated.changelog)
        report.series_ingested = ingested.series_count
        report.images_ingested = ingested.image_count
        report.corrupt_deleted = ingested.corrupt_deleted
        report.overwritten_files = ingested.overwritten_files
        report.file_name_duplicates.extend(ingested.duplicates)
        for message in ingested.errors:
            report.stage_errors.append(StageError(stage="ingest", message=message))

        if ingested.overwritten_files:
            stage = "reconcile"
            reconciled = await Reconciler(config, ingestor).reconcile(ingested.overwritten_files, backup.backup_path)
            report.restored_series = reconciled.restored
            report.quarantined.update(reconciled.quarantined)
            for message in reconciled.errors:
                report.stage_errors.append(StageError(stage="reconcile", message=message))
    except (StructureError, ConfigError) as exc:
        logger.error("Scan aborted during %s: %s", stage, exc)
        report.stage_errors.append(StageError(stage=stage, message=str(exc), fatal=True))
    except SQLAlchemyError as exc:
        logger.error("Catalog unavailable during %s: %s", stage, exc)
        report.stage_errors.append(StageError(stage=stage, message=str(exc), fatal=True))

    _finish(report)
    if report.status != "failed":
        _report_progress(progress, 100)
    await _record_outcome(store, report)
    logger.info("Scan finished for %s with status %s", config.scan_path, report.status)
    return report


async def _record_outcome(store: CatalogStore, report: ScanReport):
    summary = {
        "scan_path": report.scan_path,
        "status": report.status,
        "files_preprocessed": report.files_preprocessed,
        "files_classified": report.files_classified,
        "series_ingested": report.series_ingested,
        "images_ingested": report.images_ingested,
        "corrupt_deleted": report.corrupt_deleted,
        "changelog_entries": len(report.changelog),
    }
    if report.file_name_duplicates:
        await _record(
            store,
            "WARN",
            "File name duplicates found",
            {"items": [d.model_dump() for d in report.file_name_duplicates]},
        )
    if report.hash_duplicates:
        await _record(
            store,
            "INFO",
            "Content duplicates found",
            {"items": [d.model_dump() for d in report.hash_duplicates]},
        )
    if report.overwritten_files:
        await _record(
            store,
            "WARN",
            "Overwritten files detected",
            {"files": report.overwritten_files, "restored": report.restored_series},
        )
    if report.quarantined:
        await _record(store, "WARN", "Moved conflicting folders to quarantine", report.quarantined)
    if report.status == "failed":
        await _record(store, "ERROR", "Scan failed", {**summary, "errors": [e.model_dump() for e in report.stage_errors]})
    elif report.status == "partial":
        await _record(store, "WARN", "Scan finished with errors", {**summary, "errors": [e.model_dump() for e in report.stage_errors]})
    else:
        await _record(store, "INFO", "Scan finished", summary)


async def run_scan_job(config: ScannerConfig, db_path: Path, progress: Optional[ProgressCallback] = None) -> ScanReport:
    """Run one scan on a private engine; aiosqlite connections are bound to the loop that made them."""
    engine = build_engine(db_path)
    try:
        await init_db(engine)
        store = CatalogStore(build_sessionmaker(engine))
        return await run_full_scan(config, store, progress)
    finally:
        await engine.dispose()


def make_scan_runner(config: ScannerConfig, db_path: Path) -> Callable[[str, ProgressCallback], ScanReport]:
    def _run(scan_path: str, progress: ProgressCallback) -> ScanReport:
        return asyncio.run(run_scan_job(config.with_scan_path(scan_path), db_path, progress))

    return _run
