import gzip
import logging
import os
import shutil
import subprocess
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from picshelf.api.schemas import CatalogCheckResult, SeriesCheck
from picshelf.core.config import ScannerConfig
from picshelf.core.errors import BackupToolMissingError
from picshelf.services.catalog_service import CatalogStore
from picshelf.services.hashing import content_hash_file

logger = logging.getLogger("picshelf.maintenance")

DUMP_TOOL = "sqlite3"
_CHECK_PAGE_SIZE = 500


class MaintenanceService:
    def __init__(self, config: ScannerConfig):
        self.config = config

    def generate_file_manifest(self, library_path: Path, output_path: Path) -> Path:
        """Write ``<sha256> *<relative path>`` for every file under the library, sorted by path."""
        output_path.mkdir(parents=True, exist_ok=True)
        manifest = output_path / f"manifest_{datetime.now().strftime('%Y-%m-%d')}.txt"

        files: List[Path] = []
        for dirpath, _, filenames in os.walk(library_path):
            for name in filenames:
                files.append(Path(dirpath) / name)
        files.sort()

        def _line(path: Path) -> Optional[str]:
            try:
                digest = content_hash_file(path)
            except OSError as exc:
                logger.warning("Skipping %s in manifest: %s", path, exc)
                return None
            return f"{digest} *{path.relative_to(library_path).as_posix()}\n"

        written = 0
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool, manifest.open("w", encoding="utf-8") as fh:
            for line in pool.map(_line, files):
                if line is None:
                    continue
                fh.write(line)
                written += 1
        logger.info("Manifest with %d entries written to %s", written, manifest)
        return manifest

    def backup_database(self, db_path: Path, output_path: Path) -> Path:
        tool = shutil.which(DUMP_TOOL)
        if tool is None:
            raise BackupToolMissingError(f"{DUMP_TOOL} is not installed or not on PATH")
        output_path.mkdir(parents=True, exist_ok=True)
        target = output_path / f"db_backup_{datetime.now().strftime('%Y-%m-%d_%H%M%S')}.sql.gz"

        logger.info("Dumping %s to %s", db_path, target)
        proc = subprocess.run([tool, str(db_path), ".dump"], capture_output=True, check=False)
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            logger.error("%s exited with %d: %s", DUMP_TOOL, proc.returncode, stderr)
            raise subprocess.CalledProcessError(proc.returncode, proc.args, proc.stdout, proc.stderr)
        with gzip.open(target, "wb") as fh:
            fh.write(proc.stdout)
        logger.info("Database backup written to %s", target)
        return target

    async def verify_catalog(self, store: CatalogStore) -> CatalogCheckResult:
        """Report series whose cached count is stale or whose folder holds uncatalogued files."""
        result = CatalogCheckResult()
        page = 1
        while True:
            series_page, total = await store.list_series(page, _CHECK_PAGE_SIZE)
            for series in series_page:
                complete, expected, actual = await store.check_series_completeness(series.id)
                missing = await store.find_missing_files(series)
                result.series_checked += 1
                if complete and not missing:
                    continue
                result.problems.append(
                    SeriesCheck(
                        series_id=series.id,
                        name=series.name,
                        path=series.path,
                        expected=expected,
                        actual=actual,
                        missing_files=missing,
                    )
                )
            if not series_page or page * _CHECK_PAGE_SIZE >= total:
                break
            page += 1
        logger.info("Catalog check: %d series, %d with problems", result.series_checked, len(result.problems))
        return result

    async def reset_catalog(self, store: CatalogStore):
        await store.drop_all()
        logger.warning("Catalog reset: all series, images and activity removed")
