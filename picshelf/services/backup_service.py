import logging
import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from picshelf.api.schemas import DuplicateInfo
from picshelf.core.config import ScannerConfig
from picshelf.services.catalog_service import CatalogStore
from picshelf.services.hashing import content_hash_file

logger = logging.getLogger("picshelf.backup")

BACKUP_DIR_FORMAT = "%Y-%m-%d_%H-%M-%S"


@dataclass
class BackupResult:
    file_name_duplicates: List[DuplicateInfo] = field(default_factory=list)
    hash_duplicates: List[DuplicateInfo] = field(default_factory=list)
    backup_path: Optional[str] = None


class BackupService:
    """Compares incoming files with the catalog before anything moves, and snapshots series at risk."""

    def __init__(self, config: ScannerConfig, store: CatalogStore):
        self.config = config
        self.store = store
        self._extensions = {ext.lower().lstrip(".") for ext in config.image_extensions}

    def _incoming_files(self, scan_path: Path) -> List[Path]:
        files = []
        for dirpath, dirnames, filenames in os.walk(scan_path):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for name in filenames:
                if Path(name).suffix.lower().lstrip(".") in self._extensions:
                    files.append(Path(dirpath) / name)
        return sorted(files)

    def _hash_all(self, files: List[Path]) -> List[Tuple[Path, str]]:
        def _hash(path: Path) -> Tuple[Path, str]:
            try:
                return path, content_hash_file(path)
            except OSError as exc:
                logger.warning("Cannot hash %s: %s", path, exc)
                return path, ""

        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            return [item for item in pool.map(_hash, files) if item[1]]

    async def backup_for_new_files(self, scan_path: Path) -> BackupResult:
        result = BackupResult()
        files = self._incoming_files(scan_path)
        if not files:
            return result
        hashed = self._hash_all(files)

        series_cache: Dict[str, Tuple[str, str]] = {}
        at_risk: Dict[str, str] = {}  # series name -> series path

        async def _series(series_id: str) -> Tuple[str, str]:
            if series_id not in series_cache:
                found = await self.store.get_series_by_ids([series_id])
                series_cache[series_id] = (found[0].name, found[0].path) if found else ("", "")
            return series_cache[series_id]

        for path, file_hash in hashed:
            for existing in await self.store.get_images_by_file_name(path.name):
                if existing.file_hash == file_hash:
                    continue
                name, series_path = await _series(existing.series_id)
                result.file_name_duplicates.append(
                    DuplicateInfo(
                        new_file_path=str(path),
                        file_name=path.name,
                        series_name=name,
                        existing_path=existing.file_path,
                    )
                )
                if series_path:
                    at_risk[name] = series_path
            for existing in await self.store.get_images_by_file_hash(file_hash):
                name, _ = await _series(existing.series_id)
                result.hash_duplicates.append(
                    DuplicateInfo(
                        new_file_path=str(path),
                        file_name=existing.file_name,
                        series_name=name,
                        existing_path=existing.file_path,
                    )
                )

        logger.info(
            "Pre-scan check: %d file name duplicates, %d content duplicates",
            len(result.file_name_duplicates),
            len(result.hash_duplicates),
        )
        if at_risk:
            result.backup_path = self._copy_series(at_risk)
        return result

    def _copy_series(self, series_dirs: Dict[str, str]) -> Optional[str]:
        target_root = Path(self.config.backup_path) / datetime.now().strftime(BACKUP_DIR_FORMAT)
        copied = 0
        for name, src in sorted(series_dirs.items()):
            src_path = Path(src)
            if not src_path.is_dir():
                logger.warning("Series %s has no directory at %s, nothing to back up", name, src)
                continue
            dest = target_root / name
            try:
                shutil.copytree(src_path, dest, dirs_exist_ok=True)
            except (OSError, shutil.Error) as exc:
                logger.error("Backup of series %s failed: %s", name, exc)
                continue
            copied += 1
            logger.info("Backed up series %s -> %s", name, dest)
        if not copied:
            return None
        return str(target_root)
