import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from picshelf.core.config import ScannerConfig
from picshelf.services.ingest_service import IngestReport, Ingestor

logger = logging.getLogger("picshelf.reconcile")


@dataclass
class ReconcileResult:
    restored: List[str] = field(default_factory=list)
    quarantined: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    ingest: Optional[IngestReport] = None


class Reconciler:
    """Restores series whose files were overwritten, using the pre-scan backup."""

    def __init__(self, config: ScannerConfig, ingestor: Ingestor):
        self.config = config
        self.ingestor = ingestor
        self.quarantine_path = Path(config.quarantine_path)

    def _quarantine_target(self, name: str) -> Path:
        target = self.quarantine_path / name
        if target.exists():
            target = self.quarantine_path / f"{name}_{time.time_ns()}"
        return target

    async def reconcile(self, overwritten_files: Sequence[str], backup_path: Optional[str]) -> ReconcileResult:
        result = ReconcileResult()
        series_dirs = sorted({Path(p).parent for p in overwritten_files})
        if not series_dirs:
            return result
        if not backup_path:
            logger.warning("Overwritten files in %d series but no backup to restore from", len(series_dirs))
            result.skipped = [str(p) for p in series_dirs]
            return result

        restored: List[Path] = []
        for series_dir in series_dirs:
            backup_copy = Path(backup_path) / series_dir.name
            if not backup_copy.is_dir():
                logger.warning("No backup copy of %s in %s, leaving it in place", series_dir.name, backup_path)
                result.skipped.append(str(series_dir))
                continue

            quarantine = self._quarantine_target(series_dir.name)
            try:
                self.quarantine_path.mkdir(parents=True, exist_ok=True)
                shutil.move(str(series_dir), str(quarantine))
            except OSError as exc:
                logger.error("Cannot quarantine polluted series %s: %s", series_dir, exc)
                result.errors.append(f"quarantine of {series_dir} failed: {exc}")
                continue
            result.quarantined[str(series_dir)] = str(quarantine)
            logger.info("Quarantined polluted series %s -> %s", series_dir, quarantine)

            try:
                shutil.copytree(backup_copy, series_dir)
            except OSError as exc:
                logger.error("Restore of %s from %s failed: %s", series_dir, backup_copy, exc)
                result.errors.append(f"restore of {series_dir} failed: {exc}")
                continue
            restored.append(series_dir)
            result.restored.append(str(series_dir))
            logger.info("Restored %s from %s", series_dir, backup_copy)

        if restored:
            # the catalog still holds the overwritten hashes; do not report them again
            result.ingest = await self.ingestor.sync_series(restored, detect_overwrites=False)
            result.errors.extend(result.ingest.errors)
        return result
