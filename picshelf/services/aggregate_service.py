import logging
import os
import re
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from unidecode import unidecode

from picshelf.core.config import ScannerConfig
from picshelf.core.errors import ConfigError, StructureError
from picshelf.services.classify_service import sanitize_name

logger = logging.getLogger("picshelf.aggregate")

BUCKETS = tuple("ABCDEFGHIJKLMNOPQRSTUVWXYZ") + ("#",)
AGG_SUFFIX = "_agg"


def bucket_for(name: str) -> str:
    """Archive bucket of a series: first letter or digit of the transliterated name."""
    for ch in unidecode(name):
        if ch.isalnum():
            upper = ch.upper()
            return upper if "A" <= upper <= "Z" else "#"
    return "#"


def compose_changelog(
    archive_moved: Mapping[str, str],
    group_moved: Mapping[str, str],
    group_unmoved: Mapping[str, str],
) -> Dict[str, str]:
    """(archive ∪ group) minus archive moves whose destination was later pulled out by a merge conflict."""
    changelog: Dict[str, str] = dict(archive_moved)
    changelog.update(group_moved)
    for src, dest in archive_moved.items():
        if dest in group_unmoved:
            changelog.pop(src, None)
    return changelog


@dataclass
class _MoveLedger:
    moved: Dict[str, str] = field(default_factory=dict)
    unmoved: Dict[str, str] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def record_moved(self, src: Path, dest: Path):
        with self.lock:
            self.moved[str(src)] = str(dest)

    def record_unmoved(self, src: Path, where: Optional[Path]):
        with self.lock:
            self.unmoved[str(src)] = str(where) if where else ""


@dataclass
class AggregateResult:
    changelog: Dict[str, str]
    archive_moved: Dict[str, str]
    archive_unmoved: Dict[str, str]
    group_moved: Dict[str, str]
    group_unmoved: Dict[str, str]

    @property
    def quarantined(self) -> Dict[str, str]:
        out = {src: dest for src, dest in self.archive_unmoved.items() if dest}
        out.update({src: dest for src, dest in self.group_unmoved.items() if dest})
        return out


class Aggregator:
    """Archives staged series into letter buckets and merges related series into ``_agg`` collections."""

    def __init__(self, config: ScannerConfig):
        self.config = config
        self.quarantine_path = Path(config.quarantine_path)
        self._rules: List[re.Pattern] = []
        for rule in config.series_group_rules:
            try:
                regex = re.compile(rule.pattern)
            except re.error as exc:
                raise ConfigError(f"Invalid series group rule {rule.name!r}: {exc}") from exc
            if "group" not in regex.groupindex:
                raise ConfigError(f"Series group rule {rule.name!r} has no (?P<group>...) capture")
            self._rules.append(regex)

    def aggregate_and_archive(self, staging_path: Path, library_path: Path) -> AggregateResult:
        staging_path = staging_path.resolve()
        library_path = library_path.resolve()
        logger.info("Aggregating %s into %s", staging_path, library_path)
        self.check_and_prepare_structure(library_path)
        archive = self.archive_staging(staging_path, library_path)
        grouped = self.aggregate_buckets(library_path)
        changelog = compose_changelog(archive.moved, grouped.moved, grouped.unmoved)
        logger.info(
            "Aggregation done: %d archived, %d merged, %d conflicts, %d changelog entries",
            len(archive.moved),
            len(grouped.moved),
            len(archive.unmoved) + len(grouped.unmoved),
            len(changelog),
        )
        return AggregateResult(
            changelog=changelog,
            archive_moved=archive.moved,
            archive_unmoved=archive.unmoved,
            group_moved=grouped.moved,
            group_unmoved=grouped.unmoved,
        )

    # --- phase 1 -------------------------------------------------------------

    def check_and_prepare_structure(self, library_path: Path):
        try:
            library_path.mkdir(parents=True, exist_ok=True)
            entries = list(os.scandir(library_path))
        except OSError as exc:
            raise StructureError(f"Cannot read library root {library_path}: {exc}") from exc

        for entry in entries:
            name = entry.name
            if name in BUCKETS:
                if not entry.is_dir():
                    raise StructureError(f"Library bucket {name!r} is a file, expected a directory")
            elif not name.startswith(".") and name.lower() != "thumbs.db":
                raise StructureError(f"Unexpected top-level entry in library: {name!r}")

        for bucket in BUCKETS:
            try:
                (library_path / bucket).mkdir(exist_ok=True)
            except OSError as exc:
                raise StructureError(f"Cannot create bucket {bucket}: {exc}") from exc

    # --- phase 2 -------------------------------------------------------------

    def archive_staging(self, staging_path: Path, library_path: Path) -> _MoveLedger:
        ledger = _MoveLedger()
        if not staging_path.is_dir():
            return ledger
        series_dirs = [
            Path(entry.path).resolve()
            for entry in os.scandir(staging_path)
            if entry.is_dir() and not entry.name.startswith(".")
        ]
        if not series_dirs:
            return ledger

        def _archive(src: Path):
            dest = library_path / bucket_for(src.name) / src.name
            if os.path.lexists(dest):
                logger.warning("Archive conflict: %s already exists", dest)
                ledger.record_unmoved(src, self._quarantine(src))
                return
            try:
                shutil.move(str(src), str(dest))
            except OSError as exc:
                logger.error("Failed to archive %s -> %s: %s", src, dest, exc)
                ledger.record_unmoved(src, None)
                return
            logger.debug("Archived %s -> %s", src, dest)
            ledger.record_moved(src, dest)

        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            list(pool.map(_archive, series_dirs))
        return ledger

    # --- phase 3 -------------------------------------------------------------

    def group_name_for(self, folder_name: str) -> str:
        if folder_name.endswith(AGG_SUFFIX):
            return folder_name[: -len(AGG_SUFFIX)]
        for regex in self._rules:
            match = regex.search(folder_name)
            if match:
                group = sanitize_name(match.group("group") or "")
                if group:
                    return group
        return ""

    def group_series(self, series_paths: List[Path]) -> Dict[str, List[Path]]:
        groups: Dict[str, List[Path]] = {}
        for path in series_paths:
            name = self.group_name_for(path.name)
            if name:
                groups.setdefault(name, []).append(path)
        return groups

    def aggregate_buckets(self, library_path: Path) -> _MoveLedger:
        ledger = _MoveLedger()
        buckets = [library_path / b for b in BUCKETS if (library_path / b).is_dir()]
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            list(pool.map(lambda bucket: self._aggregate_bucket(bucket, ledger), buckets))
        return ledger

    def _aggregate_bucket(self, bucket: Path, ledger: _MoveLedger):
        try:
            series_paths = sorted(
                Path(entry.path)
                for entry in os.scandir(bucket)
                if entry.is_dir() and not entry.name.startswith(".")
            )
        except OSError as exc:
            logger.error("Cannot read bucket %s: %s", bucket, exc)
            return
        if len(series_paths) < 2:
            return

        for group_name, members in sorted(self.group_series(series_paths).items()):
            if len(members) < 2:
                continue
            existing = [p for p in members if p.name.endswith(AGG_SUFFIX)]
            target = existing[0] if existing else bucket / f"{group_name}{AGG_SUFFIX}"
            try:
                target.mkdir(exist_ok=True)
            except OSError as exc:
                logger.error("Cannot create collection directory %s: %s", target, exc)
                continue
            for member in members:
                if member.name.endswith(AGG_SUFFIX):
                    continue
                self._merge_member(member, target / member.name, ledger)

    def _merge_member(self, src: Path, dest: Path, ledger: _MoveLedger):
        if os.path.lexists(dest):
            logger.warning("Collection conflict: %s already exists, quarantining %s", dest, src)
            ledger.record_unmoved(src, self._quarantine(src))
            return
        try:
            os.rename(src, dest)
        except OSError as exc:
            logger.error("Failed to merge %s -> %s: %s", src, dest, exc)
            ledger.record_unmoved(src, None)
            return
        logger.debug("Merged %s -> %s", src, dest)
        ledger.record_moved(src, dest)

    def _quarantine(self, src: Path) -> Optional[Path]:
        dest = self.quarantine_path / f"{src.name}_{time.time_ns()}"
        try:
            self.quarantine_path.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src), str(dest))
        except OSError as exc:
            logger.error("Failed to quarantine %s: %s", src, exc)
            return None
        logger.info("Quarantined %s -> %s", src, dest)
        return dest
