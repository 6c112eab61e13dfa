import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Set

from picshelf.core.config import ScannerConfig
from picshelf.core.errors import StructureError
from picshelf.core.logging_utils import append_corruption_log
from picshelf.services.hashing import content_hash_file
from picshelf.services.imaging import is_damaged

logger = logging.getLogger("picshelf.preprocess")

# "name (3).jpg" -> ("name", "3", ".jpg"); the numbered marker is optional
_FAMILY_RE = re.compile(r"^(.*?)(?: \((\d+)\))?(\.\w+)$", re.IGNORECASE)


@dataclass
class FileGroup:
    """A base file plus its numbered copies, e.g. ``x.jpg`` and ``x (1).jpg``."""

    base_path: Path
    variants: Dict[int, Path] = field(default_factory=dict)


def _is_image(path: Path, extensions: Set[str]) -> bool:
    return path.suffix.lower().lstrip(".") in extensions


def group_files(files: List[Path]) -> List[FileGroup]:
    groups: Dict[str, FileGroup] = {}
    for path in files:
        match = _FAMILY_RE.match(path.name)
        if not match:
            continue
        base, number, ext = match.groups()
        base_path = path.parent / f"{base}{ext}"
        key = str(base_path).lower()
        group = groups.get(key)
        if group is None:
            group = FileGroup(base_path=base_path)
            groups[key] = group
        if number is None:
            # keys are case-folded; keep the on-disk spelling of the base
            group.base_path = path
        elif int(number) > 0:
            group.variants[int(number)] = path
    return list(groups.values())


class Preprocessor:
    """Repairs damaged images from their numbered copies and drops byte-identical copies."""

    def __init__(self, config: ScannerConfig):
        self.config = config
        self._extensions = {ext.lower().lstrip(".") for ext in config.image_extensions}

    def _walk(self, root: Path) -> List[Path]:
        if not root.is_dir():
            raise StructureError(f"Scan root is not a directory: {root}")

        def _raise(err: OSError):
            raise StructureError(f"Cannot enumerate {err.filename}: {err.strerror}") from err

        files: List[Path] = []
        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for name in filenames:
                path = Path(dirpath) / name
                if _is_image(path, self._extensions):
                    files.append(path)
        return files

    def process(self, root: Path) -> List[Path]:
        """Return the image files left under ``root`` after repair and dedup."""
        files = self._walk(root)
        groups = [g for g in group_files(files) if g.variants]
        logger.info("Preprocessing %s: %d images, %d file groups with copies", root, len(files), len(groups))

        removed: Set[Path] = set()
        if groups:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                for gone in pool.map(self._process_group, groups):
                    removed.update(gone)

        remaining = sorted(p for p in files if p not in removed)
        logger.info("Preprocessing done: %d removed, %d remaining", len(removed), len(remaining))
        return remaining

    def _process_group(self, group: FileGroup) -> Set[Path]:
        try:
            if not group.base_path.exists():
                logger.debug("No base file for %s, leaving copies untouched", group.base_path)
                return set()
            if is_damaged(group.base_path):
                return self._repair(group)
            return self._dedup(group)
        except OSError as exc:
            logger.error("Failed to process file group %s: %s", group.base_path, exc)
            return set()

    def _repair(self, group: FileGroup) -> Set[Path]:
        base = group.base_path
        for i in range(1, self.config.max_repair_attempts + 1):
            candidate = group.variants.get(i)
            if candidate is None:
                break
            if is_damaged(candidate):
                logger.debug("Copy %s is damaged too", candidate)
                continue
            base.unlink()
            os.rename(candidate, base)
            logger.info("Repaired %s from %s", base, candidate.name)
            return {candidate}

        logger.error("Unrepairable image: %s", base)
        append_corruption_log(Path(self.config.corruption_log_path), str(base))
        return set()

    def _dedup(self, group: FileGroup) -> Set[Path]:
        base_hash = content_hash_file(group.base_path)
        removed: Set[Path] = set()
        for _, variant in sorted(group.variants.items()):
            try:
                if content_hash_file(variant) != base_hash:
                    continue
                variant.unlink()
                removed.add(variant)
                logger.debug("Removed duplicate %s", variant)
            except OSError as exc:
                logger.warning("Could not dedup %s: %s", variant, exc)
        return removed
