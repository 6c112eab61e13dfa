import logging
import os
import re
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple

from picshelf.core.config import ScannerConfig
from picshelf.core.errors import ConfigError

logger = logging.getLogger("picshelf.classify")

_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*]')


def sanitize_name(name: str) -> str:
    """Make a series name safe to use as a directory name."""
    cleaned = _ILLEGAL_CHARS.sub(" ", name).strip()
    return cleaned.rstrip(". ").strip()


def compile_patterns(patterns: Sequence[str]) -> List[re.Pattern]:
    compiled = []
    for pattern in patterns:
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise ConfigError(f"Invalid file pattern {pattern!r}: {exc}") from exc
        if regex.groups < 1:
            raise ConfigError(f"File pattern {pattern!r} has no capture group for the series name")
        compiled.append(regex)
    return compiled


@dataclass
class ClassifyResult:
    series_names: Set[str] = field(default_factory=set)
    file_names: Set[str] = field(default_factory=set)
    skipped: int = 0


class Classifier:
    def __init__(self, config: ScannerConfig):
        self.config = config
        self.destination = Path(config.staging_path)
        self._patterns = compile_patterns(config.file_patterns)
        self._claimed: Set[Path] = set()
        self._claim_lock = threading.Lock()
        if not self._patterns:
            raise ConfigError("No file patterns configured")

    def extract_series_name(self, file_name: str) -> str:
        """First matching pattern wins; its first group is the series name."""
        for regex in self._patterns:
            match = regex.search(file_name)
            if match and match.group(1):
                return sanitize_name(match.group(1))
        return ""

    def classify_and_move(self, files: Sequence[Path]) -> ClassifyResult:
        result = ClassifyResult()
        if not files:
            return result
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            for outcome in pool.map(self._classify_one, files):
                if outcome is None:
                    result.skipped += 1
                    continue
                series_name, file_name = outcome
                result.series_names.add(series_name)
                result.file_names.add(file_name)
        logger.info(
            "Classified %d files into %d series (%d skipped)",
            len(result.file_names),
            len(result.series_names),
            result.skipped,
        )
        return result

    def _classify_one(self, path: Path) -> Optional[Tuple[str, str]]:
        file_name = path.name
        series_name = self.extract_series_name(file_name)
        if not series_name:
            logger.info("No pattern matches %s, leaving it in place", file_name)
            return None

        target_dir = self.destination / series_name
        target = target_dir / file_name
        with self._claim_lock:
            if target in self._claimed or os.path.lexists(target):
                logger.warning("Staging target already exists, skipping %s -> %s", path, target)
                return None
            self._claimed.add(target)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(path), str(target))
        except OSError as exc:
            logger.error("Failed to move %s -> %s: %s", path, target, exc)
            with self._claim_lock:
                self._claimed.discard(target)
            return None
        logger.debug("Moved %s -> %s", file_name, target_dir)
        return series_name, file_name
