import os
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FILE_PATTERNS = [
    r"^(.*?)_(\d+)_p(\d+)_(\d+)(\.[a-zA-Z0-9_]+)?$",
    r"^(.*?)_(\d+)_p(\d+)(\.[a-zA-Z0-9_]+)?$",
    r"^(.*?)_(\d+)(\.[a-zA-Z0-9_]+)?$",
    r"^(.*?)_pg(\d+)_(\d+)(\.[a-zA-Z0-9_]+)?$",
    r"^(.*?)_(\d+)_p(\d+).(\.[a-zA-Z0-9_]+)?$",
]


class SeriesGroupRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    pattern: str


DEFAULT_SERIES_GROUP_RULES = [
    SeriesGroupRule(name="leading-index", pattern=r"^\s*\(\d+\)\s*(?P<group>.*)"),
    SeriesGroupRule(name="brackets", pattern=r"^[『「《\[(【（](?P<group>.*?)[』」》)\]】）]"),
    SeriesGroupRule(name="text-number", pattern=r"^(?P<group>.+?)\s*(\d+)$"),
]


class ScannerConfig(BaseModel):
    """Everything one scan needs, resolved once and handed to each stage."""

    model_config = ConfigDict(frozen=True)

    scan_path: str
    staging_path: str
    final_library_path: str
    quarantine_path: str
    backup_path: str
    log_dir: str
    corruption_log_path: str
    worker_count: int = 0
    batch_size: int = 100
    max_repair_attempts: int = 5
    thumbnail_size: int = 200
    image_extensions: List[str] = Field(default_factory=lambda: ["jpg", "jpeg", "png", "gif", "webp"])
    file_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_FILE_PATTERNS))
    series_group_rules: List[SeriesGroupRule] = Field(default_factory=lambda: list(DEFAULT_SERIES_GROUP_RULES))

    @property
    def workers(self) -> int:
        if self.worker_count > 0:
            return self.worker_count
        return os.cpu_count() or 1

    def with_scan_path(self, scan_path: str) -> "ScannerConfig":
        return self.model_copy(update={"scan_path": os.path.abspath(scan_path)})


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PICSHELF_", extra="ignore")

    # container paths
    scan_path: str = Field("/data/incoming")
    staging_path: str = Field("/data/staging")
    final_library_path: str = Field("/data/library")
    quarantine_path: str = Field("/data/quarantine")
    backup_path: str = Field("/data/backups")
    config_root: str = Field("/config")
    corruption_log_path: Optional[str] = Field(default=None)

    # pipeline tuning
    worker_count: int = 0  # 0 means one worker per CPU
    batch_size: int = 100
    max_repair_attempts: int = 5
    thumbnail_size: int = 200

    # classification / aggregation rules
    image_extensions: List[str] = ["jpg", "jpeg", "png", "gif", "webp"]
    file_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_FILE_PATTERNS))
    series_group_patterns: List[SeriesGroupRule] = Field(default_factory=lambda: list(DEFAULT_SERIES_GROUP_RULES))

    debug_logging: bool = False

    @property
    def db_path(self) -> str:
        return os.path.join(self.config_root, "picshelf.db")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.config_root, "logs")

    def scanner_config(self) -> ScannerConfig:
        return ScannerConfig(
            scan_path=os.path.abspath(self.scan_path),
            staging_path=os.path.abspath(self.staging_path),
            final_library_path=os.path.abspath(self.final_library_path),
            quarantine_path=os.path.abspath(self.quarantine_path),
            backup_path=os.path.abspath(self.backup_path),
            log_dir=os.path.abspath(self.log_dir),
            corruption_log_path=os.path.abspath(
                self.corruption_log_path or os.path.join(self.log_dir, "corrupted_files.log")
            ),
            worker_count=self.worker_count,
            batch_size=self.batch_size if self.batch_size > 0 else 100,
            max_repair_attempts=self.max_repair_attempts,
            thumbnail_size=self.thumbnail_size,
            image_extensions=[ext.lower().lstrip(".") for ext in self.image_extensions],
            file_patterns=list(self.file_patterns),
            series_group_rules=list(self.series_group_patterns),
        )


APP_VERSION = "0.3.0"

settings = Settings()
