from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

TaskStatus = Literal["pending", "running", "completed", "failed"]
ScanStatus = Literal["success", "partial", "failed"]


class DuplicateInfo(BaseModel):
    new_file_path: str
    file_name: str
    series_name: str
    existing_path: str


class StageError(BaseModel):
    stage: str
    message: str
    fatal: bool = False


class ScanReport(BaseModel):
    status: ScanStatus = "success"
    scan_path: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    stage_errors: List[StageError] = Field(default_factory=list)
    files_preprocessed: int = 0
    series_classified: int = 0
    files_classified: int = 0
    series_ingested: int = 0
    images_ingested: int = 0
    corrupt_deleted: int = 0
    changelog: Dict[str, str] = Field(default_factory=dict)
    quarantined: Dict[str, str] = Field(default_factory=dict)
    overwritten_files: List[str] = Field(default_factory=list)
    file_name_duplicates: List[DuplicateInfo] = Field(default_factory=list)
    hash_duplicates: List[DuplicateInfo] = Field(default_factory=list)
    backup_path: Optional[str] = None
    restored_series: List[str] = Field(default_factory=list)

    @property
    def fatal(self) -> bool:
        return any(err.fatal for err in self.stage_errors)


class ScanRequest(BaseModel):
    path: Optional[str] = None


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: TaskStatus
    progress: int
    scan_path: str
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class TaskCreated(BaseModel):
    task_id: str
    status: TaskStatus


class SeriesOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    path: str
    image_count: int
    thumbnail: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    series_id: str
    file_name: str
    file_path: str
    file_hash: str
    perceptual_hash: str
    thumbnail: str
    created_at: datetime
    updated_at: datetime


class SeriesPage(BaseModel):
    items: List[SeriesOut]
    total: int
    page: int
    limit: int


class ImagePage(BaseModel):
    items: List[ImageOut]
    total: int
    page: int
    limit: int


class ImageSearchResult(BaseModel):
    perceptual_hash: str
    matches: List[ImageOut]


class MaintenanceResult(BaseModel):
    path: str


class SeriesCheck(BaseModel):
    series_id: str
    name: str
    path: str
    expected: int
    actual: int
    missing_files: List[str] = Field(default_factory=list)


class CatalogCheckResult(BaseModel):
    series_checked: int = 0
    problems: List[SeriesCheck] = Field(default_factory=list)


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ts: datetime
    level: str
    message: str
    payload_json: str
