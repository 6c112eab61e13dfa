from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
ACTIVE_STATES = (PENDING, RUNNING)


@dataclass
class Task:
    scan_path: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: str = PENDING
    progress: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATES

