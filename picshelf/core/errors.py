class PicShelfError(Exception):
    """Base class for errors raised by the scan pipeline."""


class ConfigError(PicShelfError):
    """A configured pattern or path cannot be used."""


class StructureError(PicShelfError):
    """The on-disk layout is inconsistent; the whole scan must stop."""


class ScanConflictError(PicShelfError):
    def __init__(self, active_task_id: str):
        super().__init__(f"Another scan is already active (task {active_task_id})")
        self.active_task_id = active_task_id


class TaskNotFoundError(PicShelfError):
    def __init__(self, task_id: str):
        super().__init__(f"Unknown task id: {task_id}")
        self.task_id = task_id


class BackupToolMissingError(PicShelfError):
    """The external database dump utility is not on PATH."""
