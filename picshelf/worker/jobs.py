import logging
import queue
import threading
import traceback
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict

from picshelf.api.schemas import ScanReport, TaskOut
from picshelf.core.errors import ScanConflictError, TaskNotFoundError
from picshelf.worker.queue import COMPLETED, FAILED, RUNNING, Task

logger = logging.getLogger("picshelf.tasks")
_job_ctx = threading.local()

ScanRunner = Callable[[str, Callable[[int], None]], ScanReport]


def get_current_task_id() -> str | None:
    return getattr(_job_ctx, "task_id", None)


class TaskManager:
    """Runs scans one at a time on a background thread and tracks their state."""

    def __init__(self, runner: ScanRunner):
        self._runner = runner
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.Lock()
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._worker_started = False

    def start(self):
        with self._lock:
            if self._worker_started:
                return
            self._worker_started = True
        t = threading.Thread(target=self._run, name="picshelf-scan-worker", daemon=True)
        t.start()
        logger.info("Scan worker started")

    def start_scan(self, scan_path: str) -> str:
        with self._lock:
            active = next((t for t in self._tasks.values() if t.active), None)
            if active is not None:
                raise ScanConflictError(active.id)
            task = Task(scan_path=scan_path)
            self._tasks[task.id] = task
        self._queue.put(task.id)
        logger.info("Queued scan task %s for %s", task.id, scan_path)
        self.start()
        return task.id

    def get_task(self, task_id: str) -> TaskOut:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            snapshot = replace(task)
        return TaskOut.model_validate(snapshot)

    def active_task_id(self) -> str | None:
        with self._lock:
            for task in self._tasks.values():
                if task.active:
                    return task.id
        return None

    def join(self):
        """Block until every queued scan has finished."""
        self._queue.join()

    def _update(self, task_id: str, **changes):
        with self._lock:
            task = self._tasks[task_id]
            for key, value in changes.items():
                setattr(task, key, value)

    def _set_progress(self, task_id: str, value: int):
        self._update(task_id, progress=max(0, min(100, int(value))))

    def _run(self):
        while True:
            task_id = self._queue.get()
            try:
                self._execute(task_id)
            finally:
                self._queue.task_done()

    def _execute(self, task_id: str):
        with self._lock:
            scan_path = self._tasks[task_id].scan_path
        self._update(task_id, status=RUNNING, started_at=datetime.utcnow())
        logger.info("Scan task %s running", task_id)
        _job_ctx.task_id = task_id
        try:
            report = self._runner(scan_path, lambda value: self._set_progress(task_id, value))
        except Exception as exc:
            self._update(task_id, status=FAILED, error=str(exc) or exc.__class__.__name__, finished_at=datetime.utcnow())
            logger.error("Scan task %s crashed: %s", task_id, traceback.format_exc())
            return
        finally:
            _job_ctx.task_id = None

        if report.status == "failed":
            fatal = [e.message for e in report.stage_errors if e.fatal] or ["scan failed"]
            self._update(task_id, status=FAILED, error="; ".join(fatal), finished_at=datetime.utcnow())
            logger.error("Scan task %s failed: %s", task_id, fatal[0])
        else:
            self._update(task_id, status=COMPLETED, progress=100, finished_at=datetime.utcnow())
            logger.info("Scan task %s completed (%s)", task_id, report.status)
