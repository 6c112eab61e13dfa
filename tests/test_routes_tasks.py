import asyncio
import threading
from datetime import datetime
from types import SimpleNamespace
from unittest import TestCase

from fastapi import HTTPException

from picshelf.api import routes_tasks
from picshelf.api.schemas import ScanReport, ScanRequest
from picshelf.worker.jobs import TaskManager


def _request(manager: TaskManager, default_path: str = "/data/incoming"):
    state = SimpleNamespace(task_manager=manager, default_scan_path=default_path)
    return SimpleNamespace(app=SimpleNamespace(state=state))


class TaskRouteTests(TestCase):
    def setUp(self):
        self.release = threading.Event()
        self.paths = []

        def runner(scan_path, progress):
            self.paths.append(scan_path)
            self.release.wait(timeout=10)
            return ScanReport(scan_path=scan_path, started_at=datetime.utcnow())

        self.manager = TaskManager(runner)

    def tearDown(self):
        self.release.set()
        self.manager.join()

    def test_start_uses_default_path_and_rejects_overlap(self):
        request = _request(self.manager)
        created = asyncio.run(routes_tasks.start_scan(request, None))
        self.assertEqual(created.status, "pending")

        with self.assertRaises(HTTPException) as ctx:
            asyncio.run(routes_tasks.start_scan(request, ScanRequest(path="/elsewhere")))
        self.assertEqual(ctx.exception.status_code, 409)

        self.release.set()
        self.manager.join()
        self.assertEqual(self.paths, ["/data/incoming"])
        task = asyncio.run(routes_tasks.get_task(created.task_id, request))
        self.assertEqual(task.status, "completed")

    def test_explicit_path_wins(self):
        self.release.set()
        request = _request(self.manager)
        asyncio.run(routes_tasks.start_scan(request, ScanRequest(path="/custom")))
        self.manager.join()
        self.assertEqual(self.paths, ["/custom"])

    def test_unknown_task_is_404(self):
        with self.assertRaises(HTTPException) as ctx:
            asyncio.run(routes_tasks.get_task("nope", _request(self.manager)))
        self.assertEqual(ctx.exception.status_code, 404)
