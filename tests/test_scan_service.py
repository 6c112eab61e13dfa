import shutil
import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase

from PIL import Image

from picshelf.core.config import ScannerConfig
from picshelf.core.db import build_engine, build_sessionmaker, init_db
from picshelf.core.errors import StructureError
from picshelf.services import scan_service
from picshelf.services.catalog_service import CatalogStore


def _write_image(path: Path, color=(200, 40, 40)):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (64, 48), color).save(path, format="JPEG")


class FullScanTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name).resolve()
        self.scan = self.base / "incoming"
        self.library = self.base / "library"
        self.scan.mkdir()
        self.config = ScannerConfig(
            scan_path=str(self.scan),
            staging_path=str(self.base / "staging"),
            final_library_path=str(self.library),
            quarantine_path=str(self.base / "quarantine"),
            backup_path=str(self.base / "backups"),
            log_dir=str(self.base / "logs"),
            corruption_log_path=str(self.base / "logs" / "corrupted_files.log"),
            worker_count=2,
        )
        self.engine = build_engine(self.base / "catalog.db")
        await init_db(self.engine)
        self.store = CatalogStore(build_sessionmaker(self.engine))

    async def asyncTearDown(self):
        await self.engine.dispose()
        self._tmp.cleanup()

    async def test_duplicates_removed_and_series_catalogued(self):
        _write_image(self.scan / "a.jpg")
        shutil.copyfile(self.scan / "a.jpg", self.scan / "a (1).jpg")
        _write_image(self.scan / "b_001.jpg", color=(20, 120, 220))
        progress = []

        report = await scan_service.run_full_scan(self.config, self.store, progress.append)

        self.assertEqual(report.status, "success", report.stage_errors)
        self.assertEqual(progress, [0, 10, 30, 50, 70, 100])
        self.assertTrue((self.scan / "a.jpg").exists())
        self.assertFalse((self.scan / "a (1).jpg").exists())
        self.assertTrue((self.library / "B" / "b" / "b_001.jpg").exists())
        self.assertEqual(report.changelog, {str(self.base / "staging" / "b"): str(self.library / "B" / "b")})

        items, total = await self.store.list_series(1, 10)
        self.assertEqual(total, 1)
        self.assertEqual(items[0].name, "b")
        self.assertEqual(items[0].image_count, 1)

    async def test_rescan_of_empty_source_changes_nothing(self):
        _write_image(self.scan / "b_001.jpg", color=(20, 120, 220))
        await scan_service.run_full_scan(self.config, self.store)
        series = await self.store.get_series_by_name("b")
        images = await self.store.get_images_by_series(series.id)

        again = await scan_service.run_full_scan(self.config, self.store)

        self.assertEqual(again.status, "success")
        self.assertEqual(again.changelog, {})
        self.assertEqual(again.images_ingested, 0)
        self.assertEqual([i.id for i in await self.store.get_images_by_series(series.id)], [i.id for i in images])

    async def test_stray_library_entry_fails_the_scan(self):
        _write_image(self.scan / "b_001.jpg")
        self.library.mkdir()
        (self.library / "notes.txt").write_text("stray")
        progress = []

        report = await scan_service.run_full_scan(self.config, self.store, progress.append)

        self.assertEqual(report.status, "failed")
        self.assertEqual(report.stage_errors[0].stage, "aggregate")
        self.assertTrue(report.stage_errors[0].fatal)
        self.assertNotIn(100, progress)
        items, total = await self.store.list_series(1, 10)
        self.assertEqual(total, 0)

    async def test_missing_scan_root_is_fatal(self):
        config = self.config.with_scan_path(str(self.base / "absent"))
        report = await scan_service.run_full_scan(config, self.store)
        self.assertEqual(report.status, "failed")
        self.assertEqual(report.stage_errors[0].stage, "prepare")


class PrepareDirectoriesTests(IsolatedAsyncioTestCase):
    async def test_staging_is_emptied(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            base = Path(tmpdir)
            (base / "incoming").mkdir()
            leftover = base / "staging" / "old"
            leftover.mkdir(parents=True)
            (leftover / "x.jpg").write_bytes(b"x")
            config = ScannerConfig(
                scan_path=str(base / "incoming"),
                staging_path=str(base / "staging"),
                final_library_path=str(base / "library"),
                quarantine_path=str(base / "quarantine"),
                backup_path=str(base / "backups"),
                log_dir=str(base / "logs"),
                corruption_log_path=str(base / "logs" / "corrupted_files.log"),
            )
            scan_service.prepare_directories(config)
            self.assertEqual(list((base / "staging").iterdir()), [])
            self.assertTrue((base / "quarantine").is_dir())

            with self.assertRaises(StructureError):
                scan_service.prepare_directories(config.with_scan_path(str(base / "missing")))
