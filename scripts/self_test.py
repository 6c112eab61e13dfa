import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


def _write_image(path: Path, color=(200, 40, 40)):
    from PIL import Image

    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (64, 48), color).save(path, format="JPEG")


def _setup_env(base_dir: Path):
    roots = {
        "SCAN_PATH": base_dir / "incoming",
        "STAGING_PATH": base_dir / "staging",
        "FINAL_LIBRARY_PATH": base_dir / "library",
        "QUARANTINE_PATH": base_dir / "quarantine",
        "BACKUP_PATH": base_dir / "backups",
        "CONFIG_ROOT": base_dir / "config",
    }
    for key, path in roots.items():
        path.mkdir(parents=True, exist_ok=True)
        os.environ[f"PICSHELF_{key}"] = str(path)
    os.environ["PICSHELF_WORKER_COUNT"] = "2"
    return roots["SCAN_PATH"], roots["FINAL_LIBRARY_PATH"]


async def main():
    with tempfile.TemporaryDirectory() as tmpdir:
        base_dir = Path(tmpdir)
        scan_root, library = _setup_env(base_dir)

        _write_image(scan_root / "a.jpg")
        shutil.copyfile(scan_root / "a.jpg", scan_root / "a (1).jpg")
        _write_image(scan_root / "b_001.jpg", color=(20, 120, 220))
        _write_image(scan_root / "nested" / "Moon 1_003.jpg", color=(10, 200, 10))
        _write_image(scan_root / "Moon 2_004.jpg", color=(90, 90, 90))

        from picshelf.core.config import Settings
        from picshelf.core.db import build_engine, build_sessionmaker, init_db
        from picshelf.core.logging_utils import setup_logging
        from picshelf.services.catalog_service import CatalogStore
        from picshelf.services.scan_service import run_scan_job

        env_settings = Settings()
        setup_logging(Path(env_settings.log_dir), debug_enabled=True)
        config = env_settings.scanner_config()
        db_path = Path(env_settings.db_path)

        progress: list[int] = []
        report = await run_scan_job(config, db_path, progress.append)
        assert report.status == "success", f"Expected success, got {report.status}: {report.stage_errors}"
        assert progress[0] == 0 and progress[-1] == 100, f"Unexpected progress trail {progress}"
        assert (scan_root / "a.jpg").exists(), "Unclassified file should stay in the scan root"
        assert not (scan_root / "a (1).jpg").exists(), "Byte-identical copy should be removed"
        assert (library / "B" / "b" / "b_001.jpg").exists(), "Series b should be archived under B"
        assert (library / "M" / "Moon_agg" / "Moon 1" / "Moon 1_003.jpg").exists(), "Moon series should be merged"

        engine = build_engine(db_path)
        try:
            await init_db(engine)
            store = CatalogStore(build_sessionmaker(engine))
            series, total = await store.list_series(1, 50)
            names = sorted(s.name for s in series)
            assert names == ["Moon 1", "Moon 2", "b"], f"Unexpected series {names}"
            b = await store.get_series_by_name("b")
            assert b.image_count == 1 and b.thumbnail, "Series b metadata should be refreshed"

            again = await run_scan_job(config, db_path)
            assert again.status == "success"
            assert again.images_ingested == 0, "Second scan over an empty source should not touch the catalog"
            series_again, total_again = await store.list_series(1, 50)
            assert total_again == total
        finally:
            await engine.dispose()
        print("Self-test passed:", report.model_dump(include={"status", "files_preprocessed", "images_ingested"}))


if __name__ == "__main__":
    asyncio.run(main())
