import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from picshelf.api.schemas import DuplicateInfo
from picshelf.core import models
from picshelf.core.config import ScannerConfig
from picshelf.core.logging_utils import append_corruption_log
from picshelf.services.aggregate_service import AGG_SUFFIX
from picshelf.services.catalog_service import CatalogStore, ImageUpsert, SeriesMetadataUpdate, SeriesUpsert
from picshelf.services.hashing import content_hash, perceptual_hash
from picshelf.services.imaging import DECODE_ERRORS, create_thumbnail, decode_image

logger = logging.getLogger("picshelf.ingest")


def collect_final_series_paths(changelog: Mapping[str, str]) -> List[Path]:
    """Series directories touched by a changelog; ``_agg`` destinations expand to their children."""
    found: Dict[str, Path] = {}
    for dest in set(changelog.values()):
        path = Path(dest)
        if not path.is_dir():
            logger.debug("Changelog destination no longer a directory: %s", dest)
            continue
        if path.name.endswith(AGG_SUFFIX):
            for entry in os.scandir(path):
                if entry.is_dir() and not entry.name.startswith("."):
                    found[entry.path] = Path(entry.path)
        else:
            found[str(path)] = path
    return [found[key] for key in sorted(found)]


@dataclass
class IngestReport:
    series_count: int = 0
    image_count: int = 0
    corrupt_deleted: int = 0
    failed_batches: int = 0
    metadata_updates: int = 0
    overwritten_files: List[str] = field(default_factory=list)
    duplicates: List[DuplicateInfo] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class _FileResult:
    op: Optional[ImageUpsert] = None
    overwritten: Optional[DuplicateInfo] = None
    corrupt_deleted: bool = False


class Ingestor:
    """Syncs archived series into the catalog."""

    def __init__(self, config: ScannerConfig, store: CatalogStore):
        self.config = config
        self.store = store
        self._extensions = {ext.lower().lstrip(".") for ext in config.image_extensions}

    async def sync(self, changelog: Mapping[str, str]) -> IngestReport:
        return await self.sync_series(collect_final_series_paths(changelog))

    async def sync_series(self, series_paths: Iterable[Path], detect_overwrites: bool = True) -> IngestReport:
        report = IngestReport()
        paths = list(series_paths)
        if not paths:
            logger.info("Nothing to ingest")
            return report

        cache = await self._upsert_series(paths, report)
        if not cache:
            return report

        known = await self._known_hashes(cache.values()) if detect_overwrites else {}
        work = self._collect_work(cache)
        logger.info("Ingesting %d files across %d series", len(work), len(cache))
        await self._run_workers(work, known, report)
        await self._refresh_metadata(cache.values(), report)

        report.series_count = len(cache)
        logger.info(
            "Ingest done: %d images, %d corrupt deleted, %d overwritten, %d failed batches",
            report.image_count,
            report.corrupt_deleted,
            len(report.overwritten_files),
            report.failed_batches,
        )
        return report

    async def _upsert_series(self, paths: List[Path], report: IngestReport) -> Dict[str, models.Series]:
        ops = [SeriesUpsert(name=p.name, path=str(p)) for p in paths]
        try:
            await self.store.bulk_write(ops)
        except SQLAlchemyError as exc:
            logger.error("Series upsert failed: %s", exc)
            report.errors.append(f"series upsert failed: {exc}")
            return {}

        found, not_found = await self.store.find_many_by_names([p.name for p in paths])
        by_path = {s.path: s for s in found}
        cache: Dict[str, models.Series] = {}
        for path in paths:
            series = by_path.get(str(path))
            if series is None:
                logger.error("Series %s missing from catalog right after upsert (%s)", path.name, path)
                report.errors.append(f"series {path.name} missing after upsert")
                continue
            cache[str(path)] = series
        if not_found:
            logger.error("Catalog did not return upserted series: %s", ", ".join(not_found))
        return cache

    async def _known_hashes(self, series: Iterable[models.Series]) -> Dict[str, Dict[str, models.Image]]:
        known: Dict[str, Dict[str, models.Image]] = {}
        for s in series:
            known[s.id] = {img.file_name: img for img in await self.store.get_images_by_series(s.id)}
        return known

    def _collect_work(self, cache: Mapping[str, models.Series]) -> List[Tuple[models.Series, Path]]:
        work = []
        for path_str, series in cache.items():
            try:
                entries = sorted(os.scandir(path_str), key=lambda e: e.name)
            except OSError as exc:
                logger.error("Cannot read series directory %s: %s", path_str, exc)
                continue
            for entry in entries:
                if entry.name.startswith(".") or not entry.is_file():
                    continue
                if Path(entry.name).suffix.lower().lstrip(".") not in self._extensions:
                    continue
                work.append((series, Path(entry.path)))
        return work

    async def _run_workers(self, work, known, report: IngestReport):
        loop = asyncio.get_running_loop()
        work_q: asyncio.Queue = asyncio.Queue()
        write_q: asyncio.Queue = asyncio.Queue()
        report_q: asyncio.Queue = asyncio.Queue()
        for item in work:
            work_q.put_nowait(item)

        worker_count = self.config.workers
        for _ in range(worker_count):
            work_q.put_nowait(None)

        with ThreadPoolExecutor(max_workers=worker_count) as pool:

            async def worker():
                while True:
                    item = await work_q.get()
                    if item is None:
                        return
                    series, path = item
                    existing = known.get(series.id, {}).get(path.name)
                    result = await loop.run_in_executor(pool, self._process_file, series, path, existing)
                    if result is None:
                        continue
                    if result.corrupt_deleted:
                        report.corrupt_deleted += 1
                        continue
                    await write_q.put(result.op)
                    if result.overwritten is not None:
                        await report_q.put(result.overwritten)

            batcher = asyncio.create_task(self._batch_writer(write_q, report))
            collector = asyncio.create_task(self._collect_overwrites(report_q, report))
            workers = [asyncio.create_task(worker()) for _ in range(worker_count)]
            try:
                await asyncio.gather(*workers)
            finally:
                for task in workers:
                    task.cancel()
                await write_q.put(None)
                await report_q.put(None)
                await asyncio.gather(batcher, collector)

    def _process_file(self, series: models.Series, path: Path, existing: Optional[models.Image]) -> Optional[_FileResult]:
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.error("Cannot read %s: %s", path, exc)
            return None
        file_hash = content_hash(data)

        try:
            image = decode_image(data)
        except DECODE_ERRORS as exc:
            logger.warning("Corrupt image %s (sha256 %s), deleting: %s", path, file_hash, exc)
            append_corruption_log(Path(self.config.corruption_log_path), str(path))
            try:
                path.unlink()
            except OSError as unlink_exc:
                logger.error("Could not delete corrupt file %s: %s", path, unlink_exc)
                return None
            return _FileResult(corrupt_deleted=True)

        try:
            phash = perceptual_hash(image)
            size = self.config.thumbnail_size
            thumbnail = create_thumbnail(image, size, size)
        except DECODE_ERRORS as exc:
            logger.error("Cannot hash or thumbnail %s: %s", path, exc)
            return None
        finally:
            image.close()

        op = ImageUpsert(
            series_id=series.id,
            file_name=path.name,
            file_path=str(path),
            file_hash=file_hash,
            perceptual_hash=phash,
            thumbnail=thumbnail,
        )
        overwritten = None
        if existing is not None and existing.file_hash != file_hash:
            overwritten = DuplicateInfo(
                new_file_path=str(path),
                file_name=path.name,
                series_name=series.name,
                existing_path=existing.file_path,
            )
        return _FileResult(op=op, overwritten=overwritten)

    async def _batch_writer(self, write_q: asyncio.Queue, report: IngestReport):
        batch: List[ImageUpsert] = []
        while True:
            op = await write_q.get()
            if op is None:
                break
            batch.append(op)
            if len(batch) >= self.config.batch_size:
                await self._flush(batch, report)
                batch = []
        if batch:
            await self._flush(batch, report)

    async def _flush(self, batch: List[ImageUpsert], report: IngestReport):
        try:
            await self.store.bulk_write(batch)
        except SQLAlchemyError as exc:
            report.failed_batches += 1
            report.errors.append(f"image batch of {len(batch)} failed: {exc}")
            logger.error("Image batch write failed (%d ops): %s", len(batch), exc)
            return
        report.image_count += len(batch)

    async def _collect_overwrites(self, report_q: asyncio.Queue, report: IngestReport):
        while True:
            info = await report_q.get()
            if info is None:
                return
            logger.warning("Overwritten file detected: %s (series %s)", info.new_file_path, info.series_name)
            report.overwritten_files.append(info.new_file_path)
            report.duplicates.append(info)

    async def _refresh_metadata(self, series: Iterable[models.Series], report: IngestReport):
        ops: List[SeriesMetadataUpdate] = []
        for s in series:
            count = await self.store.count_images_by_series(s.id)
            cover = await self.store.first_image_by_series(s.id)
            thumbnail = cover.thumbnail if cover else None
            if count == s.image_count and thumbnail == s.thumbnail:
                continue
            ops.append(SeriesMetadataUpdate(series_id=s.id, image_count=count, thumbnail=thumbnail))
        if not ops:
            return
        try:
            await self.store.bulk_write(ops)
        except SQLAlchemyError as exc:
            report.errors.append(f"series metadata update failed: {exc}")
            logger.error("Series metadata update failed: %s", exc)
            return
        report.metadata_updates = len(ops)
