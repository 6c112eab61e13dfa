import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from picshelf.core import db, models

logger = logging.getLogger("picshelf.catalog")

# stays under SQLite's bound-parameter limit for IN (...) queries
_IN_CHUNK = 500


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class SeriesUpsert:
    """Find-or-create keyed on name; path is always rewritten."""

    name: str
    path: str


@dataclass
class SeriesMetadataUpdate:
    series_id: str
    image_count: int
    thumbnail: Optional[str]


@dataclass
class ImageUpsert:
    """Upsert keyed on (series_id, file_name)."""

    series_id: str
    file_name: str
    file_path: str
    file_hash: str
    perceptual_hash: str
    thumbnail: str


WriteOp = SeriesUpsert | SeriesMetadataUpdate | ImageUpsert


def _series_upsert_stmt(op: SeriesUpsert, now: datetime):
    stmt = sqlite_insert(models.Series).values(
        id=new_id(),
        name=op.name,
        path=op.path,
        image_count=0,
        created_at=now,
        updated_at=now,
    )
    return stmt.on_conflict_do_update(
        index_elements=[models.Series.name],
        set_={"path": stmt.excluded.path, "updated_at": stmt.excluded.updated_at},
    )


def _image_upsert_stmt(op: ImageUpsert, now: datetime):
    stmt = sqlite_insert(models.Image).values(
        id=new_id(),
        series_id=op.series_id,
        file_name=op.file_name,
        file_path=op.file_path,
        file_hash=op.file_hash,
        perceptual_hash=op.perceptual_hash,
        thumbnail=op.thumbnail,
        created_at=now,
        updated_at=now,
    )
    return stmt.on_conflict_do_update(
        index_elements=[models.Image.series_id, models.Image.file_name],
        set_={
            "file_path": stmt.excluded.file_path,
            "file_hash": stmt.excluded.file_hash,
            "perceptual_hash": stmt.excluded.perceptual_hash,
            "thumbnail": stmt.excluded.thumbnail,
            "updated_at": stmt.excluded.updated_at,
        },
    )


def _metadata_update_stmt(op: SeriesMetadataUpdate, now: datetime):
    return (
        update(models.Series)
        .where(models.Series.id == op.series_id)
        .values(image_count=op.image_count, thumbnail=op.thumbnail, updated_at=now)
    )


def _chunks(values: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _offset(page: int, limit: int) -> int:
    return (max(page, 1) - 1) * limit


class CatalogStore:
    """Series/image catalog backed by SQLite; every write is an idempotent upsert."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # --- writes -----------------------------------------------------------

    async def upsert_series_by_name(self, name: str, path: str) -> models.Series:
        now = datetime.utcnow()
        async with self._session_factory() as session:
            await session.execute(_series_upsert_stmt(SeriesUpsert(name=name, path=path), now))
            await session.commit()
            result = await session.execute(select(models.Series).where(models.Series.name == name))
            return result.scalars().one()

    async def bulk_write(self, ops: Sequence[WriteOp]) -> int:
        """Apply all ops in one transaction. Rolls back and re-raises on failure."""
        if not ops:
            return 0
        now = datetime.utcnow()
        async with self._session_factory() as session:
            try:
                for op in ops:
                    if isinstance(op, SeriesUpsert):
                        await session.execute(_series_upsert_stmt(op, now))
                    elif isinstance(op, ImageUpsert):
                        await session.execute(_image_upsert_stmt(op, now))
                    elif isinstance(op, SeriesMetadataUpdate):
                        await session.execute(_metadata_update_stmt(op, now))
                    else:
                        raise TypeError(f"Unsupported write op: {type(op).__name__}")
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        logger.debug("Bulk write committed %d ops", len(ops))
        return len(ops)

    def session(self) -> AsyncSession:
        return self._session_factory()

    async def drop_all(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(models.Image))
            await session.execute(delete(models.Series))
            await session.execute(delete(models.Activity))
            await session.commit()

    # --- series reads -----------------------------------------------------

    async def find_many_by_names(self, names: Sequence[str]) -> Tuple[List[models.Series], List[str]]:
        if not names:
            return [], []
        unique = list(dict.fromkeys(names))
        found: List[models.Series] = []
        async with self._session_factory() as session:
            for chunk in _chunks(unique):
                result = await session.execute(select(models.Series).where(models.Series.name.in_(chunk)))
                found.extend(result.scalars().all())
        found_names = {s.name for s in found}
        not_found = [name for name in unique if name not in found_names]
        return found, not_found

    async def get_series_by_name(self, name: str) -> models.Series | None:
        async with self._session_factory() as session:
            result = await session.execute(select(models.Series).where(models.Series.name == name))
            return result.scalars().first()

    async def get_series_by_id(self, series_id: str) -> models.Series | None:
        async with self._session_factory() as session:
            return await session.get(models.Series, series_id)

    async def get_series_by_ids(self, ids: Sequence[str]) -> List[models.Series]:
        found: List[models.Series] = []
        unique = list(dict.fromkeys(ids))
        async with self._session_factory() as session:
            for chunk in _chunks(unique):
                result = await session.execute(select(models.Series).where(models.Series.id.in_(chunk)))
                found.extend(result.scalars().all())
        return found

    async def list_series(self, page: int, limit: int) -> Tuple[List[models.Series], int]:
        async with self._session_factory() as session:
            stmt = select(models.Series).order_by(models.Series.path).offset(_offset(page, limit)).limit(limit)
            items = (await session.execute(stmt)).scalars().all()
            total = (await session.execute(select(func.count()).select_from(models.Series))).scalar_one()
            return list(items), int(total)

    async def search_series_by_name(self, query: str, page: int, limit: int) -> Tuple[List[models.Series], int]:
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        condition = models.Series.name.ilike(f"%{escaped}%", escape="\\")
        async with self._session_factory() as session:
            stmt = (
                select(models.Series)
                .where(condition)
                .order_by(models.Series.updated_at.desc())
                .offset(_offset(page, limit))
                .limit(limit)
            )
            items = (await session.execute(stmt)).scalars().all()
            total = (await session.execute(select(func.count()).select_from(models.Series).where(condition))).scalar_one()
            return list(items), int(total)

    # --- image reads ------------------------------------------------------

    async def count_images_by_series(self, series_id: str) -> int:
        async with self._session_factory() as session:
            stmt = select(func.count()).select_from(models.Image).where(models.Image.series_id == series_id)
            return int((await session.execute(stmt)).scalar_one())

    async def first_image_by_series(self, series_id: str) -> models.Image | None:
        async with self._session_factory() as session:
            stmt = (
                select(models.Image)
                .where(models.Image.series_id == series_id)
                .order_by(models.Image.file_name)
                .limit(1)
            )
            return (await session.execute(stmt)).scalars().first()

    async def get_images_by_series(self, series_id: str) -> List[models.Image]:
        async with self._session_factory() as session:
            stmt = select(models.Image).where(models.Image.series_id == series_id).order_by(models.Image.file_name)
            return list((await session.execute(stmt)).scalars().all())

    async def list_images_by_series(self, series_id: str, page: int, limit: int) -> Tuple[List[models.Image], int]:
        async with self._session_factory() as session:
            stmt = (
                select(models.Image)
                .where(models.Image.series_id == series_id)
                .order_by(models.Image.file_name)
                .offset(_offset(page, limit))
                .limit(limit)
            )
            items = (await session.execute(stmt)).scalars().all()
            total_stmt = select(func.count()).select_from(models.Image).where(models.Image.series_id == series_id)
            total = (await session.execute(total_stmt)).scalar_one()
            return list(items), int(total)

    async def find_images_by_perceptual_hash(self, phash: str, limit: int) -> List[models.Image]:
        # exact match on the stored hash; see DESIGN.md for the Hamming-distance question
        async with self._session_factory() as session:
            stmt = select(models.Image).where(models.Image.perceptual_hash == phash).limit(limit)
            return list((await session.execute(stmt)).scalars().all())

    async def get_images_by_file_name(self, file_name: str) -> List[models.Image]:
        async with self._session_factory() as session:
            stmt = select(models.Image).where(models.Image.file_name == file_name)
            return list((await session.execute(stmt)).scalars().all())

    async def get_images_by_file_hash(self, file_hash: str) -> List[models.Image]:
        async with self._session_factory() as session:
            stmt = select(models.Image).where(models.Image.file_hash == file_hash)
            return list((await session.execute(stmt)).scalars().all())

    async def get_image_by_file_path(self, file_path: str) -> models.Image | None:
        async with self._session_factory() as session:
            stmt = select(models.Image).where(models.Image.file_path == file_path)
            return (await session.execute(stmt)).scalars().first()

    # --- consistency checks -----------------------------------------------

    async def check_series_completeness(self, series_id: str) -> Tuple[bool, int, int]:
        """Compare the cached image count with the number of catalogued images."""
        series = await self.get_series_by_id(series_id)
        if series is None:
            raise LookupError(f"Series {series_id} does not exist")
        actual = await self.count_images_by_series(series_id)
        return series.image_count == actual, series.image_count, actual

    async def find_missing_files(self, series: models.Series) -> List[str]:
        """File names present in the series directory but absent from the catalog."""
        series_dir = Path(series.path)
        if not series_dir.is_dir():
            logger.warning("Series directory missing on disk: %s", series.path)
            return []
        on_disk = {entry.name for entry in os.scandir(series_dir) if entry.is_file()}
        catalogued = {img.file_name for img in await self.get_images_by_series(series.id)}
        missing = sorted(on_disk - catalogued)
        if missing:
            logger.warning("Series %s has %d uncatalogued files", series.name, len(missing))
        return missing


def get_store() -> CatalogStore:
    """FastAPI dependency bound to the process-wide session factory."""
    if db.SessionLocal is None:
        raise RuntimeError("Database session factory is not configured")
    return CatalogStore(db.SessionLocal)
