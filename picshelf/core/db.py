from pathlib import Path
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

class Base(DeclarativeBase):
    pass

_engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def build_engine(db_path: Path) -> AsyncEngine:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def configure(db_path: Path) -> async_sessionmaker[AsyncSession]:
    """Bind the process-wide engine used by the HTTP layer."""
    global _engine, SessionLocal
    _engine = build_engine(db_path)
    SessionLocal = build_sessionmaker(_engine)
    return SessionLocal


async def init_db(engine: AsyncEngine | None = None):
    """Create tables and ensure WAL mode for SQLite."""
    from . import models  # noqa: F401

    engine = engine or _engine
    if engine is None:
        raise RuntimeError("Database engine is not configured")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text("PRAGMA journal_mode=WAL;"))

async def get_session() -> AsyncSession:
    if SessionLocal is None:
        raise RuntimeError("Database session factory is not configured")
    async with SessionLocal() as session:
        yield session
