# database.py - Async database setup
import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from config import get_settings
from errors import ConflictError

logger = logging.getLogger("bugboard.database")

settings = get_settings()
DATABASE_URL = settings.database_url

# SQLite (tests, local runs) does not take pool sizing arguments
_engine_kwargs = {"echo": settings.sql_echo, "future": True}
if not DATABASE_URL.startswith("sqlite"):
    _engine_kwargs.update(pool_size=20, max_overflow=0, pool_pre_ping=True, pool_recycle=3600)

engine = create_async_engine(DATABASE_URL, **_engine_kwargs)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


async def get_db_session():
    """Dependency for getting database session (FastAPI Depends)"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


LIKE_ESCAPE = "\\"


def contains_pattern(text: str) -> str:
    """ilike pattern matching text literally; pair with escape=LIKE_ESCAPE"""
    escaped = (
        text.strip()
        .replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"


async def flush_or_conflict(db: AsyncSession, detail: str) -> None:
    """Flush pending inserts so their ids exist, mapping a unique-constraint
    violation to ConflictError the same way commit_or_conflict does."""
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        logger.info(f"Integrity violation on flush: {exc.orig}")
        raise ConflictError(detail)


async def commit_or_conflict(db: AsyncSession, detail: str) -> None:
    """Commit, turning a unique-constraint violation into a ConflictError.

    The constraint is the authoritative uniqueness guard; routers pre-check
    only to give a nicer message in the common case.
    """
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.info(f"Integrity violation on commit: {exc.orig}")
        raise ConflictError(detail)


async def init_db():
    """Initialize database and create tables"""
    from models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized")


async def close_db():
    """Close database connection pool"""
    await engine.dispose()


@asynccontextmanager
async def get_db_context():
    """Context manager for database operations outside of FastAPI request cycle"""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
