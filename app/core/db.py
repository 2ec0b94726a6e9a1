from contextlib import asynccontextmanager
import logging
import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings
from models import Base  # registers every table on Base.metadata


logger = logging.getLogger(__name__)


def _sanitize_db_url(url: str) -> str:
    if not url:
        return ""
    try:
        # Hide password part user:pass@
        prefix, rest = url.split("://", 1)
        if "@" in rest and ":" in rest.split("@", 1)[0]:
            creds, host_part = rest.split("@", 1)
            if ":" in creds:
                user = creds.split(":", 1)[0]
                rest = f"{user}:***@{host_part}"
        return f"{prefix}://{rest}"
    except ValueError:
        return url


effective_url = os.getenv("DATABASE_URL", settings.database_url)
logger.info("Effective DATABASE_URL: %s", _sanitize_db_url(effective_url))

if effective_url.startswith("sqlite"):
    engine = create_async_engine(effective_url, echo=False)
else:
    engine = create_async_engine(effective_url, echo=False, pool_pre_ping=True, pool_size=5, max_overflow=10)
AsyncSessionMaker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@asynccontextmanager
async def session_scope(session_factory: Optional[async_sessionmaker] = None):
    """Commit on success, roll back on error, always close."""
    session: AsyncSession = (session_factory or AsyncSessionMaker)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


def get_db_session():
    return session_scope(AsyncSessionMaker)


async def init_db_schema(bind=None) -> None:
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
