from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator, TypeVar

from sqlalchemy import Select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ocfcore.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

_SelectT = TypeVar("_SelectT", bound=Select)

# Backends that honour SELECT ... FOR UPDATE; sqlite serialises writers instead.
_ROW_LOCKING_BACKENDS = frozenset({"postgresql"})


def engine_options(database_url: str, settings: Settings) -> dict[str, Any]:
    """Engine kwargs for ``database_url``; only pooled PostgreSQL gets bounded pools."""
    options: dict[str, Any] = {"pool_pre_ping": True}
    backend = make_url(database_url).get_backend_name()
    if backend == "sqlite":
        return options
    options["pool_size"] = max(1, int(settings.api_db_pool_size))
    options["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    options["pool_timeout"] = 30
    options["pool_recycle"] = 1800
    return options


settings = get_settings()
_database_url = settings.database_url()
engine = create_async_engine(_database_url, **engine_options(_database_url, settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
logger.debug("db_engine_configured backend=%s", engine.dialect.name)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def supports_row_locks(dialect_name: str | None = None) -> bool:
    return (dialect_name or engine.dialect.name) in _ROW_LOCKING_BACKENDS


def for_update(stmt: _SelectT, *, skip_locked: bool = False, dialect_name: str | None = None) -> _SelectT:
    """Add a row lock to ``stmt`` where the backend supports one.

    ``skip_locked`` lets concurrent callers each claim a different row rather
    than queueing on the first; it is a PostgreSQL-only clause.
    """
    if not supports_row_locks(dialect_name):
        return stmt
    if skip_locked:
        return stmt.with_for_update(skip_locked=True)
    return stmt.with_for_update()
