from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite

from ocfcore.core.config import Settings
from ocfcore.domain.models import UserSubscription
from ocfcore.persistence.db import engine_options, for_update, supports_row_locks


def _seat_query():
    return select(UserSubscription).where(UserSubscription.status == "unassigned").limit(1)


def test_postgres_engine_gets_bounded_pool() -> None:
    options = engine_options(
        "postgresql+asyncpg://ocf:ocf@db:5432/ocf", Settings(api_db_pool_size=0, api_db_max_overflow=-3)
    )
    assert options["pool_size"] == 1
    assert options["max_overflow"] == 0
    assert options["pool_recycle"] == 1800


def test_sqlite_engine_keeps_driver_pool() -> None:
    assert engine_options("sqlite+aiosqlite:///./test.db", Settings()) == {"pool_pre_ping": True}


def test_seat_claim_skips_locked_rows_on_postgres() -> None:
    stmt = for_update(_seat_query(), skip_locked=True, dialect_name="postgresql")
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE SKIP LOCKED" in sql


def test_plain_row_lock_on_postgres() -> None:
    sql = str(for_update(_seat_query(), dialect_name="postgresql").compile(dialect=postgresql.dialect()))
    assert sql.rstrip().endswith("FOR UPDATE")


def test_sqlite_statements_stay_unlocked() -> None:
    assert not supports_row_locks("sqlite")
    stmt = for_update(_seat_query(), skip_locked=True, dialect_name="sqlite")
    assert "FOR UPDATE" not in str(stmt.compile(dialect=sqlite.dialect()))
