from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import Terminal


TERMINAL_ACTIVE = "active"
TERMINAL_STOPPED = "stopped"


def _active_predicate(user_id: str):
    return (
        Terminal.user_id == user_id,
        Terminal.status == TERMINAL_ACTIVE,
        Terminal.deleted_at.is_(None),
    )


async def count_active_terminals(session: AsyncSession, user_id: str) -> int:
    # Authoritative value of the concurrent_terminals counter.
    result = await session.execute(
        select(func.count()).select_from(Terminal).where(*_active_predicate(user_id))
    )
    return int(result.scalar_one())


async def list_active_terminals(session: AsyncSession, user_id: str) -> list[Terminal]:
    result = await session.execute(
        select(Terminal).where(*_active_predicate(user_id)).order_by(Terminal.started_at, Terminal.id)
    )
    return list(result.scalars().all())


async def list_user_terminals(session: AsyncSession, user_id: str) -> list[Terminal]:
    result = await session.execute(
        select(Terminal)
        .where(Terminal.user_id == user_id, Terminal.deleted_at.is_(None))
        .order_by(Terminal.started_at.desc(), Terminal.id)
    )
    return list(result.scalars().all())


async def get_terminal(session: AsyncSession, terminal_id: str) -> Terminal | None:
    result = await session.execute(
        select(Terminal).where(Terminal.id == terminal_id, Terminal.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()
