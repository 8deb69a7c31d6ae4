from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import CasbinRule


PTYPE_POLICY = "p"
PTYPE_GROUPING = "g"


async def list_rules(session: AsyncSession) -> list[CasbinRule]:
    # Load every rule in insertion order for a full matcher rebuild.
    result = await session.execute(select(CasbinRule).order_by(CasbinRule.id))
    return list(result.scalars().all())


async def rule_exists(session: AsyncSession, *, ptype: str, v0: str, v1: str, v2: str = "") -> bool:
    result = await session.execute(
        select(CasbinRule.id).where(
            CasbinRule.ptype == ptype,
            CasbinRule.v0 == v0,
            CasbinRule.v1 == v1,
            CasbinRule.v2 == v2,
        )
    )
    return result.first() is not None


async def insert_rule(session: AsyncSession, *, ptype: str, v0: str, v1: str, v2: str = "") -> bool:
    # Skip identical tuples so re-adding a rule never creates a duplicate row.
    if await rule_exists(session, ptype=ptype, v0=v0, v1=v1, v2=v2):
        return False
    session.add(CasbinRule(ptype=ptype, v0=v0, v1=v1, v2=v2))
    await session.flush()
    return True


async def delete_rules(
    session: AsyncSession,
    *,
    ptype: str,
    v0: str | None = None,
    v1: str | None = None,
    v2: str | None = None,
) -> int:
    # Delete rules matching every provided field; omitted fields act as wildcards.
    stmt = delete(CasbinRule).where(CasbinRule.ptype == ptype)
    if v0 is not None:
        stmt = stmt.where(CasbinRule.v0 == v0)
    if v1 is not None:
        stmt = stmt.where(CasbinRule.v1 == v1)
    if v2 is not None:
        stmt = stmt.where(CasbinRule.v2 == v2)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)
