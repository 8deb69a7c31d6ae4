from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import HTTPException, status
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import Terminal
from ocfcore.persistence.repos.subscriptions import get_primary_subscription
from ocfcore.persistence.repos.terminals import (
    TERMINAL_ACTIVE,
    TERMINAL_STOPPED,
    get_terminal,
    list_user_terminals,
)
from ocfcore.services.usage import (
    METRIC_CONCURRENT_TERMINALS,
    decrement_usage,
    increment_usage,
    reconcile_live_metric,
)


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _terminal_not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "TERMINAL_NOT_FOUND", "message": "Terminal not found"},
    )


async def list_terminals(session: AsyncSession, user_id: str) -> list[Terminal]:
    return await list_user_terminals(session, user_id)


async def start_terminal(
    *,
    session: AsyncSession,
    user_id: str,
    name: str | None = None,
    now: datetime | None = None,
) -> Terminal:
    # Quota was checked by the route guard; the counter is committed with the new row.
    resolved_now = now or _utc_now()
    primary = await get_primary_subscription(session, user_id, resolved_now)
    terminal = Terminal(
        user_id=user_id,
        name=name,
        status=TERMINAL_ACTIVE,
        subscription_id=primary[0].id if primary is not None else None,
        started_at=resolved_now,
    )
    session.add(terminal)
    await session.flush()
    await increment_usage(session, user_id=user_id, metric_type=METRIC_CONCURRENT_TERMINALS, now=resolved_now)
    await session.commit()
    logger.info("terminal_started terminal_id=%s user_id=%s", terminal.id, user_id)
    return terminal


async def stop_terminal(
    *,
    session: AsyncSession,
    user_id: str,
    terminal_id: str,
    now: datetime | None = None,
) -> Terminal:
    resolved_now = now or _utc_now()
    terminal = await get_terminal(session, terminal_id)
    if terminal is None or terminal.user_id != user_id:
        raise _terminal_not_found_error()
    if terminal.status == TERMINAL_STOPPED:
        return terminal
    terminal.status = TERMINAL_STOPPED
    terminal.stopped_at = resolved_now
    await session.flush()
    await decrement_usage(session, user_id=user_id, metric_type=METRIC_CONCURRENT_TERMINALS, now=resolved_now)
    await session.commit()
    logger.info("terminal_stopped terminal_id=%s user_id=%s", terminal.id, user_id)
    return terminal


async def terminate_user_terminals(
    session: AsyncSession,
    *,
    user_id: str,
    reason: str,
    now: datetime | None = None,
) -> int:
    """Stop every active terminal of a user and reconcile the counter.

    Used by licence revocation and subscription cancellation. The stored
    counter is set from the live count, so it never drops below zero and a
    user with no sessions is a no-op. The caller owns the commit.
    """
    resolved_now = now or _utc_now()
    result = await session.execute(
        update(Terminal)
        .where(
            Terminal.user_id == user_id,
            Terminal.status == TERMINAL_ACTIVE,
            Terminal.deleted_at.is_(None),
        )
        .values(status=TERMINAL_STOPPED, stopped_at=resolved_now)
        .execution_options(synchronize_session="fetch")
    )
    stopped = int(result.rowcount or 0)
    await reconcile_live_metric(
        session, user_id=user_id, metric_type=METRIC_CONCURRENT_TERMINALS, now=resolved_now
    )
    if stopped:
        logger.info("terminals_terminated user_id=%s count=%s reason=%s", user_id, stopped, reason)
    return stopped
