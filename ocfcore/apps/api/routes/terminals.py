from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import Principal, get_db, require_access
from ocfcore.domain.models import Terminal
from ocfcore.services import terminals as terminals_service


router = APIRouter(prefix="/terminals", tags=["terminals"])


class StartTerminalRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)


class TerminalResponse(BaseModel):
    id: str
    name: str | None
    status: str
    subscription_id: str | None
    started_at: datetime | None
    stopped_at: datetime | None


def _to_response(terminal: Terminal) -> TerminalResponse:
    return TerminalResponse(
        id=terminal.id,
        name=terminal.name,
        status=terminal.status,
        subscription_id=terminal.subscription_id,
        started_at=terminal.started_at,
        stopped_at=terminal.stopped_at,
    )


@router.get("", response_model=list[TerminalResponse])
async def list_terminals(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[TerminalResponse]:
    return [_to_response(terminal) for terminal in await terminals_service.list_terminals(db, principal.user_id)]


# Admission requires the terminals capability and a free concurrent_terminals slot.
@router.post("", response_model=TerminalResponse, status_code=status.HTTP_201_CREATED)
async def start_terminal(
    payload: StartTerminalRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> TerminalResponse:
    terminal = await terminals_service.start_terminal(session=db, user_id=principal.user_id, name=payload.name)
    return _to_response(terminal)


@router.post("/{terminal_id}/stop", response_model=TerminalResponse)
async def stop_terminal(
    terminal_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> TerminalResponse:
    terminal = await terminals_service.stop_terminal(session=db, user_id=principal.user_id, terminal_id=terminal_id)
    return _to_response(terminal)
