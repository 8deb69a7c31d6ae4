from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from ocfcore.domain.models import AuditEvent
from ocfcore.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Key fragments whose values never reach the audit table.
_SECRET_FRAGMENTS = ("authorization", "token", "secret", "password", "signature", "card")
REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class RequestContext:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` with secret-looking keys masked at any depth."""
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _looks_secret(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def _looks_secret(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_FRAGMENTS)


def get_request_context(request: Request | None) -> RequestContext:
    if request is None:
        return RequestContext()
    # The request-id middleware stores the id on state before handlers run.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    return RequestContext(
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def record_event(
    *,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    actor_roles: list[str] | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request: Request | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    """Append one audit row in its own transaction.

    Audit writes never fail the calling flow: a database error is logged and
    swallowed. Rows are written outside the caller's session so that a denied
    or rolled-back operation still leaves its trail.
    """
    context = get_request_context(request)
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        actor_roles=",".join(sorted(actor_roles)) if actor_roles else None,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=context.request_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    async with SessionLocal() as session:
        session.add(event)
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "audit_event_write_failed event_type=%s outcome=%s request_id=%s",
                event_type,
                outcome,
                context.request_id,
                exc_info=exc,
            )
