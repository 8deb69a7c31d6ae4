from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import secrets

from fastapi import HTTPException, status
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import EmailVerificationToken, PasswordResetToken, TokenBlacklist


logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_HEX_LENGTH = TOKEN_BYTES * 2


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def _token_not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "TOKEN_NOT_FOUND", "message": "Invalid or unknown token"},
    )


def _token_used_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"code": "TOKEN_ALREADY_USED", "message": "Token has already been used"},
    )


def _token_expired_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_410_GONE,
        detail={"code": "TOKEN_EXPIRED", "message": "Token has expired"},
    )


async def blacklist_token(
    session: AsyncSession,
    *,
    jti: str,
    user_id: str,
    expires_at: datetime | None,
    reason: str = "logout",
) -> None:
    # Keep the row until the token would have expired anyway; replays are no-ops.
    existing = await session.get(TokenBlacklist, jti)
    if existing is not None:
        return
    session.add(
        TokenBlacklist(
            jti=jti,
            user_id=user_id,
            expires_at=expires_at or (_utc_now() + timedelta(days=1)),
            reason=reason,
        )
    )
    await session.flush()


async def is_token_blacklisted(session: AsyncSession, jti: str, *, now: datetime | None = None) -> bool:
    # Primary-key lookup; expired rows no longer matter since the token itself is expired.
    row = await session.get(TokenBlacklist, jti)
    if row is None:
        return False
    return as_utc(row.expires_at) > (now or _utc_now())


async def sweep_expired_blacklist(session: AsyncSession, *, now: datetime | None = None) -> int:
    result = await session.execute(
        delete(TokenBlacklist).where(TokenBlacklist.expires_at <= (now or _utc_now()))
    )
    return int(result.rowcount or 0)


async def create_verification_token(
    session: AsyncSession,
    *,
    user_id: str,
    email: str,
    expiry_hours: int,
    now: datetime | None = None,
) -> EmailVerificationToken:
    # A new token supersedes every unused one for the same user.
    resolved_now = now or _utc_now()
    await session.execute(
        delete(EmailVerificationToken).where(
            EmailVerificationToken.user_id == user_id,
            EmailVerificationToken.used_at.is_(None),
        )
    )
    token = EmailVerificationToken(
        user_id=user_id,
        email=email,
        token=generate_token(),
        expires_at=resolved_now + timedelta(hours=expiry_hours),
        resend_count=0,
    )
    session.add(token)
    await session.flush()
    return token


async def get_latest_verification_token(session: AsyncSession, user_id: str) -> EmailVerificationToken | None:
    result = await session.execute(
        select(EmailVerificationToken)
        .where(EmailVerificationToken.user_id == user_id, EmailVerificationToken.used_at.is_(None))
        .order_by(EmailVerificationToken.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def can_resend(
    token: EmailVerificationToken,
    *,
    max_resends: int,
    cooldown_s: int,
    now: datetime | None = None,
) -> bool:
    # Bound total resends and enforce a cooldown between consecutive sends.
    if token.resend_count >= max_resends:
        return False
    last = as_utc(token.last_resent_at)
    if last is None:
        return True
    return (now or _utc_now()) - last >= timedelta(seconds=cooldown_s)


async def create_reset_token(
    session: AsyncSession,
    *,
    user_id: str,
    email: str | None,
    expiry_hours: int,
    now: datetime | None = None,
) -> PasswordResetToken:
    resolved_now = now or _utc_now()
    await session.execute(
        delete(PasswordResetToken).where(
            PasswordResetToken.user_id == user_id,
            PasswordResetToken.used_at.is_(None),
        )
    )
    token = PasswordResetToken(
        user_id=user_id,
        email=email,
        token=generate_token(),
        expires_at=resolved_now + timedelta(hours=expiry_hours),
    )
    session.add(token)
    await session.flush()
    return token


async def claim_token(
    session: AsyncSession,
    model: type[EmailVerificationToken] | type[PasswordResetToken],
    raw_token: str,
    *,
    now: datetime | None = None,
) -> EmailVerificationToken | PasswordResetToken:
    """Mark a single-use token consumed and return it.

    The ``used_at IS NULL`` predicate on the update makes the transition
    happen at most once even when two requests race with the same token;
    the loser gets a 409. Expired tokens raise 410 without being consumed.
    """
    resolved_now = now or _utc_now()
    result = await session.execute(select(model).where(model.token == raw_token))
    token = result.scalar_one_or_none()
    if token is None:
        raise _token_not_found_error()
    if token.used_at is not None:
        raise _token_used_error()
    if as_utc(token.expires_at) <= resolved_now:
        raise _token_expired_error()
    claimed = await session.execute(
        update(model)
        .where(model.id == token.id, model.used_at.is_(None))
        .values(used_at=resolved_now)
        .execution_options(synchronize_session=False)
    )
    if int(claimed.rowcount or 0) != 1:
        raise _token_used_error()
    token.used_at = resolved_now
    return token


async def release_token(
    session: AsyncSession,
    model: type[EmailVerificationToken] | type[PasswordResetToken],
    token_id: str,
) -> None:
    # Compensate a claim when the follow-up identity provider write failed.
    await session.execute(
        update(model).where(model.id == token_id).values(used_at=None).execution_options(synchronize_session=False)
    )
