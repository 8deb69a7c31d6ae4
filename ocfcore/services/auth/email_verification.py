from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from urllib.parse import quote

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.config import get_settings
from ocfcore.core.errors import IdentityProviderError
from ocfcore.domain.models import EmailVerificationToken
from ocfcore.services.auth.identity import (
    PROP_EMAIL_VERIFIED,
    PROP_EMAIL_VERIFIED_AT,
    IdentityClient,
    IdentityUser,
)
from ocfcore.services.auth.tokens import (
    as_utc,
    can_resend,
    claim_token,
    create_verification_token,
    get_latest_verification_token,
    release_token,
)
from ocfcore.services.notifications.mailer import (
    TEMPLATE_EMAIL_VERIFICATION,
    MailSender,
    send_template,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationStatus:
    verified: bool
    verified_at: str | None
    email: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _upstream_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "UPSTREAM_ERROR", "message": "Identity provider unavailable"},
    )


def verification_link(token: str) -> str:
    settings = get_settings()
    return f"{settings.frontend_url.rstrip('/')}/verify-email?token={quote(token)}"


async def _send_verification(mailer: MailSender, user: IdentityUser, token: EmailVerificationToken) -> None:
    settings = get_settings()
    await send_template(
        mailer,
        template=TEMPLATE_EMAIL_VERIFICATION,
        to=token.email,
        variables={
            "name": user.display_name or user.name,
            "link": verification_link(token.token),
            "expiry_hours": settings.email_verification_expiry_hours,
        },
    )


async def start_verification(
    *,
    session: AsyncSession,
    mailer: MailSender,
    user: IdentityUser,
    now: datetime | None = None,
) -> EmailVerificationToken:
    # Issue a fresh token (superseding unused ones) and mail the link.
    settings = get_settings()
    token = await create_verification_token(
        session,
        user_id=user.id,
        email=user.email,
        expiry_hours=settings.email_verification_expiry_hours,
        now=now,
    )
    await session.commit()
    await _send_verification(mailer, user, token)
    return token


async def verify_email(
    *,
    session: AsyncSession,
    identity: IdentityClient,
    raw_token: str,
    now: datetime | None = None,
) -> IdentityUser:
    """Consume a verification token and flag the identity as verified.

    The token is claimed and committed first so a concurrent request with the
    same token gets a 409; if the provider update then fails, the claim is
    released and the caller sees a 502.
    """
    resolved_now = now or _utc_now()
    token = await claim_token(session, EmailVerificationToken, raw_token, now=resolved_now)
    token_id = token.id
    await session.commit()

    try:
        user = await identity.get_user(token.user_id)
        if user is None:
            raise IdentityProviderError(f"User {token.user_id} not found at identity provider")
        updated = await identity.update_properties(
            user,
            {
                PROP_EMAIL_VERIFIED: "true",
                PROP_EMAIL_VERIFIED_AT: resolved_now.isoformat(),
            },
        )
    except IdentityProviderError as exc:
        await release_token(session, EmailVerificationToken, token_id)
        await session.commit()
        logger.warning("email_verification_idp_update_failed user_id=%s", token.user_id, exc_info=exc)
        raise _upstream_error() from exc
    logger.info("email_verified user_id=%s", updated.id)
    return updated


async def resend_verification(
    *,
    session: AsyncSession,
    identity: IdentityClient,
    mailer: MailSender,
    email: str,
    now: datetime | None = None,
) -> None:
    """Resend the verification mail; every outcome looks identical to the caller.

    Unknown addresses, already verified accounts and rate-limited requests
    return silently. Only provider outages are logged at warning level. A
    live token is mailed again as-is; a replacement is minted only once it
    has expired.
    """
    settings = get_settings()
    resolved_now = now or _utc_now()
    try:
        user = await identity.get_user_by_email(email)
    except IdentityProviderError as exc:
        logger.warning("resend_verification_lookup_failed", exc_info=exc)
        return
    if user is None:
        logger.info("resend_verification_unknown_email")
        return
    if user.email_verified:
        logger.info("resend_verification_already_verified user_id=%s", user.id)
        return

    token = await get_latest_verification_token(session, user.id)
    if token is None:
        await start_verification(session=session, mailer=mailer, user=user, now=resolved_now)
        return
    if not can_resend(
        token,
        max_resends=settings.email_verification_max_resends,
        cooldown_s=settings.email_verification_resend_cooldown_s,
        now=resolved_now,
    ):
        logger.info("resend_verification_rate_limited user_id=%s count=%s", user.id, token.resend_count)
        return

    resend_count = token.resend_count + 1
    expires_at = as_utc(token.expires_at)
    if token.email == user.email and expires_at is not None and expires_at > resolved_now:
        # The mailed link stays valid; only the counters move.
        token.resend_count = resend_count
        token.last_resent_at = resolved_now
        await session.commit()
        logger.info("verification_resent user_id=%s count=%s", user.id, resend_count)
        await _send_verification(mailer, user, token)
        return

    fresh = await create_verification_token(
        session,
        user_id=user.id,
        email=user.email,
        expiry_hours=settings.email_verification_expiry_hours,
        now=resolved_now,
    )
    # Carry the resend allowance over to the replacement token.
    fresh.resend_count = resend_count
    fresh.last_resent_at = resolved_now
    await session.commit()
    logger.info("verification_token_reissued user_id=%s count=%s", user.id, resend_count)
    await _send_verification(mailer, user, fresh)


async def get_verification_status(*, identity: IdentityClient, user_id: str) -> VerificationStatus:
    try:
        user = await identity.get_user(user_id)
    except IdentityProviderError as exc:
        raise _upstream_error() from exc
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "USER_NOT_FOUND", "message": "User not found"},
        )
    return VerificationStatus(verified=user.email_verified, verified_at=user.email_verified_at, email=user.email)
