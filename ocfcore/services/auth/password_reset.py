from __future__ import annotations

from datetime import datetime, timezone
import logging
from urllib.parse import quote

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.config import get_settings
from ocfcore.core.errors import IdentityProviderError
from ocfcore.domain.models import PasswordResetToken
from ocfcore.services.auth.identity import PROP_FORCE_PASSWORD_RESET, IdentityClient
from ocfcore.services.auth.tokens import claim_token, create_reset_token, release_token
from ocfcore.services.notifications.mailer import TEMPLATE_PASSWORD_RESET, MailSender, send_template


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def reset_link(token: str) -> str:
    settings = get_settings()
    return f"{settings.frontend_url.rstrip('/')}/reset-password?token={quote(token)}"


async def request_password_reset(
    *,
    session: AsyncSession,
    identity: IdentityClient,
    mailer: MailSender,
    email: str,
) -> None:
    # Same observable outcome for known and unknown addresses; no row for unknown ones.
    settings = get_settings()
    try:
        user = await identity.get_user_by_email(email)
    except IdentityProviderError as exc:
        logger.warning("password_reset_lookup_failed", exc_info=exc)
        return
    if user is None:
        logger.info("password_reset_unknown_email")
        return

    token = await create_reset_token(
        session,
        user_id=user.id,
        email=user.email,
        expiry_hours=settings.password_reset_expiry_hours,
    )
    await session.commit()
    await send_template(
        mailer,
        template=TEMPLATE_PASSWORD_RESET,
        to=user.email,
        variables={
            "name": user.display_name or user.name,
            "link": reset_link(token.token),
            "expiry_hours": settings.password_reset_expiry_hours,
        },
    )
    logger.info("password_reset_requested user_id=%s", user.id)


async def confirm_password_reset(
    *,
    session: AsyncSession,
    identity: IdentityClient,
    raw_token: str,
    new_password: str,
    now: datetime | None = None,
) -> None:
    # Claim the token, set the password at the provider, and release the claim if that fails.
    token = await claim_token(session, PasswordResetToken, raw_token, now=now or _utc_now())
    token_id = token.id
    user_id = token.user_id
    await session.commit()

    try:
        user = await identity.get_user(user_id)
        if user is None:
            raise IdentityProviderError(f"User {user_id} not found at identity provider")
        await identity.set_password(user, new_password)
        if user.force_password_reset:
            await identity.update_properties(user, {PROP_FORCE_PASSWORD_RESET: "false"})
    except IdentityProviderError as exc:
        await release_token(session, PasswordResetToken, token_id)
        await session.commit()
        logger.warning("password_reset_idp_update_failed user_id=%s", user_id, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "UPSTREAM_ERROR", "message": "Identity provider unavailable"},
        ) from exc
    logger.info("password_reset_completed user_id=%s", user_id)
