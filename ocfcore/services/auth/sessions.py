from __future__ import annotations

from dataclasses import dataclass
import logging

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.errors import IdentityProviderError, InvalidTokenError
from ocfcore.services.audit import record_event
from ocfcore.services.auth.identity import IdentityClient, TokenClaims
from ocfcore.services.auth.roles import ROLE_ORDER, highest_role, map_identity_role
from ocfcore.services.auth.tokens import blacklist_token, sweep_expired_blacklist
from ocfcore.services.authz.policy_store import PolicyStore
from ocfcore.services.organizations import ensure_personal_organization


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginResult:
    user_name: str
    display_name: str
    user_id: str
    access_token: str
    renew_access_token: str | None
    user_roles: list[str]


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    renew_access_token: str | None


def _invalid_credentials_error() -> HTTPException:
    # Unknown users and wrong passwords share one response.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "INVALID_CREDENTIALS", "message": "Invalid email or password"},
    )


def _upstream_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "UPSTREAM_ERROR", "message": "Identity provider unavailable"},
    )


async def bootstrap_principal(
    *,
    session: AsyncSession,
    store: PolicyStore,
    user_id: str,
    identity_roles: list[str],
) -> list[str]:
    """Make sure a principal has a platform role and a personal organization.

    Runs on every login and is idempotent; returns the principal's platform
    roles including inherited ones.
    """
    platform_role = highest_role([map_identity_role(role) for role in identity_roles])
    if platform_role not in await store.get_roles_for_user(user_id):
        await store.add_grouping_policy(user_id, platform_role)
        logger.info("platform_role_granted user_id=%s role=%s", user_id, platform_role)
    await ensure_personal_organization(session=session, store=store, user_id=user_id)
    roles = await store.get_implicit_roles_for_user(user_id)
    return [role for role in roles if role in ROLE_ORDER]


async def login(
    *,
    session: AsyncSession,
    store: PolicyStore,
    identity: IdentityClient,
    email: str,
    password: str,
) -> LoginResult:
    try:
        user = await identity.get_user_by_email(email)
        if user is None:
            logger.info("login_unknown_email")
            await record_event(
                actor_type="anonymous",
                actor_id=None,
                event_type="auth.login",
                outcome="failure",
                error_code="INVALID_CREDENTIALS",
            )
            raise _invalid_credentials_error()
        tokens = await identity.password_grant(user.name, password)
    except IdentityProviderError as exc:
        logger.warning("login_identity_unavailable", exc_info=exc)
        raise _upstream_error() from exc
    if tokens is None:
        await record_event(
            actor_type="user",
            actor_id=user.id,
            event_type="auth.login",
            outcome="failure",
            error_code="INVALID_CREDENTIALS",
        )
        raise _invalid_credentials_error()

    try:
        claims = identity.decode_token(tokens.access_token)
    except InvalidTokenError as exc:
        logger.warning("login_token_rejected user_id=%s", user.id, exc_info=exc)
        raise _invalid_credentials_error() from exc
    if claims.user_id != user.id:
        logger.warning("login_subject_mismatch user_id=%s subject=%s", user.id, claims.user_id)
        raise _invalid_credentials_error()

    roles = await bootstrap_principal(
        session=session, store=store, user_id=user.id, identity_roles=user.roles
    )
    await record_event(
        actor_type="user",
        actor_id=user.id,
        actor_roles=roles,
        event_type="auth.login",
        outcome="success",
    )
    logger.info("login_succeeded user_id=%s", user.id)
    return LoginResult(
        user_name=user.name,
        display_name=user.display_name,
        user_id=user.id,
        access_token=tokens.access_token,
        renew_access_token=tokens.refresh_token,
        user_roles=roles,
    )


async def refresh(*, identity: IdentityClient, refresh_token: str) -> RefreshResult:
    try:
        tokens = await identity.refresh_grant(refresh_token)
    except IdentityProviderError as exc:
        raise _upstream_error() from exc
    if tokens is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_REFRESH_TOKEN", "message": "Refresh token rejected"},
        )
    return RefreshResult(access_token=tokens.access_token, renew_access_token=tokens.refresh_token)


async def logout(*, session: AsyncSession, claims: TokenClaims) -> None:
    await blacklist_token(session, jti=claims.jti, user_id=claims.user_id, expires_at=claims.expires_at)
    # Expired rows are only ever swept here.
    swept = await sweep_expired_blacklist(session)
    await session.commit()
    logger.info("logout user_id=%s swept=%s", claims.user_id, swept)
