from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncGenerator, Callable, TypeVar

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.errors import validation_error
from ocfcore.core.errors import IdentityProviderError, InvalidTokenError
from ocfcore.persistence.db import get_session
from ocfcore.services.audit import record_event
from ocfcore.services.auth.identity import IdentityClient, TokenClaims, get_identity_client
from ocfcore.services.auth.roles import ROLE_ADMINISTRATOR, highest_role, role_allows
from ocfcore.services.auth.tokens import is_token_blacklisted
from ocfcore.services.authz.policy_store import PolicyStore, get_policy_store
from ocfcore.services.authz.resolver import authorize_request, platform_roles
from ocfcore.services.billing.stripe_gateway import StripeGateway, get_gateway
from ocfcore.services.notifications.mailer import MailSender, get_mailer


ModelT = TypeVar("ModelT", bound=BaseModel)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_identity() -> IdentityClient:
    return get_identity_client()


def get_store() -> PolicyStore:
    return get_policy_store()


def get_payment_gateway() -> StripeGateway:
    return get_gateway()


def get_mail_sender() -> MailSender:
    return get_mailer()


class Principal(BaseModel):
    # Authenticated identity resolved from the identity provider's bearer token.
    user_id: str
    name: str | None = None
    email: str | None = None
    roles: list[str] = []
    jti: str
    expires_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMINISTRATOR in self.roles

    @property
    def role(self) -> str:
        return highest_role(self.roles)

    def claims(self) -> TokenClaims:
        return TokenClaims(
            user_id=self.user_id,
            name=self.name,
            email=self.email,
            jti=self.jti,
            expires_at=self.expires_at,
            raw={},
        )


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _request_metadata(request: Request) -> dict[str, str]:
    return {"path": request.url.path, "method": request.method}


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def _reject(request: Request, exc: HTTPException, *, actor_id: str | None = None) -> HTTPException:
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    await record_event(
        actor_type="user" if actor_id else "anonymous",
        actor_id=actor_id,
        event_type="auth.access.failure",
        outcome="failure",
        resource_type="auth",
        request=request,
        metadata=_request_metadata(request),
        error_code=detail.get("code"),
    )
    return exc


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
    store: PolicyStore = Depends(get_store),
) -> Principal:
    try:
        token = _parse_bearer_token(request.headers.get("Authorization"))
    except HTTPException as exc:
        raise await _reject(request, exc)
    try:
        claims = identity.decode_token(token)
    except InvalidTokenError as exc:
        raise await _reject(request, _auth_error("Invalid or expired token")) from exc
    # A token without a subject never falls through to later checks.
    if not claims.user_id:
        raise await _reject(request, _auth_error("Token has no subject"))
    if await is_token_blacklisted(db, claims.jti):
        raise await _reject(request, _auth_error("Token has been revoked"), actor_id=claims.user_id)
    roles = await platform_roles(store, claims.user_id)
    return Principal(
        user_id=claims.user_id,
        name=claims.name,
        email=claims.email,
        roles=roles,
        jti=claims.jti,
        expires_at=claims.expires_at,
    )


def require_role(minimum_role: str) -> Callable[..., Any]:
    # Dependency factory for platform-role checks.
    async def _require_role(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            await record_event(
                actor_type="user",
                actor_id=principal.user_id,
                actor_roles=principal.roles,
                event_type="authz.role.denied",
                outcome="failure",
                request=request,
                metadata={**_request_metadata(request), "required_role": minimum_role},
                error_code="AUTH_FORBIDDEN",
            )
            raise _forbidden_error("Insufficient role")
        return principal

    return _require_role


async def require_access(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> Principal:
    """Policy, feature and quota gate for the matched route."""
    route = request.scope.get("route")
    route_path = getattr(route, "path", request.url.path)
    try:
        await authorize_request(
            session=db,
            store=store,
            user_id=principal.user_id,
            method=request.method,
            path=request.url.path,
            route_path=route_path,
        )
    except HTTPException as exc:
        detail = exc.detail if isinstance(exc.detail, dict) else {}
        await record_event(
            actor_type="user",
            actor_id=principal.user_id,
            actor_roles=principal.roles,
            event_type="authz.access.denied",
            outcome="failure",
            request=request,
            metadata=_request_metadata(request),
            error_code=detail.get("code"),
        )
        raise
    return principal


async def parse_body(request: Request, model: type[ModelT], *, case_insensitive: bool = False) -> ModelT:
    """Validate a JSON body, optionally matching keys without regard to case."""
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "Malformed JSON body"},
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "JSON object expected"},
        )
    if case_insensitive:
        payload = {str(key).lower(): value for key, value in payload.items()}
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise validation_error(exc.errors()) from exc


async def billing_contact(principal: Principal, identity: IdentityClient) -> tuple[str, str | None]:
    # Tokens usually carry the email claim; fall back to the identity provider.
    if principal.email:
        return principal.email, principal.name
    try:
        user = await identity.get_user(principal.user_id)
    except IdentityProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "UPSTREAM_ERROR", "message": "Identity provider unavailable"},
        ) from exc
    if user is None or not user.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "EMAIL_REQUIRED", "message": "An email address is required for billing"},
        )
    return user.email, user.display_name or user.name
