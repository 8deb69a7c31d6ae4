from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import logging
from typing import Any

import httpx
import jwt

from ocfcore.core.config import Settings, get_settings
from ocfcore.core.errors import IdentityProviderError, InvalidTokenError


logger = logging.getLogger(__name__)

PROP_EMAIL_VERIFIED = "email_verified"
PROP_EMAIL_VERIFIED_AT = "email_verified_at"
PROP_FORCE_PASSWORD_RESET = "force_password_reset"


@dataclass(frozen=True)
class IdentityUser:
    # Principal record as owned by the identity provider.
    id: str
    name: str
    owner: str
    display_name: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    properties: dict[str, str] = field(default_factory=dict)
    roles: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def email_verified(self) -> bool:
        return self.properties.get(PROP_EMAIL_VERIFIED) == "true"

    @property
    def email_verified_at(self) -> str | None:
        return self.properties.get(PROP_EMAIL_VERIFIED_AT) or None

    @property
    def force_password_reset(self) -> bool:
        return self.properties.get(PROP_FORCE_PASSWORD_RESET) == "true"


@dataclass(frozen=True)
class IdentityTokens:
    access_token: str
    refresh_token: str | None
    expires_in: int | None = None


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    name: str | None
    email: str | None
    jti: str
    expires_at: datetime | None
    raw: dict[str, Any]


def _user_from_payload(payload: dict[str, Any]) -> IdentityUser:
    # Map the provider's user document onto the fields this service relies on.
    properties = payload.get("properties") or {}
    roles = [
        str(role.get("name"))
        for role in (payload.get("roles") or [])
        if isinstance(role, dict) and role.get("name")
    ]
    return IdentityUser(
        id=str(payload.get("id") or ""),
        name=str(payload.get("name") or ""),
        owner=str(payload.get("owner") or ""),
        display_name=str(payload.get("displayName") or payload.get("name") or ""),
        email=str(payload.get("email") or ""),
        first_name=payload.get("firstName") or None,
        last_name=payload.get("lastName") or None,
        avatar=payload.get("avatar") or None,
        properties={str(k): str(v) for k, v in properties.items()},
        roles=roles,
        raw=dict(payload),
    )


class IdentityClient:
    """Thin async client for the external identity provider.

    The provider owns user records, credentials and token issuance; this
    client only reads and patches user documents, runs the password and
    refresh grants, and verifies the access tokens it issued.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = self._settings.ext_call_timeout_ms / 1000
        return httpx.AsyncClient(
            base_url=self._settings.idp_endpoint.rstrip("/"),
            timeout=timeout,
            transport=self._transport,
        )

    def _app_auth(self) -> tuple[str, str]:
        return (self._settings.idp_client_id, self._settings.idp_client_secret)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("idp_request_failed path=%s error=%s", path, type(exc).__name__)
            raise IdentityProviderError(f"Identity provider unreachable: {path}") from exc
        if response.status_code >= 500:
            logger.warning("idp_request_failed path=%s status=%s", path, response.status_code)
            raise IdentityProviderError(f"Identity provider error {response.status_code}")
        return response

    @staticmethod
    def _data(response: httpx.Response) -> Any:
        # Provider responses wrap payloads as {"status": "ok"|"error", "msg", "data"}.
        if response.status_code >= 400:
            raise IdentityProviderError(f"Identity provider rejected request ({response.status_code})")
        try:
            body = response.json()
        except ValueError as exc:
            raise IdentityProviderError("Identity provider returned invalid JSON") from exc
        if isinstance(body, dict) and body.get("status") == "error":
            raise IdentityProviderError(str(body.get("msg") or "Identity provider error"))
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get_user_by_email(self, email: str) -> IdentityUser | None:
        response = await self._request(
            "GET",
            "/api/get-user",
            params={"owner": self._settings.idp_organization, "email": email},
            auth=self._app_auth(),
        )
        data = self._data(response)
        if not data:
            return None
        return _user_from_payload(data)

    async def get_user(self, user_id: str) -> IdentityUser | None:
        response = await self._request(
            "GET",
            "/api/get-user",
            params={"owner": self._settings.idp_organization, "userId": user_id},
            auth=self._app_auth(),
        )
        data = self._data(response)
        if not data:
            return None
        return _user_from_payload(data)

    async def update_user(self, user: IdentityUser, changes: dict[str, Any]) -> IdentityUser:
        # Patch the stored document; the provider replaces the whole record on update.
        document = {**user.raw, **changes}
        response = await self._request(
            "POST",
            "/api/update-user",
            params={"id": f"{user.owner}/{user.name}"},
            json=document,
            auth=self._app_auth(),
        )
        self._data(response)
        return _user_from_payload(document)

    async def update_properties(self, user: IdentityUser, properties: dict[str, str]) -> IdentityUser:
        merged = {**user.properties, **properties}
        return await self.update_user(user, {"properties": merged})

    async def set_password(self, user: IdentityUser, new_password: str) -> None:
        response = await self._request(
            "POST",
            "/api/set-password",
            data={
                "userOwner": user.owner,
                "userName": user.name,
                "oldPassword": "",
                "newPassword": new_password,
            },
            auth=self._app_auth(),
        )
        self._data(response)

    async def password_grant(self, username: str, password: str) -> IdentityTokens | None:
        # Returns None on rejected credentials; raises only when the provider is unavailable.
        response = await self._request(
            "POST",
            "/api/login/oauth/access_token",
            params={
                "grant_type": "password",
                "client_id": self._settings.idp_client_id,
                "client_secret": self._settings.idp_client_secret,
                "username": username,
                "password": password,
            },
        )
        return self._tokens(response)

    async def refresh_grant(self, refresh_token: str) -> IdentityTokens | None:
        response = await self._request(
            "POST",
            "/api/login/oauth/refresh_token",
            params={
                "grant_type": "refresh_token",
                "client_id": self._settings.idp_client_id,
                "client_secret": self._settings.idp_client_secret,
                "refresh_token": refresh_token,
                "scope": "read",
            },
        )
        return self._tokens(response)

    @staticmethod
    def _tokens(response: httpx.Response) -> IdentityTokens | None:
        if response.status_code >= 400:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise IdentityProviderError("Identity provider returned invalid JSON") from exc
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token or body.get("error"):
            return None
        return IdentityTokens(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
        )

    def decode_token(self, token: str) -> TokenClaims:
        # Verify signature and expiry; the provider issues, this service only validates.
        try:
            claims = jwt.decode(
                token,
                self._settings.idp_jwt_key,
                algorithms=self._settings.jwt_algorithms(),
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(str(exc)) from exc
        user_id = str(claims.get("id") or claims.get("sub") or "")
        exp = claims.get("exp")
        expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc) if exp is not None else None
        jti = str(claims.get("jti") or "") or _token_fingerprint(token)
        return TokenClaims(
            user_id=user_id,
            name=claims.get("name"),
            email=claims.get("email"),
            jti=jti,
            expires_at=expires_at,
            raw=claims,
        )


def _token_fingerprint(token: str) -> str:
    # Tokens without a jti are blacklisted by digest instead.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


_identity_client: IdentityClient | None = None


def get_identity_client() -> IdentityClient:
    # Cache the identity client for reuse across requests.
    global _identity_client
    if _identity_client is None:
        _identity_client = IdentityClient()
    return _identity_client


def reset_identity_client() -> None:
    # Reset cached clients for deterministic tests.
    global _identity_client
    _identity_client = None
