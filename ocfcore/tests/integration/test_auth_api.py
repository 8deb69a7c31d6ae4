from __future__ import annotations

import re

import pytest
from httpx import ASGITransport, AsyncClient

from ocfcore.apps.api.deps import get_identity, get_mail_sender
from ocfcore.apps.api.main import create_app
from ocfcore.services.authz.grants import ensure_default_policies
from ocfcore.services.authz.policy_store import get_policy_store
from ocfcore.tests.utils.auth import auth_headers
from ocfcore.tests.utils.fakes import FakeIdentityProvider, RecordingMailer


_TOKEN_IN_LINK = re.compile(r"token=([0-9a-f]{64})")


def _create_app(idp: FakeIdentityProvider, mailer: RecordingMailer | None = None):
    # Route identity and mail through in-memory fakes.
    app = create_app()
    app.dependency_overrides[get_identity] = idp.client
    if mailer is not None:
        app.dependency_overrides[get_mail_sender] = lambda: mailer
    return app


def _link_token(mailer: RecordingMailer) -> str:
    match = _TOKEN_IN_LINK.search(mailer.sent[-1].html_body)
    assert match is not None
    return match.group(1)


@pytest.mark.asyncio
async def test_login_bootstraps_principal_and_logout_revokes_token() -> None:
    await ensure_default_policies(get_policy_store())
    idp = FakeIdentityProvider()
    user = idp.add_user(email="ada@example.test", roles=["teacher"])
    app = _create_app(idp)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        # Body keys match without regard to case.
        response = await client.post(
            "/api/v1/auth/login", json={"Email": "ada@example.test", "Password": "correct-horse"}
        )
        assert response.status_code == 201
        body = response.json()
        assert body["user_id"] == user.id
        assert body["user_roles"] == ["member"]
        headers = auth_headers(body["access_token"])

        profile = await client.get("/api/v1/users/me", headers=headers)
        assert profile.status_code == 200
        assert profile.json()["email"] == "ada@example.test"

        organizations = await client.get("/api/v1/organizations", headers=headers)
        assert organizations.status_code == 200
        assert [org["organization_type"] for org in organizations.json()] == ["personal"]

        logout = await client.post("/api/v1/auth/logout", headers=headers)
        assert logout.status_code == 204

        revoked = await client.get("/api/v1/users/me", headers=headers)
        assert revoked.status_code == 401
        assert revoked.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_login_rejects_bad_credentials_uniformly() -> None:
    idp = FakeIdentityProvider()
    idp.add_user(email="ada@example.test")
    app = _create_app(idp)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        wrong_password = await client.post(
            "/api/v1/auth/login", json={"email": "ada@example.test", "password": "nope"}
        )
        unknown_user = await client.post(
            "/api/v1/auth/login", json={"email": "bob@example.test", "password": "nope"}
        )
        missing_field = await client.post("/api/v1/auth/login", json={"email": "ada@example.test"})

    assert wrong_password.status_code == 401
    assert unknown_user.status_code == 401
    assert wrong_password.json()["error"] == unknown_user.json()["error"]
    assert wrong_password.json()["error"]["code"] == "INVALID_CREDENTIALS"
    assert missing_field.status_code == 400
    assert missing_field.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_login_reports_identity_provider_outage() -> None:
    idp = FakeIdentityProvider()
    idp.add_user(email="ada@example.test")
    idp.unavailable = True
    app = _create_app(idp)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/v1/auth/login", json={"email": "ada@example.test", "password": "correct-horse"}
        )
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "UPSTREAM_ERROR"


@pytest.mark.asyncio
async def test_refresh_token_is_single_use() -> None:
    idp = FakeIdentityProvider()
    idp.add_user(email="ada@example.test")
    app = _create_app(idp)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        login = await client.post(
            "/api/v1/auth/login", json={"email": "ada@example.test", "password": "correct-horse"}
        )
        refresh_token = login.json()["renew_access_token"]

        refreshed = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert refreshed.status_code == 200
        assert refreshed.json()["access_token"]

        replay = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"


@pytest.mark.asyncio
async def test_email_verification_round_trip() -> None:
    idp = FakeIdentityProvider()
    user = idp.add_user(email="ada@example.test")
    mailer = RecordingMailer()
    app = _create_app(idp, mailer)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unknown = await client.post("/api/v1/auth/resend-verification", json={"email": "ghost@example.test"})
        sent = await client.post("/api/v1/auth/resend-verification", json={"email": "ada@example.test"})
        # Known and unknown addresses look the same to the caller.
        assert unknown.json() == sent.json()
        assert len(mailer.sent) == 1
        assert mailer.sent[0].to == "ada@example.test"
        token = _link_token(mailer)

        malformed = await client.post("/api/v1/auth/verify-email", json={"token": "short"})
        assert malformed.status_code == 400

        verified = await client.post("/api/v1/auth/verify-email", json={"token": token})
        assert verified.status_code == 200
        replay = await client.post("/api/v1/auth/verify-email", json={"token": token})

    assert replay.status_code == 409
    assert user.properties["email_verified"] == "true"
    assert "email_verified_at" in user.properties


@pytest.mark.asyncio
async def test_password_reset_sets_new_password() -> None:
    idp = FakeIdentityProvider()
    idp.add_user(email="ada@example.test")
    mailer = RecordingMailer()
    app = _create_app(idp, mailer)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        requested = await client.post("/api/v1/auth/password-reset/request", json={"email": "ada@example.test"})
        assert requested.status_code == 200
        token = _link_token(mailer)
        assert "/reset-password?token=" in mailer.sent[0].html_body

        too_short = await client.post(
            "/api/v1/auth/password-reset/confirm", json={"token": token, "new_password": "short"}
        )
        assert too_short.status_code == 400

        confirmed = await client.post(
            "/api/v1/auth/password-reset/confirm", json={"token": token, "new_password": "battery-staple"}
        )
        assert confirmed.status_code == 200

        old_login = await client.post(
            "/api/v1/auth/login", json={"email": "ada@example.test", "password": "correct-horse"}
        )
        new_login = await client.post(
            "/api/v1/auth/login", json={"email": "ada@example.test", "password": "battery-staple"}
        )
        reused = await client.post(
            "/api/v1/auth/password-reset/confirm", json={"token": token, "new_password": "another-secret"}
        )

    assert old_login.status_code == 401
    assert new_login.status_code == 201
    assert reused.status_code == 409
