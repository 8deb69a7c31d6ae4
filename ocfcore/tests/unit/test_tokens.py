from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi import HTTPException

from ocfcore.domain.models import EmailVerificationToken, PasswordResetToken
from ocfcore.persistence.db import SessionLocal
from ocfcore.services.auth.email_verification import resend_verification, verify_email
from ocfcore.services.auth.tokens import (
    TOKEN_HEX_LENGTH,
    blacklist_token,
    can_resend,
    claim_token,
    create_reset_token,
    create_verification_token,
    get_latest_verification_token,
    is_token_blacklisted,
    release_token,
    sweep_expired_blacklist,
)
from ocfcore.tests.utils.fakes import FakeIdentityProvider, RecordingMailer


def _utc_now() -> datetime:
    # Fixed clock keeps expiry arithmetic deterministic.
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_blacklisted_token_is_rejected_until_expiry() -> None:
    now = _utc_now()
    jti = uuid4().hex
    async with SessionLocal() as session:
        await blacklist_token(session, jti=jti, user_id="u1", expires_at=now + timedelta(hours=1))
        # Replays of the same jti are no-ops.
        await blacklist_token(session, jti=jti, user_id="u1", expires_at=now + timedelta(hours=1))
        await session.commit()

    async with SessionLocal() as session:
        assert await is_token_blacklisted(session, jti, now=now)
        assert not await is_token_blacklisted(session, jti, now=now + timedelta(hours=2))
        assert not await is_token_blacklisted(session, uuid4().hex, now=now)


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_rows() -> None:
    now = _utc_now()
    async with SessionLocal() as session:
        await blacklist_token(session, jti="old", user_id="u1", expires_at=now - timedelta(minutes=1))
        await blacklist_token(session, jti="live", user_id="u1", expires_at=now + timedelta(minutes=1))
        await session.commit()
    async with SessionLocal() as session:
        assert await sweep_expired_blacklist(session, now=now) == 1
        await session.commit()
    async with SessionLocal() as session:
        assert await is_token_blacklisted(session, "live", now=now)


@pytest.mark.asyncio
async def test_new_verification_token_supersedes_unused_ones() -> None:
    now = _utc_now()
    async with SessionLocal() as session:
        first = await create_verification_token(
            session, user_id="u1", email="a@example.test", expiry_hours=48, now=now
        )
        second = await create_verification_token(
            session, user_id="u1", email="a@example.test", expiry_hours=48, now=now
        )
        await session.commit()

    assert len(second.token) == TOKEN_HEX_LENGTH
    assert first.token != second.token
    async with SessionLocal() as session:
        latest = await get_latest_verification_token(session, "u1")
        assert latest is not None
        assert latest.id == second.id


@pytest.mark.asyncio
async def test_claim_token_is_single_use() -> None:
    now = _utc_now()
    async with SessionLocal() as session:
        token = await create_reset_token(session, user_id="u1", email=None, expiry_hours=1, now=now)
        await session.commit()

    async with SessionLocal() as session:
        claimed = await claim_token(session, PasswordResetToken, token.token, now=now)
        await session.commit()
    assert claimed.user_id == "u1"

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await claim_token(session, PasswordResetToken, token.token, now=now)
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["code"] == "TOKEN_ALREADY_USED"


@pytest.mark.asyncio
async def test_claim_token_reports_unknown_and_expired() -> None:
    now = _utc_now()
    async with SessionLocal() as session:
        token = await create_verification_token(
            session, user_id="u1", email="a@example.test", expiry_hours=1, now=now
        )
        await session.commit()

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as unknown:
            await claim_token(session, EmailVerificationToken, "0" * TOKEN_HEX_LENGTH, now=now)
        with pytest.raises(HTTPException) as expired:
            await claim_token(session, EmailVerificationToken, token.token, now=now + timedelta(hours=2))
    assert unknown.value.status_code == 404
    assert expired.value.status_code == 410


@pytest.mark.asyncio
async def test_release_token_allows_a_second_claim() -> None:
    now = _utc_now()
    async with SessionLocal() as session:
        token = await create_reset_token(session, user_id="u1", email=None, expiry_hours=1, now=now)
        await session.commit()
    async with SessionLocal() as session:
        await claim_token(session, PasswordResetToken, token.token, now=now)
        await session.commit()
    async with SessionLocal() as session:
        await release_token(session, PasswordResetToken, token.id)
        await session.commit()
    async with SessionLocal() as session:
        claimed = await claim_token(session, PasswordResetToken, token.token, now=now)
    assert claimed.id == token.id


def test_can_resend_honours_cap_and_cooldown() -> None:
    now = _utc_now()
    token = EmailVerificationToken(user_id="u1", email="a@example.test", token="t", resend_count=0)
    assert can_resend(token, max_resends=5, cooldown_s=120, now=now)

    token.last_resent_at = now - timedelta(seconds=30)
    assert not can_resend(token, max_resends=5, cooldown_s=120, now=now)
    assert can_resend(token, max_resends=5, cooldown_s=120, now=now + timedelta(seconds=120))

    token.resend_count = 5
    assert not can_resend(token, max_resends=5, cooldown_s=120, now=now + timedelta(days=1))


@pytest.mark.asyncio
async def test_resend_mails_the_live_token_until_it_expires() -> None:
    now = _utc_now()
    idp = FakeIdentityProvider()
    user = idp.add_user(email=f"{uuid4().hex[:8]}@example.test")
    mailer = RecordingMailer()

    async with SessionLocal() as session:
        await resend_verification(session=session, identity=idp.client(), mailer=mailer, email=user.email, now=now)
    async with SessionLocal() as session:
        original = await get_latest_verification_token(session, user.id)
    assert original is not None
    assert original.resend_count == 0

    async with SessionLocal() as session:
        await resend_verification(
            session=session, identity=idp.client(), mailer=mailer, email=user.email, now=now + timedelta(minutes=5)
        )
    async with SessionLocal() as session:
        reused = await get_latest_verification_token(session, user.id)
    assert reused.id == original.id
    assert reused.token == original.token
    assert reused.resend_count == 1
    assert len(mailer.sent) == 2
    assert original.token in mailer.sent[-1].html_body

    # Past expiry a replacement is minted and the allowance carries over.
    later = now + timedelta(hours=49)
    async with SessionLocal() as session:
        await resend_verification(session=session, identity=idp.client(), mailer=mailer, email=user.email, now=later)
    async with SessionLocal() as session:
        fresh = await get_latest_verification_token(session, user.id)
    assert fresh.token != original.token
    assert fresh.resend_count == 2
    assert fresh.token in mailer.sent[-1].html_body

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await claim_token(session, EmailVerificationToken, original.token, now=later)
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_verified_email_stays_verified_across_resends() -> None:
    now = _utc_now()
    idp = FakeIdentityProvider()
    user = idp.add_user(email=f"{uuid4().hex[:8]}@example.test")
    mailer = RecordingMailer()

    async with SessionLocal() as session:
        await resend_verification(session=session, identity=idp.client(), mailer=mailer, email=user.email, now=now)
        token = await get_latest_verification_token(session, user.id)
    async with SessionLocal() as session:
        await verify_email(session=session, identity=idp.client(), raw_token=token.token, now=now)
    assert user.properties["email_verified"] == "true"

    for minutes in (5, 60, 60 * 24 * 3):
        async with SessionLocal() as session:
            await resend_verification(
                session=session,
                identity=idp.client(),
                mailer=mailer,
                email=user.email,
                now=now + timedelta(minutes=minutes),
            )
    assert len(mailer.sent) == 1
    assert user.properties["email_verified"] == "true"
    async with SessionLocal() as session:
        assert await get_latest_verification_token(session, user.id) is None
