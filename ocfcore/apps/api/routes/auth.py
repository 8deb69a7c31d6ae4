from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_identity,
    get_mail_sender,
    get_store,
    parse_body,
)
from ocfcore.core.errors import IdentityProviderError
from ocfcore.services.auth import email_verification, password_reset, sessions
from ocfcore.services.auth.identity import IdentityClient
from ocfcore.services.authz.policy_store import PolicyStore
from ocfcore.services.notifications.mailer import MailSender


router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class LoginResponse(BaseModel):
    user_name: str
    display_name: str
    user_id: str
    access_token: str
    renew_access_token: str | None
    user_roles: list[str]


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class RefreshResponse(BaseModel):
    access_token: str
    renew_access_token: str | None


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=64, max_length=64, pattern=r"^[0-9a-fA-F]{64}$")


class EmailRequest(BaseModel):
    email: str = Field(min_length=3)


class PasswordResetConfirmRequest(BaseModel):
    token: str = Field(min_length=10)
    new_password: str = Field(min_length=8)


class VerificationStatusResponse(BaseModel):
    verified: bool
    verified_at: str | None
    email: str


class MessageResponse(BaseModel):
    message: str


# Body keys are matched case-insensitively ("Email" and "email" are equivalent).
@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_201_CREATED)
async def login(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
    store: PolicyStore = Depends(get_store),
) -> LoginResponse:
    body = await parse_body(request, LoginRequest, case_insensitive=True)
    result = await sessions.login(
        session=db, store=store, identity=identity, email=body.email, password=body.password
    )
    return LoginResponse(**asdict(result))


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    request: Request,
    identity: IdentityClient = Depends(get_identity),
) -> RefreshResponse:
    body = await parse_body(request, RefreshRequest, case_insensitive=True)
    result = await sessions.refresh(identity=identity, refresh_token=body.refresh_token)
    return RefreshResponse(access_token=result.access_token, renew_access_token=result.renew_access_token)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    await sessions.logout(session=db, claims=principal.claims())


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
) -> MessageResponse:
    body = await parse_body(request, VerifyEmailRequest, case_insensitive=True)
    await email_verification.verify_email(session=db, identity=identity, raw_token=body.token)
    return MessageResponse(message="Email verified")


@router.post("/send-verification", response_model=MessageResponse)
async def send_verification(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
    mailer: MailSender = Depends(get_mail_sender),
) -> MessageResponse:
    try:
        user = await identity.get_user(principal.user_id)
    except IdentityProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "UPSTREAM_ERROR", "message": "Identity provider unavailable"},
        ) from exc
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "USER_NOT_FOUND", "message": "User not found"},
        )
    if not user.email_verified:
        await email_verification.start_verification(session=db, mailer=mailer, user=user)
    return MessageResponse(message="Verification email sent")


@router.post("/resend-verification", response_model=MessageResponse)
async def resend_verification(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
    mailer: MailSender = Depends(get_mail_sender),
) -> MessageResponse:
    body = await parse_body(request, EmailRequest, case_insensitive=True)
    await email_verification.resend_verification(session=db, identity=identity, mailer=mailer, email=body.email)
    # Identical response whether or not the address belongs to an account.
    return MessageResponse(message="If the account exists, a verification email has been sent")


@router.get("/verify-status", response_model=VerificationStatusResponse)
async def verify_status(
    principal: Principal = Depends(get_current_principal),
    identity: IdentityClient = Depends(get_identity),
) -> VerificationStatusResponse:
    result = await email_verification.get_verification_status(identity=identity, user_id=principal.user_id)
    return VerificationStatusResponse(verified=result.verified, verified_at=result.verified_at, email=result.email)


@router.post("/password-reset/request", response_model=MessageResponse)
async def request_password_reset(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
    mailer: MailSender = Depends(get_mail_sender),
) -> MessageResponse:
    body = await parse_body(request, EmailRequest, case_insensitive=True)
    await password_reset.request_password_reset(session=db, identity=identity, mailer=mailer, email=body.email)
    return MessageResponse(message="If the account exists, a password reset email has been sent")


@router.post("/password-reset/confirm", response_model=MessageResponse)
async def confirm_password_reset(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
) -> MessageResponse:
    body = await parse_body(request, PasswordResetConfirmRequest, case_insensitive=True)
    await password_reset.confirm_password_reset(
        session=db, identity=identity, raw_token=body.token, new_password=body.new_password
    )
    return MessageResponse(message="Password has been reset")
