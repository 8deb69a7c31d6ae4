from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import (
    Principal,
    billing_contact,
    get_db,
    get_identity,
    get_mail_sender,
    get_payment_gateway,
    require_access,
)
from ocfcore.core.errors import IdentityProviderError
from ocfcore.domain.models import SubscriptionBatch, UserSubscription
from ocfcore.services.audit import record_event
from ocfcore.services.auth.identity import IdentityClient
from ocfcore.services.billing import licenses as licenses_service
from ocfcore.services.billing.stripe_gateway import StripeGateway
from ocfcore.services.notifications.mailer import MailSender


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/licenses", tags=["licenses"])


class PurchaseBatchRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    group_id: str | None = None


class AssignLicenseRequest(BaseModel):
    user_id: str = Field(min_length=1)


class UpdateBatchRequest(BaseModel):
    quantity: int = Field(ge=1)


class LicenseResponse(BaseModel):
    id: str
    user_id: str | None
    subscription_plan_id: str
    status: str
    subscription_type: str
    subscription_batch_id: str | None
    purchaser_user_id: str | None
    assigned_at: datetime | None
    current_period_start: datetime | None
    current_period_end: datetime | None


class BatchResponse(BaseModel):
    id: str
    purchaser_user_id: str
    subscription_plan_id: str
    group_id: str | None
    total_quantity: int
    assigned_quantity: int
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancelled_at: datetime | None
    created_at: datetime | None


class BatchDetailResponse(BatchResponse):
    plan_name: str
    licenses: list[LicenseResponse]


def _license_response(license_row: UserSubscription) -> LicenseResponse:
    return LicenseResponse(
        id=license_row.id,
        user_id=license_row.user_id,
        subscription_plan_id=license_row.subscription_plan_id,
        status=license_row.status,
        subscription_type=license_row.subscription_type,
        subscription_batch_id=license_row.subscription_batch_id,
        purchaser_user_id=license_row.purchaser_user_id,
        assigned_at=license_row.assigned_at,
        current_period_start=license_row.current_period_start,
        current_period_end=license_row.current_period_end,
    )


def _batch_response(batch: SubscriptionBatch) -> BatchResponse:
    return BatchResponse(
        id=batch.id,
        purchaser_user_id=batch.purchaser_user_id,
        subscription_plan_id=batch.subscription_plan_id,
        group_id=batch.group_id,
        total_quantity=batch.total_quantity,
        assigned_quantity=batch.assigned_quantity,
        status=batch.status,
        current_period_start=batch.current_period_start,
        current_period_end=batch.current_period_end,
        cancelled_at=batch.cancelled_at,
        created_at=batch.created_at,
    )


async def _audit(request: Request, principal: Principal, event_type: str, resource_id: str, **metadata: object) -> None:
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type=event_type,
        outcome="success",
        resource_type="subscription_batch",
        resource_id=resource_id,
        request=request,
        metadata=metadata or None,
    )


@router.get("", response_model=list[LicenseResponse])
@router.get("/me", response_model=list[LicenseResponse])
async def list_my_licenses(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[LicenseResponse]:
    return [_license_response(row) for row in await licenses_service.list_user_licenses(db, principal.user_id)]


@router.get("/batches", response_model=list[BatchResponse])
async def list_batches(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[BatchResponse]:
    return [_batch_response(batch) for batch in await licenses_service.list_purchased_batches(db, principal.user_id)]


@router.post("/batches", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
async def purchase_batch(
    payload: PurchaseBatchRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    identity: IdentityClient = Depends(get_identity),
) -> BatchResponse:
    email, name = await billing_contact(principal, identity)
    batch = await licenses_service.purchase_bulk(
        session=db,
        gateway=gateway,
        purchaser_id=principal.user_id,
        email=email,
        name=name,
        plan_id=payload.plan_id,
        quantity=payload.quantity,
        group_id=payload.group_id,
    )
    await _audit(request, principal, "license.batch.purchased", batch.id, quantity=payload.quantity)
    return _batch_response(batch)


@router.get("/batches/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(
    batch_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> BatchDetailResponse:
    detail = await licenses_service.get_batch_detail(db, batch_id, principal.user_id)
    return BatchDetailResponse(
        **_batch_response(detail.batch).model_dump(),
        plan_name=detail.plan.name,
        licenses=[_license_response(row) for row in detail.licenses],
    )


@router.post("/batches/{batch_id}/assign", response_model=LicenseResponse)
async def assign_license(
    batch_id: str,
    payload: AssignLicenseRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity),
    mailer: MailSender = Depends(get_mail_sender),
) -> LicenseResponse:
    recipient_email: str | None = None
    recipient_name: str | None = None
    try:
        recipient = await identity.get_user(payload.user_id)
    except IdentityProviderError as exc:
        # The notification is optional; the assignment itself does not need the profile.
        logger.warning("license_recipient_lookup_failed user_id=%s error=%s", payload.user_id, exc)
        recipient = None
    if recipient is not None:
        recipient_email = recipient.email or None
        recipient_name = recipient.display_name or recipient.name
    seat = await licenses_service.assign_license(
        session=db,
        batch_id=batch_id,
        actor_id=principal.user_id,
        target_user_id=payload.user_id,
        mailer=mailer,
        recipient_email=recipient_email,
        recipient_name=recipient_name,
    )
    await _audit(request, principal, "license.assigned", batch_id, license_id=seat.id, user_id=payload.user_id)
    return _license_response(seat)


@router.post("/{license_id}/revoke", response_model=LicenseResponse)
async def revoke_license(
    license_id: str,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    seat = await licenses_service.revoke_license(session=db, license_id=license_id, actor_id=principal.user_id)
    await _audit(
        request, principal, "license.revoked", seat.subscription_batch_id or license_id, license_id=license_id
    )
    return _license_response(seat)


@router.patch("/batches/{batch_id}", response_model=BatchResponse)
async def update_batch_quantity(
    batch_id: str,
    payload: UpdateBatchRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> BatchResponse:
    batch = await licenses_service.update_quantity(
        session=db,
        gateway=gateway,
        batch_id=batch_id,
        actor_id=principal.user_id,
        new_quantity=payload.quantity,
    )
    await _audit(request, principal, "license.batch.resized", batch_id, quantity=payload.quantity)
    return _batch_response(batch)


@router.delete("/batches/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(
    batch_id: str,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> None:
    await licenses_service.delete_batch(session=db, gateway=gateway, batch_id=batch_id, actor_id=principal.user_id)
    await _audit(request, principal, "license.batch.deleted", batch_id)
