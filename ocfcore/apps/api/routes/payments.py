from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import (
    Principal,
    billing_contact,
    get_db,
    get_identity,
    get_payment_gateway,
    require_access,
    require_role,
)
from ocfcore.core.config import get_settings
from ocfcore.core.errors import WebhookSignatureError
from ocfcore.domain.models import BillingAddress, Invoice, PaymentMethod, SubscriptionPlan, UserSubscription
from ocfcore.services import plans as plans_service
from ocfcore.services import subscriptions as subscriptions_service
from ocfcore.services.audit import record_event
from ocfcore.services.auth.identity import IdentityClient
from ocfcore.services.auth.roles import ROLE_ADMINISTRATOR
from ocfcore.services.billing import payment_profile
from ocfcore.services.billing.pricing import calculate_pricing_preview
from ocfcore.services.billing.stripe_gateway import PRORATION_BEHAVIORS, StripeGateway
from ocfcore.services.billing.webhooks import WebhookProcessingError, handle_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class PricingTierModel(BaseModel):
    min_qty: int = Field(ge=1)
    max_qty: int | None = Field(default=None, ge=1)
    unit_amount: int = Field(ge=0)


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: int = 0
    currency: str = Field(default="eur", min_length=3, max_length=8)
    billing_interval: Literal["day", "week", "month", "year"] = "month"
    price_amount: int = Field(default=0, ge=0)
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None
    pricing_tiers: list[PricingTierModel] | None = None
    features: list[str] | None = None
    max_concurrent_users: int = Field(default=1, ge=-1)
    max_courses: int = Field(default=-1, ge=-1)
    max_lab_sessions: int = Field(default=-1, ge=-1)
    max_concurrent_terminals: int = Field(default=1, ge=-1)
    max_session_duration_minutes: int = Field(default=60, ge=-1)
    data_persistence_gb: int = Field(default=0, ge=0)
    allowed_templates: list[str] | None = None
    allowed_machine_sizes: list[str] | None = None
    required_role: str = "member"

    model_config = {"extra": "forbid"}


class PlanUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    priority: int | None = None
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None
    pricing_tiers: list[PricingTierModel] | None = None
    features: list[str] | None = None
    max_concurrent_users: int | None = Field(default=None, ge=-1)
    max_courses: int | None = Field(default=None, ge=-1)
    max_lab_sessions: int | None = Field(default=None, ge=-1)
    max_concurrent_terminals: int | None = Field(default=None, ge=-1)
    max_session_duration_minutes: int | None = Field(default=None, ge=-1)
    data_persistence_gb: int | None = Field(default=None, ge=0)
    allowed_templates: list[str] | None = None
    allowed_machine_sizes: list[str] | None = None
    required_role: str | None = None
    is_active: bool | None = None

    model_config = {"extra": "forbid"}


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str | None
    priority: int
    currency: str
    billing_interval: str
    price_amount: int
    stripe_price_id: str | None
    pricing_tiers: list[dict[str, Any]] | None
    features: list[str]
    max_concurrent_users: int
    max_courses: int
    max_lab_sessions: int
    max_concurrent_terminals: int
    max_session_duration_minutes: int
    data_persistence_gb: int
    allowed_templates: list[str]
    allowed_machine_sizes: list[str]
    required_role: str
    is_active: bool


class PricingPreviewRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class TierCostResponse(BaseModel):
    range: str
    quantity: int
    unit_price: int
    subtotal: int


class PricingPreviewResponse(BaseModel):
    plan_id: str
    plan_name: str
    currency: str
    total_quantity: int
    total_cost: int
    average_per_unit: float
    savings: int
    tiers: list[TierCostResponse]


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    success_url: str | None = None
    cancel_url: str | None = None
    quantity: int = Field(default=1, ge=1)
    bulk_purchase: bool = False
    group_id: str | None = None
    organization_id: str | None = None
    trial_days: int | None = Field(default=None, ge=1)


class CheckoutResponse(BaseModel):
    session_id: str | None
    url: str | None
    subscription_id: str | None = None


class PortalRequest(BaseModel):
    return_url: str | None = None


class PortalResponse(BaseModel):
    url: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str


class SubscriptionResponse(BaseModel):
    id: str
    subscription_plan_id: str
    plan_name: str | None
    status: str
    subscription_type: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_end: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    subscription_batch_id: str | None


class CancelSubscriptionRequest(BaseModel):
    at_period_end: bool = True


class UpgradeRequest(BaseModel):
    new_plan_id: str = Field(min_length=1)
    proration_behavior: str = "always_invoice"


class InvoiceResponse(BaseModel):
    id: str
    stripe_invoice_id: str
    amount: int
    currency: str
    status: str
    invoice_number: str | None
    invoice_date: datetime | None
    due_date: datetime | None
    paid_at: datetime | None
    stripe_hosted_url: str | None
    download_url: str | None


class PaymentMethodResponse(BaseModel):
    id: str
    type: str
    card_brand: str | None
    card_last4: str | None
    card_exp_month: int | None
    card_exp_year: int | None
    is_default: bool


class BillingAddressRequest(BaseModel):
    line1: str = Field(min_length=1)
    line2: str | None = None
    city: str = Field(min_length=1)
    state: str | None = None
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=2, max_length=2)
    set_default: bool = False


class BillingAddressResponse(BaseModel):
    id: str
    line1: str
    line2: str | None
    city: str
    state: str | None
    postal_code: str
    country: str
    is_default: bool


def _plan_response(plan: SubscriptionPlan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        priority=plan.priority,
        currency=plan.currency,
        billing_interval=plan.billing_interval,
        price_amount=plan.price_amount,
        stripe_price_id=plan.stripe_price_id,
        pricing_tiers=plan.pricing_tiers,
        features=list(plan.features or []),
        max_concurrent_users=plan.max_concurrent_users,
        max_courses=plan.max_courses,
        max_lab_sessions=plan.max_lab_sessions,
        max_concurrent_terminals=plan.max_concurrent_terminals,
        max_session_duration_minutes=plan.max_session_duration_minutes,
        data_persistence_gb=plan.data_persistence_gb,
        allowed_templates=list(plan.allowed_templates or []),
        allowed_machine_sizes=list(plan.allowed_machine_sizes or []),
        required_role=plan.required_role,
        is_active=plan.is_active,
    )


def _subscription_response(subscription: UserSubscription, plan: SubscriptionPlan | None) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        subscription_plan_id=subscription.subscription_plan_id,
        plan_name=plan.name if plan is not None else None,
        status=subscription.status,
        subscription_type=subscription.subscription_type,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        trial_end=subscription.trial_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        cancelled_at=subscription.cancelled_at,
        subscription_batch_id=subscription.subscription_batch_id,
    )


def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        stripe_invoice_id=invoice.stripe_invoice_id,
        amount=invoice.amount,
        currency=invoice.currency,
        status=invoice.status,
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        due_date=invoice.due_date,
        paid_at=invoice.paid_at,
        stripe_hosted_url=invoice.stripe_hosted_url,
        download_url=invoice.download_url,
    )


def _payment_method_response(method: PaymentMethod) -> PaymentMethodResponse:
    return PaymentMethodResponse(
        id=method.id,
        type=method.type,
        card_brand=method.card_brand,
        card_last4=method.card_last4,
        card_exp_month=method.card_exp_month,
        card_exp_year=method.card_exp_year,
        is_default=method.is_default,
    )


def _address_response(address: BillingAddress) -> BillingAddressResponse:
    return BillingAddressResponse(
        id=address.id,
        line1=address.line1,
        line2=address.line2,
        city=address.city,
        state=address.state,
        postal_code=address.postal_code,
        country=address.country,
        is_default=address.is_default,
    )


# Plan catalogue


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(db: AsyncSession = Depends(get_db)) -> list[PlanResponse]:
    return [_plan_response(plan) for plan in await plans_service.list_plans(db)]


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, db: AsyncSession = Depends(get_db)) -> PlanResponse:
    return _plan_response(await plans_service.get_plan(db, plan_id, active_only=True))


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    payload: PlanCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> PlanResponse:
    plan = await plans_service.create_plan(session=db, values=payload.model_dump(), gateway=gateway)
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="plan.created",
        outcome="success",
        resource_type="subscription_plan",
        resource_id=plan.id,
        request=request,
    )
    return _plan_response(plan)


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: str,
    payload: PlanUpdateRequest,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    plan = await plans_service.update_plan(session=db, plan_id=plan_id, values=payload.model_dump(exclude_unset=True))
    return _plan_response(plan)


@router.delete("/plans/{plan_id}", response_model=PlanResponse)
async def deactivate_plan(
    plan_id: str,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    return _plan_response(await plans_service.deactivate_plan(session=db, plan_id=plan_id))


@router.post("/pricing-preview", response_model=PricingPreviewResponse)
async def pricing_preview(payload: PricingPreviewRequest, db: AsyncSession = Depends(get_db)) -> PricingPreviewResponse:
    plan = await plans_service.get_plan(db, payload.plan_id, active_only=True)
    return PricingPreviewResponse(**asdict(calculate_pricing_preview(plan, payload.quantity)))


# Checkout and processor sessions


@router.post("/checkout-session", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout_session(
    payload: CheckoutRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    identity: IdentityClient = Depends(get_identity),
) -> CheckoutResponse:
    plan = await plans_service.get_plan(db, payload.plan_id, active_only=True)
    # Free plans bypass the processor and are active immediately.
    if plan.price_amount == 0 and not payload.bulk_purchase and payload.organization_id is None:
        subscription = await subscriptions_service.subscribe_free_plan(
            session=db, user_id=principal.user_id, plan=plan
        )
        return CheckoutResponse(session_id=None, url=None, subscription_id=subscription.id)
    settings = get_settings()
    email, name = await billing_contact(principal, identity)
    checkout = await subscriptions_service.start_checkout(
        session=db,
        gateway=gateway,
        user_id=principal.user_id,
        email=email,
        name=name,
        plan_id=plan.id,
        success_url=payload.success_url or f"{settings.frontend_url}/subscription/success",
        cancel_url=payload.cancel_url or f"{settings.frontend_url}/subscription/cancel",
        quantity=payload.quantity,
        bulk_purchase=payload.bulk_purchase,
        group_id=payload.group_id,
        organization_id=payload.organization_id,
        trial_days=payload.trial_days,
    )
    return CheckoutResponse(session_id=checkout.session_id, url=checkout.url)


@router.post("/portal-session", response_model=PortalResponse)
async def create_portal_session(
    payload: PortalRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> PortalResponse:
    return_url = payload.return_url or f"{get_settings().frontend_url}/billing"
    url = await subscriptions_service.create_portal_session(
        session=db, gateway=gateway, user_id=principal.user_id, return_url=return_url
    )
    return PortalResponse(url=url)


# The processor authenticates with its signature header, never with a bearer token.
@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> WebhookResponse:
    payload = await request.body()
    try:
        event = gateway.construct_event(payload, request.headers.get("Stripe-Signature"))
    except WebhookSignatureError as exc:
        logger.warning("webhook_signature_rejected error=%s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "WEBHOOK_SIGNATURE_INVALID", "message": "Invalid webhook signature"},
        ) from exc
    try:
        outcome = await handle_event(db, event)
    except WebhookProcessingError as exc:
        await db.rollback()
        logger.error("webhook_processing_failed event_id=%s error=%s", event.get("id"), exc)
        # 5xx makes the processor redeliver the event.
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "WEBHOOK_PROCESSING_FAILED", "message": "Event could not be processed"},
        ) from exc
    return WebhookResponse(received=True, event_id=outcome.event_id, outcome=outcome.outcome)


# Subscriptions


@router.get("/subscriptions", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[SubscriptionResponse]:
    rows = await subscriptions_service.list_user_subscriptions(db, principal.user_id)
    return [_subscription_response(subscription, plan) for subscription, plan in rows]


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    payload: CancelSubscriptionRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> SubscriptionResponse:
    subscription = await subscriptions_service.cancel_user_subscription(
        session=db,
        gateway=gateway,
        user_id=principal.user_id,
        subscription_id=subscription_id,
        at_period_end=payload.at_period_end,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="subscription.cancelled",
        outcome="success",
        resource_type="user_subscription",
        resource_id=subscription.id,
        request=request,
        metadata={"at_period_end": payload.at_period_end},
    )
    return _subscription_response(subscription, None)


@router.post("/subscriptions/upgrade", response_model=SubscriptionResponse)
async def upgrade_subscription(
    payload: UpgradeRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> SubscriptionResponse:
    if payload.proration_behavior not in PRORATION_BEHAVIORS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "BAD_REQUEST",
                "message": f"proration_behavior must be one of {', '.join(PRORATION_BEHAVIORS)}",
            },
        )
    subscription = await subscriptions_service.upgrade_user_plan(
        session=db,
        gateway=gateway,
        user_id=principal.user_id,
        new_plan_id=payload.new_plan_id,
        proration_behavior=payload.proration_behavior,
    )
    plan = await plans_service.get_plan(db, subscription.subscription_plan_id)
    return _subscription_response(subscription, plan)


# Invoices, payment methods and billing addresses


@router.get("/invoices", response_model=list[InvoiceResponse])
async def list_invoices(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[InvoiceResponse]:
    return [_invoice_response(invoice) for invoice in await payment_profile.list_invoices(db, principal.user_id)]


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    return _invoice_response(await payment_profile.get_invoice(db, principal.user_id, invoice_id))


@router.get("/payment-methods", response_model=list[PaymentMethodResponse])
async def list_payment_methods(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[PaymentMethodResponse]:
    methods = await payment_profile.list_payment_methods(db, principal.user_id)
    return [_payment_method_response(method) for method in methods]


@router.post("/payment-methods/{payment_method_id}/default", response_model=PaymentMethodResponse)
async def set_default_payment_method(
    payment_method_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> PaymentMethodResponse:
    method = await payment_profile.set_default_payment_method(
        session=db, gateway=gateway, user_id=principal.user_id, payment_method_id=payment_method_id
    )
    return _payment_method_response(method)


@router.delete("/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment_method(
    payment_method_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> None:
    await payment_profile.delete_payment_method(
        session=db, gateway=gateway, user_id=principal.user_id, payment_method_id=payment_method_id
    )


@router.get("/billing-addresses", response_model=list[BillingAddressResponse])
async def list_billing_addresses(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[BillingAddressResponse]:
    addresses = await payment_profile.list_billing_addresses(db, principal.user_id)
    return [_address_response(address) for address in addresses]


@router.post("/billing-addresses", response_model=BillingAddressResponse, status_code=status.HTTP_201_CREATED)
async def create_billing_address(
    payload: BillingAddressRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> BillingAddressResponse:
    address = await payment_profile.create_billing_address(
        session=db,
        user_id=principal.user_id,
        values=payload.model_dump(exclude={"set_default"}),
        make_default=payload.set_default,
    )
    return _address_response(address)


@router.post("/billing-addresses/{address_id}/default", response_model=BillingAddressResponse)
async def set_default_billing_address(
    address_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> BillingAddressResponse:
    address = await payment_profile.set_default_billing_address(
        session=db, user_id=principal.user_id, address_id=address_id
    )
    return _address_response(address)


@router.delete("/billing-addresses/{address_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_billing_address(
    address_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> None:
    await payment_profile.delete_billing_address(session=db, user_id=principal.user_id, address_id=address_id)
