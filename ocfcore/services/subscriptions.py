from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.errors import PaymentProcessorError
from ocfcore.domain.models import Organization, OrganizationSubscription, SubscriptionPlan, UserSubscription
from ocfcore.persistence.repos.subscriptions import (
    ENTITLED_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    SUBSCRIPTION_TYPE_ASSIGNED,
    SUBSCRIPTION_TYPE_PERSONAL,
    get_entitled_organization_subscription,
    get_open_organization_subscription,
    get_primary_subscription,
)
from ocfcore.services.auth.tokens import as_utc
from ocfcore.services.billing.stripe_gateway import CheckoutSession, StripeGateway
from ocfcore.services.organizations import get_organization
from ocfcore.services.plans import get_plan
from ocfcore.services.terminals import terminate_user_terminals
from ocfcore.services.usage import initialize_usage_metrics, update_limits_for_plan


logger = logging.getLogger(__name__)

FREE_PLAN_PERIOD = timedelta(days=365)
_INTERVAL_PERIODS = {
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _upstream_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "UPSTREAM_ERROR", "message": message},
    )


def _subscription_not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "SUBSCRIPTION_NOT_FOUND", "message": "Subscription not found"},
    )


def interval_period(interval: str) -> timedelta:
    return _INTERVAL_PERIODS.get(interval, _INTERVAL_PERIODS["month"])


async def get_personal_subscription(
    session: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> tuple[UserSubscription, SubscriptionPlan] | None:
    # Highest-priority entitled subscription the user holds on their own account.
    resolved_now = now or _utc_now()
    result = await session.execute(
        select(UserSubscription, SubscriptionPlan)
        .join(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.subscription_plan_id)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.subscription_type == SUBSCRIPTION_TYPE_PERSONAL,
            UserSubscription.status.in_(ENTITLED_STATUSES),
        )
        .order_by(SubscriptionPlan.priority.desc(), UserSubscription.created_at.desc())
    )
    for subscription, plan in result.all():
        end = as_utc(subscription.current_period_end)
        if end is None or end > resolved_now:
            return subscription, plan
    return None


async def list_user_subscriptions(
    session: AsyncSession, user_id: str
) -> list[tuple[UserSubscription, SubscriptionPlan]]:
    result = await session.execute(
        select(UserSubscription, SubscriptionPlan)
        .join(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.subscription_plan_id)
        .where(UserSubscription.user_id == user_id)
        .order_by(UserSubscription.created_at.desc())
    )
    return [(subscription, plan) for subscription, plan in result.all()]


async def get_user_subscription(session: AsyncSession, user_id: str, subscription_id: str) -> UserSubscription:
    subscription = await session.get(UserSubscription, subscription_id)
    if subscription is None or subscription.user_id != user_id:
        raise _subscription_not_found_error()
    return subscription


async def subscribe_free_plan(
    *,
    session: AsyncSession,
    user_id: str,
    plan: SubscriptionPlan,
    now: datetime | None = None,
) -> UserSubscription:
    """Activate a zero-priced plan without the payment processor.

    The row is active for one year and gets one usage metric per enabled
    family. A user already entitled to the same plan keeps that row.
    """
    if plan.price_amount != 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "PLAN_REQUIRES_PAYMENT", "message": "Plan requires checkout"},
        )
    resolved_now = now or _utc_now()
    existing = await get_personal_subscription(session, user_id, resolved_now)
    if existing is not None:
        if existing[1].id == plan.id:
            return existing[0]
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "SUBSCRIPTION_EXISTS", "message": "User already has an active subscription"},
        )
    subscription = UserSubscription(
        user_id=user_id,
        subscription_plan_id=plan.id,
        status=STATUS_ACTIVE,
        subscription_type=SUBSCRIPTION_TYPE_PERSONAL,
        current_period_start=resolved_now,
        current_period_end=resolved_now + FREE_PLAN_PERIOD,
        created_at=resolved_now,
    )
    session.add(subscription)
    await session.flush()
    await initialize_usage_metrics(session, user_id=user_id, subscription=subscription, plan=plan, now=resolved_now)
    await session.commit()
    logger.info("free_subscription_created user_id=%s plan_id=%s", user_id, plan.id)
    return subscription


async def resolve_customer_id(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    user_id: str,
    email: str,
    name: str | None,
) -> str:
    # Reuse the processor customer recorded on earlier subscriptions before asking the processor.
    result = await session.execute(
        select(UserSubscription.stripe_customer_id)
        .where(UserSubscription.user_id == user_id, UserSubscription.stripe_customer_id.is_not(None))
        .order_by(UserSubscription.created_at.desc())
        .limit(1)
    )
    known = result.scalar_one_or_none()
    if known:
        return known
    try:
        existing = await gateway.find_customer(email=email)
        if existing:
            return existing
        return await gateway.create_customer(email=email, name=name, metadata={"user_id": user_id})
    except PaymentProcessorError as exc:
        raise _upstream_error("Payment processor unavailable") from exc


async def start_checkout(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    user_id: str,
    email: str,
    name: str | None,
    plan_id: str,
    success_url: str,
    cancel_url: str,
    quantity: int = 1,
    bulk_purchase: bool = False,
    group_id: str | None = None,
    organization_id: str | None = None,
    trial_days: int | None = None,
) -> CheckoutSession:
    """Open a processor checkout for a paid plan.

    No local row is written: the subscription webhook creates it with the
    processor's status. Metadata carries everything that webhook needs. A
    free subscription the user currently holds is recorded for replacement.
    """
    plan = await get_plan(session, plan_id, active_only=True)
    if plan.price_amount == 0 or not plan.stripe_price_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "PLAN_NOT_PURCHASABLE", "message": "Plan has no processor price"},
        )
    if quantity < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "quantity must be at least 1"},
        )
    metadata: dict[str, str] = {
        "user_id": user_id,
        "subscription_plan_id": plan.id,
        "bulk_purchase": "true" if bulk_purchase else "false",
        "quantity": str(quantity),
    }
    if group_id:
        metadata["group_id"] = group_id
    if organization_id:
        await get_organization(session, organization_id)
        if await get_open_organization_subscription(session, organization_id) is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "SUBSCRIPTION_EXISTS", "message": "Organization already has a subscription"},
            )
        metadata["organization_id"] = organization_id
    if not bulk_purchase and organization_id is None:
        current = await get_personal_subscription(session, user_id)
        if current is not None and current[1].price_amount == 0:
            metadata["replace_subscription_id"] = current[0].id

    customer_id = await resolve_customer_id(
        session=session, gateway=gateway, user_id=user_id, email=email, name=name
    )
    try:
        checkout = await gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=plan.stripe_price_id,
            quantity=quantity,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            trial_days=trial_days,
        )
    except PaymentProcessorError as exc:
        raise _upstream_error("Could not create checkout session") from exc
    logger.info(
        "checkout_session_created user_id=%s plan_id=%s quantity=%s bulk=%s",
        user_id,
        plan.id,
        quantity,
        bulk_purchase,
    )
    return checkout


async def create_portal_session(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    user_id: str,
    return_url: str,
) -> str:
    result = await session.execute(
        select(UserSubscription.stripe_customer_id)
        .where(UserSubscription.user_id == user_id, UserSubscription.stripe_customer_id.is_not(None))
        .order_by(UserSubscription.created_at.desc())
        .limit(1)
    )
    customer_id = result.scalar_one_or_none()
    if not customer_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CUSTOMER_NOT_FOUND", "message": "No billing account for this user"},
        )
    try:
        return await gateway.create_portal_session(customer_id=customer_id, return_url=return_url)
    except PaymentProcessorError as exc:
        raise _upstream_error("Could not create portal session") from exc


async def cancel_user_subscription(
    *,
    session: AsyncSession,
    gateway: StripeGateway,
    user_id: str,
    subscription_id: str,
    at_period_end: bool = True,
    now: datetime | None = None,
) -> UserSubscription:
    """Cancel a personal subscription.

    Processor-backed rows are cancelled at the processor first; immediate
    cancellation is reflected locally right away and stops live sessions.
    Free rows are always cancelled immediately.
    """
    resolved_now = now or _utc_now()
    subscription = await get_user_subscription(session, user_id, subscription_id)
    if subscription.subscription_type == SUBSCRIPTION_TYPE_ASSIGNED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Assigned licences are managed by their purchaser"},
        )
    if subscription.status == STATUS_CANCELLED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "SUBSCRIPTION_ALREADY_CANCELLED", "message": "Subscription is already cancelled"},
        )
    if subscription.stripe_subscription_id:
        try:
            await gateway.cancel_subscription(
                subscription_id=subscription.stripe_subscription_id, at_period_end=at_period_end
            )
        except PaymentProcessorError as exc:
            raise _upstream_error("Could not cancel subscription") from exc
    else:
        at_period_end = False

    if at_period_end:
        subscription.cancel_at_period_end = True
    else:
        subscription.status = STATUS_CANCELLED
        subscription.cancelled_at = resolved_now
        await terminate_user_terminals(session, user_id=user_id, reason="subscription_cancelled", now=resolved_now)
    await session.commit()
    logger.info(
        "subscription_cancelled subscription_id=%s user_id=%s at_period_end=%s",
        subscription.id,
        user_id,
        at_period_end,
    )
    return subscription


async def change_subscription_plan(
    session: AsyncSession,
    *,
    subscription: UserSubscription,
    plan: SubscriptionPlan,
    now: datetime | None = None,
) -> None:
    # Plan switch and limit rewrite share the caller's transaction.
    subscription.subscription_plan_id = plan.id
    await session.flush()
    if subscription.user_id:
        await update_limits_for_plan(
            session, user_id=subscription.user_id, subscription=subscription, plan=plan, now=now
        )


async def upgrade_user_plan(
    *,
    session: AsyncSession,
    gateway: StripeGateway | None,
    user_id: str,
    new_plan_id: str,
    proration_behavior: str = "always_invoice",
    now: datetime | None = None,
) -> UserSubscription:
    """Move the user's primary subscription to another plan.

    Processor-backed subscriptions are repriced at the processor first, then
    the local row and every metric limit are rewritten in one commit.
    """
    resolved_now = now or _utc_now()
    primary = await get_primary_subscription(session, user_id, resolved_now)
    if primary is None:
        raise _subscription_not_found_error()
    subscription, current_plan = primary
    if subscription.subscription_type == SUBSCRIPTION_TYPE_ASSIGNED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Assigned licences cannot change plan"},
        )
    new_plan = await get_plan(session, new_plan_id, active_only=True)
    if new_plan.id == current_plan.id:
        return subscription
    if not subscription.stripe_subscription_id and new_plan.price_amount > 0:
        # Paid plans are only entitled once the processor confirms payment; go through checkout.
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "PLAN_REQUIRES_PAYMENT",
                "message": "Upgrading to a paid plan requires a checkout session",
            },
        )
    if subscription.stripe_subscription_id:
        if gateway is None or not new_plan.stripe_price_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "PLAN_NOT_PURCHASABLE", "message": "Plan has no processor price"},
            )
        try:
            await gateway.update_subscription_price(
                subscription_id=subscription.stripe_subscription_id,
                price_id=new_plan.stripe_price_id,
                proration_behavior=proration_behavior,
            )
        except PaymentProcessorError as exc:
            raise _upstream_error("Could not change subscription plan") from exc
    await change_subscription_plan(session, subscription=subscription, plan=new_plan, now=resolved_now)
    await session.commit()
    logger.info(
        "subscription_plan_changed subscription_id=%s from_plan=%s to_plan=%s",
        subscription.id,
        current_plan.id,
        new_plan.id,
    )
    return subscription


async def assign_organization_plan(
    *,
    session: AsyncSession,
    organization_id: str,
    plan_id: str,
    quantity: int = 1,
    now: datetime | None = None,
) -> OrganizationSubscription:
    # Administrator override: active immediately, no processor involvement.
    resolved_now = now or _utc_now()
    organization = await get_organization(session, organization_id)
    plan = await get_plan(session, plan_id, active_only=True)
    if await get_open_organization_subscription(session, organization.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "SUBSCRIPTION_EXISTS", "message": "Organization already has a subscription"},
        )
    subscription = OrganizationSubscription(
        organization_id=organization.id,
        subscription_plan_id=plan.id,
        quantity=max(quantity, 1),
        status=STATUS_ACTIVE,
        current_period_start=resolved_now,
        current_period_end=resolved_now + interval_period(plan.billing_interval),
    )
    session.add(subscription)
    organization.subscription_plan_id = plan.id
    await session.commit()
    logger.info("organization_plan_assigned organization_id=%s plan_id=%s", organization.id, plan.id)
    return subscription


async def get_organization_subscription(
    session: AsyncSession,
    organization_id: str,
) -> tuple[OrganizationSubscription, SubscriptionPlan] | None:
    return await get_entitled_organization_subscription(session, organization_id, _utc_now())


async def cancel_organization_subscription(
    *,
    session: AsyncSession,
    gateway: StripeGateway | None,
    organization_id: str,
    now: datetime | None = None,
) -> OrganizationSubscription:
    resolved_now = now or _utc_now()
    subscription = await get_open_organization_subscription(session, organization_id)
    if subscription is None:
        raise _subscription_not_found_error()
    if subscription.stripe_subscription_id and gateway is not None:
        try:
            await gateway.cancel_subscription(subscription_id=subscription.stripe_subscription_id, at_period_end=False)
        except PaymentProcessorError as exc:
            raise _upstream_error("Could not cancel subscription") from exc
    subscription.status = STATUS_CANCELLED
    subscription.cancelled_at = resolved_now
    organization = await session.get(Organization, organization_id)
    if organization is not None:
        organization.subscription_plan_id = None
    await session.commit()
    logger.info("organization_subscription_cancelled organization_id=%s", organization_id)
    return subscription
