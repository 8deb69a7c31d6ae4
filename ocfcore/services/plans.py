from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import SubscriptionPlan
from ocfcore.services.billing.stripe_gateway import StripeGateway


logger = logging.getLogger(__name__)

# Columns an administrator may set on create or update.
PLAN_FIELDS = (
    "name",
    "description",
    "priority",
    "currency",
    "billing_interval",
    "price_amount",
    "stripe_product_id",
    "stripe_price_id",
    "pricing_tiers",
    "features",
    "max_concurrent_users",
    "max_courses",
    "max_lab_sessions",
    "max_concurrent_terminals",
    "max_session_duration_minutes",
    "data_persistence_gb",
    "allowed_templates",
    "allowed_machine_sizes",
    "required_role",
    "is_active",
)


def _plan_not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "PLAN_NOT_FOUND", "message": "Subscription plan not found"},
    )


async def list_plans(session: AsyncSession, *, include_inactive: bool = False) -> list[SubscriptionPlan]:
    stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.priority, SubscriptionPlan.price_amount)
    if not include_inactive:
        stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_plan(session: AsyncSession, plan_id: str, *, active_only: bool = False) -> SubscriptionPlan:
    plan = await session.get(SubscriptionPlan, plan_id)
    if plan is None or (active_only and not plan.is_active):
        raise _plan_not_found_error()
    return plan


async def get_plan_by_stripe_price(session: AsyncSession, price_id: str) -> SubscriptionPlan | None:
    result = await session.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.stripe_price_id == price_id).limit(1)
    )
    return result.scalar_one_or_none()


async def create_plan(
    *,
    session: AsyncSession,
    values: dict[str, Any],
    gateway: StripeGateway | None = None,
) -> SubscriptionPlan:
    """Create a catalogue entry.

    Paid plans without a processor price get a product and price created at
    the processor first, so checkout can reference them immediately.
    """
    fields = {key: value for key, value in values.items() if key in PLAN_FIELDS}
    plan = SubscriptionPlan(**fields)
    price_amount = int(fields.get("price_amount") or 0)
    if price_amount > 0 and not fields.get("stripe_price_id") and gateway is not None:
        product_id, price_id = await gateway.create_product_and_price(
            name=fields["name"],
            description=fields.get("description"),
            amount=price_amount,
            currency=fields.get("currency") or "eur",
            interval=fields.get("billing_interval") or "month",
        )
        plan.stripe_product_id = product_id
        plan.stripe_price_id = price_id
    session.add(plan)
    await session.commit()
    logger.info("subscription_plan_created plan_id=%s price_amount=%s", plan.id, price_amount)
    return plan


async def update_plan(*, session: AsyncSession, plan_id: str, values: dict[str, Any]) -> SubscriptionPlan:
    # Limit changes only reach existing metric rows when a subscription changes plan.
    plan = await get_plan(session, plan_id)
    for key, value in values.items():
        if key in PLAN_FIELDS:
            setattr(plan, key, value)
    await session.commit()
    return plan


async def deactivate_plan(*, session: AsyncSession, plan_id: str) -> SubscriptionPlan:
    # Plans are never hard-deleted while subscriptions may still reference them.
    plan = await get_plan(session, plan_id)
    plan.is_active = False
    await session.commit()
    logger.info("subscription_plan_deactivated plan_id=%s", plan_id)
    return plan
