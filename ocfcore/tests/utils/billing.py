from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from ocfcore.domain.models import SubscriptionPlan, UserSubscription
from ocfcore.persistence.db import SessionLocal


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_test_plan(**overrides: Any) -> SubscriptionPlan:
    # Paid monthly plan with one terminal unless a test says otherwise.
    values: dict[str, Any] = {
        "name": "Standard",
        "priority": 10,
        "currency": "eur",
        "billing_interval": "month",
        "price_amount": 1200,
        "stripe_product_id": "prod_standard",
        "stripe_price_id": "price_standard",
        "features": ["terminals"],
        "max_concurrent_terminals": 1,
    }
    values.update(overrides)
    async with SessionLocal() as session:
        plan = SubscriptionPlan(**values)
        session.add(plan)
        await session.commit()
        return plan


async def create_test_subscription(
    *,
    user_id: str,
    plan: SubscriptionPlan,
    status: str = "active",
    **overrides: Any,
) -> UserSubscription:
    now = _utc_now()
    values: dict[str, Any] = {
        "user_id": user_id,
        "subscription_plan_id": plan.id,
        "status": status,
        "subscription_type": "personal",
        "current_period_start": now - timedelta(days=1),
        "current_period_end": now + timedelta(days=29),
        "stripe_customer_id": "cus_seed",
    }
    values.update(overrides)
    async with SessionLocal() as session:
        subscription = UserSubscription(**values)
        session.add(subscription)
        await session.commit()
        return subscription
