from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import (
    Organization,
    OrganizationMember,
    OrganizationSubscription,
    SubscriptionPlan,
    UserSubscription,
)


STATUS_INCOMPLETE = "incomplete"
STATUS_PENDING_PAYMENT = "pending_payment"
STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_PAUSED = "paused"
STATUS_CANCELLED = "cancelled"
STATUS_INCOMPLETE_EXPIRED = "incomplete_expired"
STATUS_UNASSIGNED = "unassigned"

ENTITLED_STATUSES = (STATUS_ACTIVE, STATUS_TRIALING)
# Statuses after which a subscription can no longer become entitled.
TERMINAL_STATUSES = (STATUS_CANCELLED, STATUS_INCOMPLETE_EXPIRED)

SUBSCRIPTION_TYPE_PERSONAL = "personal"
SUBSCRIPTION_TYPE_ASSIGNED = "assigned"


def _period_open(column, now: datetime):
    return or_(column.is_(None), column > now)


async def list_entitled_user_subscriptions(
    session: AsyncSession,
    user_id: str,
    now: datetime,
) -> list[tuple[UserSubscription, SubscriptionPlan]]:
    # Personal and assigned subscriptions, highest plan priority first, newest first on ties.
    result = await session.execute(
        select(UserSubscription, SubscriptionPlan)
        .join(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.subscription_plan_id)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.status.in_(ENTITLED_STATUSES),
            _period_open(UserSubscription.current_period_end, now),
        )
        .order_by(
            SubscriptionPlan.priority.desc(),
            UserSubscription.created_at.desc(),
            UserSubscription.id.desc(),
        )
    )
    return [(row[0], row[1]) for row in result.all()]


async def get_primary_subscription(
    session: AsyncSession,
    user_id: str,
    now: datetime,
) -> tuple[UserSubscription, SubscriptionPlan] | None:
    rows = await list_entitled_user_subscriptions(session, user_id, now)
    return rows[0] if rows else None


async def list_user_subscriptions(session: AsyncSession, user_id: str) -> list[UserSubscription]:
    result = await session.execute(
        select(UserSubscription)
        .where(UserSubscription.user_id == user_id)
        .order_by(UserSubscription.created_at.desc(), UserSubscription.id)
    )
    return list(result.scalars().all())


async def get_user_subscription_by_stripe_id(
    session: AsyncSession,
    stripe_subscription_id: str,
) -> UserSubscription | None:
    # Seat licences share the batch's processor id; only personal rows are keyed by it.
    result = await session.execute(
        select(UserSubscription)
        .where(
            UserSubscription.stripe_subscription_id == stripe_subscription_id,
            UserSubscription.subscription_batch_id.is_(None),
        )
        .order_by(UserSubscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_entitled_organization_subscriptions(
    session: AsyncSession,
    user_id: str,
    now: datetime,
) -> list[tuple[Organization, OrganizationSubscription, SubscriptionPlan]]:
    # Organization subscriptions reachable through the user's active memberships.
    result = await session.execute(
        select(Organization, OrganizationSubscription, SubscriptionPlan)
        .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
        .join(OrganizationSubscription, OrganizationSubscription.organization_id == Organization.id)
        .join(SubscriptionPlan, SubscriptionPlan.id == OrganizationSubscription.subscription_plan_id)
        .where(
            OrganizationMember.user_id == user_id,
            OrganizationMember.is_active.is_(True),
            Organization.is_active.is_(True),
            OrganizationSubscription.status.in_(ENTITLED_STATUSES),
            _period_open(OrganizationSubscription.current_period_end, now),
        )
        .order_by(SubscriptionPlan.priority.desc(), OrganizationSubscription.created_at.desc())
    )
    return [(row[0], row[1], row[2]) for row in result.all()]


async def get_entitled_organization_subscription(
    session: AsyncSession,
    organization_id: str,
    now: datetime,
) -> tuple[OrganizationSubscription, SubscriptionPlan] | None:
    result = await session.execute(
        select(OrganizationSubscription, SubscriptionPlan)
        .join(SubscriptionPlan, SubscriptionPlan.id == OrganizationSubscription.subscription_plan_id)
        .where(
            OrganizationSubscription.organization_id == organization_id,
            OrganizationSubscription.status.in_(ENTITLED_STATUSES),
            _period_open(OrganizationSubscription.current_period_end, now),
        )
        .order_by(OrganizationSubscription.created_at.desc())
        .limit(1)
    )
    row = result.first()
    return (row[0], row[1]) if row is not None else None


async def get_open_organization_subscription(
    session: AsyncSession,
    organization_id: str,
) -> OrganizationSubscription | None:
    # Any non-terminal row blocks creating another one for the organization.
    result = await session.execute(
        select(OrganizationSubscription)
        .where(
            OrganizationSubscription.organization_id == organization_id,
            OrganizationSubscription.status.notin_(TERMINAL_STATUSES),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()
