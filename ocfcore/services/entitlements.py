from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.config import Settings
from ocfcore.domain.models import SubscriptionPlan
from ocfcore.persistence.repos.subscriptions import (
    list_entitled_organization_subscriptions,
    list_entitled_user_subscriptions,
)
from ocfcore.services.authz.grants import API_PREFIX
from ocfcore.services.usage import (
    FEATURE_TERMINALS,
    METRIC_CONCURRENT_TERMINALS,
    METRIC_FAMILIES,
    UsageLimitCheck,
    check_usage,
    feature_flags,
)


logger = logging.getLogger(__name__)

# Route templates as registered on the router, keyed by (method, path).
ROUTE_FEATURES: dict[tuple[str, str], str] = {
    ("POST", f"{API_PREFIX}/terminals"): FEATURE_TERMINALS,
}
ROUTE_QUOTAS: dict[tuple[str, str], str] = {
    ("POST", f"{API_PREFIX}/terminals"): METRIC_CONCURRENT_TERMINALS,
}


@dataclass(frozen=True)
class Entitlements:
    # Gating capabilities (flag names) and the primary plan that supplies numeric limits.
    capabilities: frozenset[str]
    primary_plan: SubscriptionPlan | None
    has_personal_subscription: bool
    has_organization_subscription: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _feature_not_enabled_error(feature: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "FEATURE_NOT_ENABLED",
            "message": "Feature not enabled for your plan",
            "feature": feature,
        },
    )


def _quota_exceeded_error(metric_type: str, check: UsageLimitCheck) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "code": "QUOTA_EXCEEDED",
            "message": check.message or "Usage limit exceeded",
            "metric_type": metric_type,
            "current_usage": check.current_usage,
            "limit": check.limit,
        },
    )


def plan_capabilities(plan: SubscriptionPlan, settings: Settings | None = None) -> set[str]:
    """Capabilities a plan unlocks under the current feature-flag map.

    A family counts when its flag is on and the plan's limit for it is not
    zero. The plan's ``features`` list is display text and plays no part.
    """
    flags = feature_flags(settings)
    capabilities: set[str] = set()
    for family in METRIC_FAMILIES:
        if not flags.get(family.feature, False):
            continue
        limit = getattr(plan, family.plan_limit_attr)
        if limit is None or int(limit) != 0:
            capabilities.add(family.feature)
    return capabilities


async def get_entitlements(
    session: AsyncSession,
    user_id: str,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> Entitlements:
    resolved_now = now or _utc_now()
    user_rows = await list_entitled_user_subscriptions(session, user_id, resolved_now)
    org_rows = await list_entitled_organization_subscriptions(session, user_id, resolved_now)
    capabilities: set[str] = set()
    for _subscription, plan in user_rows:
        capabilities |= plan_capabilities(plan, settings)
    for _organization, _org_subscription, plan in org_rows:
        capabilities |= plan_capabilities(plan, settings)
    return Entitlements(
        capabilities=frozenset(capabilities),
        primary_plan=user_rows[0][1] if user_rows else None,
        has_personal_subscription=bool(user_rows),
        has_organization_subscription=bool(org_rows),
    )


async def require_feature(
    *,
    session: AsyncSession,
    user_id: str,
    feature: str,
    now: datetime | None = None,
) -> None:
    entitlements = await get_entitlements(session, user_id, now=now)
    if feature not in entitlements.capabilities:
        logger.info("feature_denied user_id=%s feature=%s", user_id, feature)
        raise _feature_not_enabled_error(feature)


async def require_quota(
    *,
    session: AsyncSession,
    user_id: str,
    metric_type: str,
    increment: int = 1,
    now: datetime | None = None,
) -> UsageLimitCheck:
    # Read-only; the operation increments the counter itself once it succeeds.
    check = await check_usage(session, user_id=user_id, metric_type=metric_type, increment=increment, now=now)
    if not check.allowed:
        logger.info(
            "quota_denied user_id=%s metric=%s current=%s limit=%s",
            user_id,
            metric_type,
            check.current_usage,
            check.limit,
        )
        raise _quota_exceeded_error(metric_type, check)
    return check


async def enforce_route_entitlements(
    *,
    session: AsyncSession,
    user_id: str,
    method: str,
    route_path: str,
    now: datetime | None = None,
) -> None:
    key = (method.upper(), route_path)
    feature = ROUTE_FEATURES.get(key)
    if feature is not None:
        await require_feature(session=session, user_id=user_id, feature=feature, now=now)
    metric_type = ROUTE_QUOTAS.get(key)
    if metric_type is not None:
        await require_quota(session=session, user_id=user_id, metric_type=metric_type, now=now)
