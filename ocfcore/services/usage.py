from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.core.config import Settings, get_settings
from ocfcore.domain.models import SubscriptionPlan, UsageMetric, UserSubscription
from ocfcore.persistence.db import for_update
from ocfcore.persistence.repos.subscriptions import get_primary_subscription
from ocfcore.persistence.repos.terminals import count_active_terminals
from ocfcore.services.auth.tokens import as_utc


logger = logging.getLogger(__name__)

METRIC_CONCURRENT_TERMINALS = "concurrent_terminals"
METRIC_COURSES_CREATED = "courses_created"
METRIC_LAB_SESSIONS = "lab_sessions"

FEATURE_TERMINALS = "terminals"
FEATURE_COURSES = "courses"
FEATURE_LABS = "labs"

UNLIMITED = -1


@dataclass(frozen=True)
class MetricFamily:
    # Ties a feature flag to the metric it meters and the plan column bounding it.
    feature: str
    metric_type: str
    plan_limit_attr: str


METRIC_FAMILIES: tuple[MetricFamily, ...] = (
    MetricFamily(FEATURE_COURSES, METRIC_COURSES_CREATED, "max_courses"),
    MetricFamily(FEATURE_LABS, METRIC_LAB_SESSIONS, "max_lab_sessions"),
    MetricFamily(FEATURE_TERMINALS, METRIC_CONCURRENT_TERMINALS, "max_concurrent_terminals"),
)

_FAMILY_BY_METRIC = {family.metric_type: family for family in METRIC_FAMILIES}

# Metrics whose truth is a live row count rather than the stored counter.
LiveCounter = Callable[[AsyncSession, str], Awaitable[int]]
LIVE_COUNTERS: dict[str, LiveCounter] = {
    METRIC_CONCURRENT_TERMINALS: count_active_terminals,
}

NO_SUBSCRIPTION_MESSAGE = "No active subscription - upgrade required"


@dataclass(frozen=True)
class UsageLimitCheck:
    allowed: bool
    current_usage: int
    limit: int
    remaining: int
    message: str | None = None


@dataclass(frozen=True)
class UsageMetricView:
    metric_type: str
    subscription_id: str
    current_value: int
    limit_value: int
    usage_percent: float | None
    period_start: datetime
    period_end: datetime
    last_updated: datetime | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    # Calendar month in UTC: [first day 00:00, first day of next month 00:00).
    start = now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def feature_flags(settings: Settings | None = None) -> dict[str, bool]:
    resolved = settings or get_settings()
    return {
        FEATURE_COURSES: resolved.feature_courses_enabled,
        FEATURE_LABS: resolved.feature_labs_enabled,
        FEATURE_TERMINALS: resolved.feature_terminals_enabled,
    }


def enabled_metric_families(settings: Settings | None = None) -> list[MetricFamily]:
    flags = feature_flags(settings)
    return [family for family in METRIC_FAMILIES if flags.get(family.feature, False)]


def metric_family(metric_type: str) -> MetricFamily | None:
    return _FAMILY_BY_METRIC.get(metric_type)


def plan_limit(plan: SubscriptionPlan, metric_type: str) -> int:
    family = _FAMILY_BY_METRIC.get(metric_type)
    if family is None:
        return UNLIMITED
    value = getattr(plan, family.plan_limit_attr)
    return UNLIMITED if value is None else int(value)


def _remaining(limit: int, current: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(limit - current, 0)


def _usage_percent(limit: int, current: int) -> float | None:
    if limit <= 0:
        return None
    return round(current * 100.0 / limit, 2)


async def live_value(session: AsyncSession, user_id: str, metric_type: str) -> int | None:
    counter = LIVE_COUNTERS.get(metric_type)
    if counter is None:
        return None
    return await counter(session, user_id)


async def _get_metric(
    session: AsyncSession,
    *,
    user_id: str,
    subscription_id: str,
    metric_type: str,
    lock: bool = False,
) -> UsageMetric | None:
    stmt = select(UsageMetric).where(
        UsageMetric.user_id == user_id,
        UsageMetric.subscription_id == subscription_id,
        UsageMetric.metric_type == metric_type,
    )
    # Row lock serialises concurrent increments.
    if lock:
        stmt = for_update(stmt)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _roll_period(metric: UsageMetric, now: datetime) -> None:
    # Lazily start a new calendar month; counted metrics restart from zero.
    period_end = as_utc(metric.period_end)
    if period_end is not None and period_end > now:
        return
    metric.period_start, metric.period_end = month_bounds(now)
    if metric.metric_type not in LIVE_COUNTERS:
        metric.current_value = 0


async def initialize_usage_metrics(
    session: AsyncSession,
    *,
    user_id: str,
    subscription: UserSubscription,
    plan: SubscriptionPlan,
    now: datetime | None = None,
) -> list[UsageMetric]:
    """Create one metric row per enabled family for a subscription.

    Existing rows are left untouched so repeated calls are harmless. Live
    metrics start from the current live count.
    """
    resolved_now = now or _utc_now()
    period_start, period_end = month_bounds(resolved_now)
    created: list[UsageMetric] = []
    for family in enabled_metric_families():
        existing = await _get_metric(
            session, user_id=user_id, subscription_id=subscription.id, metric_type=family.metric_type
        )
        if existing is not None:
            continue
        current = await live_value(session, user_id, family.metric_type)
        metric = UsageMetric(
            user_id=user_id,
            subscription_id=subscription.id,
            metric_type=family.metric_type,
            current_value=current or 0,
            limit_value=plan_limit(plan, family.metric_type),
            period_start=period_start,
            period_end=period_end,
            last_updated=resolved_now,
        )
        session.add(metric)
        created.append(metric)
    await session.flush()
    return created


async def check_usage(
    session: AsyncSession,
    *,
    user_id: str,
    metric_type: str,
    increment: int = 1,
    now: datetime | None = None,
) -> UsageLimitCheck:
    """Answer whether ``increment`` more units fit under the primary plan's limit.

    Live metrics use the live row count, never the stored counter. Nothing
    is written; callers increment after the guarded operation succeeds.
    """
    resolved_now = now or _utc_now()
    primary = await get_primary_subscription(session, user_id, resolved_now)
    if primary is None:
        return UsageLimitCheck(
            allowed=False,
            current_usage=0,
            limit=0,
            remaining=0,
            message=NO_SUBSCRIPTION_MESSAGE,
        )
    subscription, plan = primary
    metric = await _get_metric(
        session, user_id=user_id, subscription_id=subscription.id, metric_type=metric_type
    )
    limit = int(metric.limit_value) if metric is not None else plan_limit(plan, metric_type)

    current = await live_value(session, user_id, metric_type)
    if current is None:
        current = 0
        if metric is not None:
            period_end = as_utc(metric.period_end)
            if period_end is not None and period_end > resolved_now:
                current = int(metric.current_value)

    allowed = limit == UNLIMITED or current + increment <= limit
    message = None if allowed else f"Usage limit exceeded. Current: {current}, Limit: {limit}"
    return UsageLimitCheck(
        allowed=allowed,
        current_usage=current,
        limit=limit,
        remaining=_remaining(limit, current),
        message=message,
    )


async def increment_usage(
    session: AsyncSession,
    *,
    user_id: str,
    metric_type: str,
    delta: int = 1,
    now: datetime | None = None,
) -> UsageMetric | None:
    """Apply ``delta`` to the primary subscription's counter under a row lock.

    Missing rows are created lazily from the plan quota. Live metrics record
    the live count instead of adding; counters never drop below zero. The
    caller owns the commit.
    """
    resolved_now = now or _utc_now()
    primary = await get_primary_subscription(session, user_id, resolved_now)
    if primary is None:
        logger.info("usage_increment_skipped_no_subscription user_id=%s metric=%s", user_id, metric_type)
        return None
    subscription, plan = primary
    metric = await _get_metric(
        session, user_id=user_id, subscription_id=subscription.id, metric_type=metric_type, lock=True
    )
    if metric is None:
        period_start, period_end = month_bounds(resolved_now)
        metric = UsageMetric(
            user_id=user_id,
            subscription_id=subscription.id,
            metric_type=metric_type,
            current_value=0,
            limit_value=plan_limit(plan, metric_type),
            period_start=period_start,
            period_end=period_end,
        )
        session.add(metric)
    else:
        _roll_period(metric, resolved_now)

    live = await live_value(session, user_id, metric_type)
    if live is not None:
        metric.current_value = live
    else:
        metric.current_value = max(int(metric.current_value or 0) + delta, 0)
    metric.last_updated = resolved_now
    await session.flush()
    return metric


async def decrement_usage(
    session: AsyncSession,
    *,
    user_id: str,
    metric_type: str,
    delta: int = 1,
    now: datetime | None = None,
) -> UsageMetric | None:
    return await increment_usage(session, user_id=user_id, metric_type=metric_type, delta=-delta, now=now)


async def reconcile_live_metric(
    session: AsyncSession,
    *,
    user_id: str,
    metric_type: str,
    now: datetime | None = None,
) -> int:
    # Write the live count into every stored row of the metric for this user.
    live = await live_value(session, user_id, metric_type)
    if live is None:
        return 0
    result = await session.execute(
        update(UsageMetric)
        .where(UsageMetric.user_id == user_id, UsageMetric.metric_type == metric_type)
        .values(current_value=live, last_updated=now or _utc_now())
        .execution_options(synchronize_session="fetch")
    )
    return int(result.rowcount or 0)


async def get_user_usage_metrics(
    session: AsyncSession,
    *,
    user_id: str,
    now: datetime | None = None,
) -> list[UsageMetricView]:
    """Return the primary subscription's counters with live values substituted.

    A stale stored value is corrected in the session so the next commit
    persists the reconciled figure.
    """
    resolved_now = now or _utc_now()
    primary = await get_primary_subscription(session, user_id, resolved_now)
    if primary is None:
        return []
    subscription, _plan = primary
    result = await session.execute(
        select(UsageMetric)
        .where(UsageMetric.user_id == user_id, UsageMetric.subscription_id == subscription.id)
        .order_by(UsageMetric.metric_type)
    )
    views: list[UsageMetricView] = []
    for metric in result.scalars().all():
        current = int(metric.current_value)
        live = await live_value(session, user_id, metric.metric_type)
        if live is not None:
            if live != current:
                logger.info(
                    "usage_metric_reconciled user_id=%s metric=%s stored=%s live=%s",
                    user_id,
                    metric.metric_type,
                    current,
                    live,
                )
                metric.current_value = live
            current = live
        else:
            period_end = as_utc(metric.period_end)
            if period_end is not None and period_end <= resolved_now:
                current = 0
        limit = int(metric.limit_value)
        views.append(
            UsageMetricView(
                metric_type=metric.metric_type,
                subscription_id=metric.subscription_id,
                current_value=current,
                limit_value=limit,
                usage_percent=_usage_percent(limit, current),
                period_start=as_utc(metric.period_start),
                period_end=as_utc(metric.period_end),
                last_updated=as_utc(metric.last_updated),
            )
        )
    return views


async def update_limits_for_plan(
    session: AsyncSession,
    *,
    user_id: str,
    subscription: UserSubscription,
    plan: SubscriptionPlan,
    now: datetime | None = None,
) -> None:
    """Rewrite every metric limit of a subscription for a new plan.

    A single CASE-by-metric-type update keeps the rewrite atomic with the
    caller's subscription change. Rows of families that are now disabled
    are deleted and missing families are initialised.
    """
    enabled = enabled_metric_families()
    limits = {family.metric_type: plan_limit(plan, family.metric_type) for family in enabled}
    if limits:
        await session.execute(
            update(UsageMetric)
            .where(UsageMetric.subscription_id == subscription.id)
            .values(
                limit_value=case(limits, value=UsageMetric.metric_type, else_=UsageMetric.limit_value),
                last_updated=now or _utc_now(),
            )
            .execution_options(synchronize_session="fetch")
        )
    enabled_types = [family.metric_type for family in enabled]
    await session.execute(
        delete(UsageMetric)
        .where(
            UsageMetric.subscription_id == subscription.id,
            UsageMetric.metric_type.notin_(enabled_types),
        )
        .execution_options(synchronize_session="fetch")
    )
    await initialize_usage_metrics(session, user_id=user_id, subscription=subscription, plan=plan, now=now)


async def reset_monthly_usage(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Restart counted metrics for the current calendar month.

    With ``user_id`` every counted metric of that user is reset; without it
    only rows whose period has ended are rolled. Live metrics are skipped
    since their value is never accumulated.
    """
    resolved_now = now or _utc_now()
    period_start, period_end = month_bounds(resolved_now)
    stmt = (
        update(UsageMetric)
        .where(UsageMetric.metric_type.notin_(list(LIVE_COUNTERS)))
        .values(
            current_value=0,
            period_start=period_start,
            period_end=period_end,
            last_updated=resolved_now,
        )
        .execution_options(synchronize_session="fetch")
    )
    if user_id is not None:
        stmt = stmt.where(UsageMetric.user_id == user_id)
    else:
        stmt = stmt.where(UsageMetric.period_end <= resolved_now)
    result = await session.execute(stmt)
    logger.info("usage_reset user_id=%s rows=%s", user_id, result.rowcount)
    return int(result.rowcount or 0)
