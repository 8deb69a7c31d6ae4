from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from ocfcore.domain.models import UsageMetric, UserSubscription
from ocfcore.persistence.db import SessionLocal
from ocfcore.services import terminals as terminals_service
from ocfcore.services.subscriptions import change_subscription_plan
from ocfcore.services.usage import (
    METRIC_CONCURRENT_TERMINALS,
    METRIC_COURSES_CREATED,
    NO_SUBSCRIPTION_MESSAGE,
    check_usage,
    get_user_usage_metrics,
    increment_usage,
    initialize_usage_metrics,
    month_bounds,
    reset_monthly_usage,
)
from ocfcore.tests.utils.billing import create_test_plan, create_test_subscription


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def test_month_bounds_wraps_december() -> None:
    start, end = month_bounds(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc))
    assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_check_usage_without_subscription_denies() -> None:
    async with SessionLocal() as session:
        check = await check_usage(session, user_id=uuid4().hex, metric_type=METRIC_COURSES_CREATED)
    assert not check.allowed
    assert check.limit == 0
    assert check.message == NO_SUBSCRIPTION_MESSAGE


@pytest.mark.asyncio
async def test_initialize_creates_one_row_per_enabled_family() -> None:
    user_id = uuid4().hex
    plan = await create_test_plan(max_courses=3, max_lab_sessions=-1, max_concurrent_terminals=2)
    subscription = await create_test_subscription(user_id=user_id, plan=plan)
    async with SessionLocal() as session:
        created = await initialize_usage_metrics(session, user_id=user_id, subscription=subscription, plan=plan)
        again = await initialize_usage_metrics(session, user_id=user_id, subscription=subscription, plan=plan)
        await session.commit()

    assert {metric.metric_type: metric.limit_value for metric in created} == {
        "courses_created": 3,
        "lab_sessions": -1,
        "concurrent_terminals": 2,
    }
    assert again == []


@pytest.mark.asyncio
async def test_counted_metric_blocks_at_limit_and_restarts_next_month() -> None:
    user_id = uuid4().hex
    now = _utc_now()
    plan = await create_test_plan(max_courses=2)
    # Open-ended period so the subscription stays entitled across the month boundary.
    await create_test_subscription(user_id=user_id, plan=plan, current_period_end=None)

    async with SessionLocal() as session:
        await increment_usage(session, user_id=user_id, metric_type=METRIC_COURSES_CREATED, now=now)
        await increment_usage(session, user_id=user_id, metric_type=METRIC_COURSES_CREATED, now=now)
        await session.commit()

    async with SessionLocal() as session:
        blocked = await check_usage(session, user_id=user_id, metric_type=METRIC_COURSES_CREATED, now=now)
    assert not blocked.allowed
    assert (blocked.current_usage, blocked.limit, blocked.remaining) == (2, 2, 0)

    next_month = now + timedelta(days=40)
    async with SessionLocal() as session:
        fresh = await check_usage(session, user_id=user_id, metric_type=METRIC_COURSES_CREATED, now=next_month)
        metric = await increment_usage(
            session, user_id=user_id, metric_type=METRIC_COURSES_CREATED, now=next_month
        )
        await session.commit()
    assert fresh.allowed
    assert fresh.current_usage == 0
    assert metric is not None
    assert metric.current_value == 1


@pytest.mark.asyncio
async def test_live_metric_uses_active_terminal_count() -> None:
    user_id = uuid4().hex
    plan = await create_test_plan(max_concurrent_terminals=2)
    await create_test_subscription(user_id=user_id, plan=plan)

    async with SessionLocal() as session:
        first = await terminals_service.start_terminal(session=session, user_id=user_id, name="one")
        await terminals_service.start_terminal(session=session, user_id=user_id, name="two")

    async with SessionLocal() as session:
        check = await check_usage(session, user_id=user_id, metric_type=METRIC_CONCURRENT_TERMINALS)
    assert not check.allowed
    assert check.current_usage == 2

    async with SessionLocal() as session:
        await terminals_service.stop_terminal(session=session, user_id=user_id, terminal_id=first.id)

    async with SessionLocal() as session:
        # A drifted stored counter is corrected on read.
        row = (
            await session.execute(
                select(UsageMetric).where(
                    UsageMetric.user_id == user_id, UsageMetric.metric_type == METRIC_CONCURRENT_TERMINALS
                )
            )
        ).scalar_one()
        row.current_value = 7
        await session.commit()

    async with SessionLocal() as session:
        views = await get_user_usage_metrics(session, user_id=user_id)
        await session.commit()
    terminals_view = next(view for view in views if view.metric_type == METRIC_CONCURRENT_TERMINALS)
    assert terminals_view.current_value == 1
    assert terminals_view.usage_percent == 50.0


@pytest.mark.asyncio
async def test_reset_monthly_usage_skips_live_metrics() -> None:
    user_id = uuid4().hex
    plan = await create_test_plan(max_courses=5, max_concurrent_terminals=3)
    await create_test_subscription(user_id=user_id, plan=plan)
    async with SessionLocal() as session:
        await terminals_service.start_terminal(session=session, user_id=user_id)
    async with SessionLocal() as session:
        await increment_usage(session, user_id=user_id, metric_type=METRIC_COURSES_CREATED, delta=4)
        await session.commit()

    async with SessionLocal() as session:
        assert await reset_monthly_usage(session, user_id=user_id) == 1
        await session.commit()

    async with SessionLocal() as session:
        rows = {
            metric.metric_type: metric.current_value
            for metric in (
                await session.execute(select(UsageMetric).where(UsageMetric.user_id == user_id))
            ).scalars()
        }
    assert rows[METRIC_COURSES_CREATED] == 0
    assert rows[METRIC_CONCURRENT_TERMINALS] == 1


@pytest.mark.asyncio
async def test_plan_change_rewrites_limits_and_keeps_live_sessions() -> None:
    user_id = uuid4().hex
    trial = await create_test_plan(name="Trial", max_concurrent_terminals=1, max_courses=2)
    trainer = await create_test_plan(name="Trainer", max_concurrent_terminals=3, max_courses=-1)
    subscription = await create_test_subscription(user_id=user_id, plan=trial)
    async with SessionLocal() as session:
        await initialize_usage_metrics(session, user_id=user_id, subscription=subscription, plan=trial)
        await session.commit()

    async with SessionLocal() as session:
        row = await session.get(UserSubscription, subscription.id)
        await change_subscription_plan(session, subscription=row, plan=trainer)
        await session.commit()

    for _ in range(3):
        async with SessionLocal() as session:
            check = await check_usage(session, user_id=user_id, metric_type=METRIC_CONCURRENT_TERMINALS)
            assert check.allowed
            await terminals_service.start_terminal(session=session, user_id=user_id)

    async with SessionLocal() as session:
        fourth = await check_usage(session, user_id=user_id, metric_type=METRIC_CONCURRENT_TERMINALS)
        courses = await check_usage(session, user_id=user_id, metric_type=METRIC_COURSES_CREATED, increment=50)
    assert not fourth.allowed
    assert fourth.limit == 3
    assert courses.allowed

    async with SessionLocal() as session:
        row = await session.get(UserSubscription, subscription.id)
        await change_subscription_plan(session, subscription=row, plan=trial)
        await session.commit()

    async with SessionLocal() as session:
        after_downgrade = await check_usage(session, user_id=user_id, metric_type=METRIC_CONCURRENT_TERMINALS)
        live = await terminals_service.list_terminals(session, user_id=user_id)
    assert not after_downgrade.allowed
    assert (after_downgrade.current_usage, after_downgrade.limit) == (3, 1)
    assert [terminal.status for terminal in live] == ["active", "active", "active"]
