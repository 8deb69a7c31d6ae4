from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi import HTTPException

from ocfcore.core.config import Settings
from ocfcore.domain.models import Organization, OrganizationMember, OrganizationSubscription, SubscriptionPlan
from ocfcore.persistence.db import SessionLocal
from ocfcore.services import terminals as terminals_service
from ocfcore.services.entitlements import (
    enforce_route_entitlements,
    get_entitlements,
    plan_capabilities,
    require_feature,
)
from ocfcore.tests.utils.billing import create_test_plan, create_test_subscription


def test_plan_capabilities_ignore_zero_limits_and_disabled_flags() -> None:
    plan = SubscriptionPlan(
        name="Labs only",
        max_courses=0,
        max_lab_sessions=-1,
        max_concurrent_terminals=2,
        features=["courses", "marketing copy"],
    )
    assert plan_capabilities(plan, Settings()) == {"labs", "terminals"}
    assert plan_capabilities(plan, Settings(feature_terminals_enabled=False)) == {"labs"}


@pytest.mark.asyncio
async def test_entitlements_union_personal_and_organization_plans() -> None:
    user_id = uuid4().hex
    personal = await create_test_plan(name="Personal", priority=1, max_courses=0, max_concurrent_terminals=0)
    team = await create_test_plan(name="Team", priority=5, max_courses=10, max_concurrent_terminals=0)
    await create_test_subscription(user_id=user_id, plan=personal)
    async with SessionLocal() as session:
        organization = Organization(name=f"org-{uuid4().hex[:8]}", display_name="Org", owner_user_id=user_id)
        session.add(organization)
        await session.flush()
        session.add(OrganizationMember(organization_id=organization.id, user_id=user_id, role="owner"))
        session.add(
            OrganizationSubscription(organization_id=organization.id, subscription_plan_id=team.id, status="active")
        )
        await session.commit()

    async with SessionLocal() as session:
        entitlements = await get_entitlements(session, user_id)
    assert entitlements.capabilities == frozenset({"courses", "labs"})
    # Numeric limits still come from the personal plan only.
    assert entitlements.primary_plan is not None
    assert entitlements.primary_plan.id == personal.id
    assert entitlements.has_organization_subscription


@pytest.mark.asyncio
async def test_require_feature_raises_feature_not_enabled() -> None:
    user_id = uuid4().hex
    plan = await create_test_plan(max_concurrent_terminals=0)
    await create_test_subscription(user_id=user_id, plan=plan)
    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await require_feature(session=session, user_id=user_id, feature="terminals")
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["code"] == "FEATURE_NOT_ENABLED"


@pytest.mark.asyncio
async def test_route_quota_reports_metric_and_limit() -> None:
    user_id = uuid4().hex
    plan = await create_test_plan(max_concurrent_terminals=1)
    await create_test_subscription(user_id=user_id, plan=plan)
    async with SessionLocal() as session:
        await terminals_service.start_terminal(session=session, user_id=user_id)

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await enforce_route_entitlements(
                session=session, user_id=user_id, method="POST", route_path="/api/v1/terminals"
            )
        # Routes without gates pass straight through.
        await enforce_route_entitlements(
            session=session, user_id=user_id, method="GET", route_path="/api/v1/terminals"
        )
    assert exc_info.value.status_code == 402
    assert exc_info.value.detail["metric_type"] == "concurrent_terminals"
    assert exc_info.value.detail["current_usage"] == 1
    assert exc_info.value.detail["limit"] == 1
