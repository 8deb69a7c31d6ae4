from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import Principal, get_db, get_identity, get_store, require_access, require_role
from ocfcore.services import usage as usage_service
from ocfcore.services.audit import record_event
from ocfcore.services.auth.identity import IdentityClient
from ocfcore.services.auth.roles import ROLE_ADMINISTRATOR
from ocfcore.services.authz.policy_store import PolicyStore
from ocfcore.services.authz.resolver import get_user_permissions


router = APIRouter(prefix="/users", tags=["users"])


class UserProfileResponse(BaseModel):
    id: str
    name: str
    display_name: str
    email: str
    first_name: str | None
    last_name: str | None
    avatar: str | None
    email_verified: bool
    roles: list[str]


class PermissionRuleResponse(BaseModel):
    resource: str
    methods: list[str]


class OrganizationAccessResponse(BaseModel):
    organization_id: str
    organization_name: str
    organization_type: str
    role: str
    is_owner: bool
    features: list[str]
    has_subscription: bool


class GroupAccessResponse(BaseModel):
    group_id: str
    group_name: str
    organization_id: str | None
    role: str
    is_owner: bool


class UserPermissionsResponse(BaseModel):
    user_id: str
    permissions: list[PermissionRuleResponse]
    roles: list[str]
    is_system_admin: bool
    organization_memberships: list[OrganizationAccessResponse]
    group_memberships: list[GroupAccessResponse]
    aggregated_features: list[str]
    capabilities: list[str]
    can_create_organization: bool
    can_create_group: bool
    has_any_subscription: bool
    primary_plan_id: str | None
    effective_limits: dict[str, int]


class UsageMetricResponse(BaseModel):
    metric_type: str
    subscription_id: str
    current_value: int
    limit_value: int
    usage_percent: float | None
    period_start: datetime
    period_end: datetime
    last_updated: datetime | None


class UsageCheckRequest(BaseModel):
    metric_type: str = Field(min_length=1)
    increment: int = Field(default=1, ge=0)


class UsageCheckResponse(BaseModel):
    allowed: bool
    current_usage: int
    limit: int
    remaining: int
    message: str | None


class UsageResetResponse(BaseModel):
    user_id: str
    reset: int


@router.get("/me", response_model=UserProfileResponse)
async def get_me(
    principal: Principal = Depends(require_access),
    identity: IdentityClient = Depends(get_identity),
) -> UserProfileResponse:
    user = await identity.get_user(principal.user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "USER_NOT_FOUND", "message": "User not found"},
        )
    return UserProfileResponse(
        id=user.id,
        name=user.name,
        display_name=user.display_name,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        avatar=user.avatar,
        email_verified=user.email_verified,
        roles=principal.roles,
    )


@router.get("/me/permissions", response_model=UserPermissionsResponse)
async def get_my_permissions(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> UserPermissionsResponse:
    permissions = await get_user_permissions(session=db, store=store, user_id=principal.user_id)
    return UserPermissionsResponse(**asdict(permissions))


@router.get("/me/usage", response_model=list[UsageMetricResponse])
async def get_my_usage(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[UsageMetricResponse]:
    # Live counters are reconciled against their source on every read.
    metrics = await usage_service.get_user_usage_metrics(db, user_id=principal.user_id)
    await db.commit()
    return [UsageMetricResponse(**asdict(metric)) for metric in metrics]


@router.post("/me/usage/check", response_model=UsageCheckResponse)
async def check_my_usage(
    payload: UsageCheckRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> UsageCheckResponse:
    if usage_service.metric_family(payload.metric_type) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "UNKNOWN_METRIC", "message": f"Unknown metric type {payload.metric_type}"},
        )
    result = await usage_service.check_usage(
        db, user_id=principal.user_id, metric_type=payload.metric_type, increment=payload.increment
    )
    return UsageCheckResponse(**asdict(result))


@router.post("/{user_id}/usage/reset", response_model=UsageResetResponse)
async def reset_user_usage(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    db: AsyncSession = Depends(get_db),
) -> UsageResetResponse:
    reset = await usage_service.reset_monthly_usage(db, user_id=user_id)
    await db.commit()
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="usage.reset",
        outcome="success",
        resource_type="user",
        resource_id=user_id,
        request=request,
        metadata={"reset": reset},
    )
    return UsageResetResponse(user_id=user_id, reset=reset)
