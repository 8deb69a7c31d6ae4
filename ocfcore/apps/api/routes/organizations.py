from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import Principal, get_db, get_payment_gateway, get_store, require_access, require_role
from ocfcore.domain.models import Organization, OrganizationSubscription, SubscriptionPlan
from ocfcore.services import organizations as organizations_service
from ocfcore.services import plans as plans_service
from ocfcore.services import subscriptions as subscriptions_service
from ocfcore.services.audit import record_event
from ocfcore.services.auth.roles import ROLE_ADMINISTRATOR
from ocfcore.services.authz.policy_store import PolicyStore
from ocfcore.services.billing.stripe_gateway import StripeGateway


router = APIRouter(prefix="/organizations", tags=["organizations"])


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    metadata: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class OrganizationUpdateRequest(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    max_groups: int | None = Field(default=None, ge=-1)
    max_members: int | None = Field(default=None, ge=-1)
    is_active: bool | None = None

    model_config = {"extra": "forbid"}


class ConvertToTeamRequest(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=255)


class OrganizationResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None
    owner_user_id: str
    organization_type: str
    max_groups: int
    max_members: int
    is_active: bool
    subscription_plan_id: str | None
    created_at: datetime | None


class MembershipOrganizationResponse(OrganizationResponse):
    role: str


class AssignPlanRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)


class OrganizationSubscriptionResponse(BaseModel):
    id: str
    organization_id: str
    subscription_plan_id: str
    plan_name: str | None
    quantity: int
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None


def _to_response(organization: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=organization.id,
        name=organization.name,
        display_name=organization.display_name,
        description=organization.description,
        owner_user_id=organization.owner_user_id,
        organization_type=organization.organization_type,
        max_groups=organization.max_groups,
        max_members=organization.max_members,
        is_active=organization.is_active,
        subscription_plan_id=organization.subscription_plan_id,
        created_at=organization.created_at,
    )


def _subscription_response(
    subscription: OrganizationSubscription, plan: SubscriptionPlan | None
) -> OrganizationSubscriptionResponse:
    return OrganizationSubscriptionResponse(
        id=subscription.id,
        organization_id=subscription.organization_id,
        subscription_plan_id=subscription.subscription_plan_id,
        plan_name=plan.name if plan is not None else None,
        quantity=subscription.quantity,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        cancelled_at=subscription.cancelled_at,
    )


@router.get("", response_model=list[MembershipOrganizationResponse])
async def list_organizations(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[MembershipOrganizationResponse]:
    # Only organizations the caller is an active member of.
    memberships = await organizations_service.list_user_memberships(db, principal.user_id)
    return [
        MembershipOrganizationResponse(**_to_response(organization).model_dump(), role=member.role)
        for organization, member in memberships
    ]


@router.post("", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
async def create_organization(
    payload: OrganizationCreateRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> OrganizationResponse:
    organization = await organizations_service.create_organization(
        session=db,
        store=store,
        owner_id=principal.user_id,
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        metadata=payload.metadata,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="organization.created",
        outcome="success",
        resource_type="organization",
        resource_id=organization.id,
        request=request,
    )
    return _to_response(organization)


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    organization_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    organization = await organizations_service.get_organization(db, organization_id)
    return _to_response(organization)


@router.patch("/{organization_id}", response_model=OrganizationResponse)
async def update_organization(
    organization_id: str,
    payload: OrganizationUpdateRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    organization = await organizations_service.update_organization(
        session=db,
        organization_id=organization_id,
        actor_id=principal.user_id,
        actor_is_admin=principal.is_admin,
        **payload.model_dump(exclude_unset=True),
    )
    return _to_response(organization)


@router.delete("/{organization_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_organization(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> None:
    await organizations_service.delete_organization(
        session=db,
        store=store,
        organization_id=organization_id,
        actor_id=principal.user_id,
        actor_is_admin=principal.is_admin,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="organization.deleted",
        outcome="success",
        resource_type="organization",
        resource_id=organization_id,
        request=request,
    )


@router.post("/{organization_id}/convert-to-team", response_model=OrganizationResponse)
async def convert_to_team(
    organization_id: str,
    payload: ConvertToTeamRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    organization = await organizations_service.convert_to_team(
        session=db,
        organization_id=organization_id,
        actor_id=principal.user_id,
        display_name=payload.display_name,
    )
    return _to_response(organization)


@router.get("/{organization_id}/subscription", response_model=OrganizationSubscriptionResponse)
async def get_organization_subscription(
    organization_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> OrganizationSubscriptionResponse:
    await organizations_service.get_organization(db, organization_id)
    found = await subscriptions_service.get_organization_subscription(db, organization_id)
    if found is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "SUBSCRIPTION_NOT_FOUND", "message": "Organization has no subscription"},
        )
    subscription, plan = found
    return _subscription_response(subscription, plan)


# Administrator override: the plan is active immediately, without the payment processor.
@router.post(
    "/{organization_id}/subscription",
    response_model=OrganizationSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_organization_plan(
    organization_id: str,
    payload: AssignPlanRequest,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    db: AsyncSession = Depends(get_db),
) -> OrganizationSubscriptionResponse:
    subscription = await subscriptions_service.assign_organization_plan(
        session=db,
        organization_id=organization_id,
        plan_id=payload.plan_id,
        quantity=payload.quantity,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="organization.subscription.assigned",
        outcome="success",
        resource_type="organization",
        resource_id=organization_id,
        request=request,
        metadata={"plan_id": payload.plan_id, "quantity": payload.quantity},
    )
    plan = await plans_service.get_plan(db, subscription.subscription_plan_id)
    return _subscription_response(subscription, plan)


@router.delete("/{organization_id}/subscription", response_model=OrganizationSubscriptionResponse)
async def cancel_organization_subscription(
    organization_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> OrganizationSubscriptionResponse:
    subscription = await subscriptions_service.cancel_organization_subscription(
        session=db, gateway=gateway, organization_id=organization_id
    )
    return _subscription_response(subscription, None)
