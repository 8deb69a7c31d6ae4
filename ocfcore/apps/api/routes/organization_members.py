from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import Principal, get_db, get_store, require_access
from ocfcore.domain.models import OrganizationMember
from ocfcore.services import organizations as organizations_service
from ocfcore.services.audit import record_event
from ocfcore.services.auth.roles import MEMBERSHIP_MEMBER
from ocfcore.services.authz.policy_store import PolicyStore


router = APIRouter(prefix="/organization-members", tags=["organization-members"])


class AddMembersRequest(BaseModel):
    user_ids: list[str] = Field(min_length=1)
    role: str = MEMBERSHIP_MEMBER


class UpdateMemberRoleRequest(BaseModel):
    role: str = Field(min_length=1)


class OrganizationMemberResponse(BaseModel):
    id: str
    organization_id: str
    user_id: str
    role: str
    invited_by: str | None
    joined_at: datetime | None
    is_active: bool


def _to_response(member: OrganizationMember) -> OrganizationMemberResponse:
    return OrganizationMemberResponse(
        id=member.id,
        organization_id=member.organization_id,
        user_id=member.user_id,
        role=member.role,
        invited_by=member.invited_by,
        joined_at=member.joined_at,
        is_active=member.is_active,
    )


@router.get("/{organization_id}", response_model=list[OrganizationMemberResponse])
async def list_members(
    organization_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[OrganizationMemberResponse]:
    await organizations_service.get_organization(db, organization_id)
    members = await organizations_service.list_members(db, organization_id)
    return [_to_response(member) for member in members]


@router.post(
    "/{organization_id}",
    response_model=list[OrganizationMemberResponse],
    status_code=status.HTTP_201_CREATED,
)
async def add_members(
    organization_id: str,
    payload: AddMembersRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> list[OrganizationMemberResponse]:
    added = await organizations_service.add_members(
        session=db,
        store=store,
        organization_id=organization_id,
        actor_id=principal.user_id,
        user_ids=payload.user_ids,
        role=payload.role,
        actor_is_admin=principal.is_admin,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="organization.members.added",
        outcome="success",
        resource_type="organization",
        resource_id=organization_id,
        request=request,
        metadata={"user_ids": [member.user_id for member in added], "role": payload.role},
    )
    return [_to_response(member) for member in added]


@router.patch("/{organization_id}/{user_id}", response_model=OrganizationMemberResponse)
async def update_member_role(
    organization_id: str,
    user_id: str,
    payload: UpdateMemberRoleRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> OrganizationMemberResponse:
    member = await organizations_service.update_member_role(
        session=db,
        store=store,
        organization_id=organization_id,
        actor_id=principal.user_id,
        user_id=user_id,
        role=payload.role,
        actor_is_admin=principal.is_admin,
    )
    return _to_response(member)


@router.delete("/{organization_id}/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    organization_id: str,
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> None:
    await organizations_service.remove_member(
        session=db,
        store=store,
        organization_id=organization_id,
        actor_id=principal.user_id,
        user_id=user_id,
        actor_is_admin=principal.is_admin,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="organization.member.removed",
        outcome="success",
        resource_type="organization",
        resource_id=organization_id,
        request=request,
        metadata={"user_id": user_id},
    )
