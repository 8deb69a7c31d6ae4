from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import Principal, get_db, get_store, require_access
from ocfcore.domain.models import ClassGroup
from ocfcore.services import groups as groups_service
from ocfcore.services.audit import record_event
from ocfcore.services.authz.policy_store import PolicyStore


router = APIRouter(prefix="/class-groups", tags=["class-groups"])


class GroupCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    organization_id: str | None = None
    max_members: int = Field(default=groups_service.GROUP_DEFAULT_MAX_MEMBERS, ge=-1)
    expires_at: datetime | None = None

    model_config = {"extra": "forbid"}


class GroupUpdateRequest(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    max_members: int | None = Field(default=None, ge=-1)
    is_active: bool | None = None
    expires_at: datetime | None = None

    model_config = {"extra": "forbid"}


class GroupResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None
    owner_user_id: str
    organization_id: str | None
    max_members: int
    is_active: bool
    expires_at: datetime | None
    created_at: datetime | None


class MembershipGroupResponse(GroupResponse):
    role: str


def _to_response(group: ClassGroup) -> GroupResponse:
    return GroupResponse(
        id=group.id,
        name=group.name,
        display_name=group.display_name,
        description=group.description,
        owner_user_id=group.owner_user_id,
        organization_id=group.organization_id,
        max_members=group.max_members,
        is_active=group.is_active,
        expires_at=group.expires_at,
        created_at=group.created_at,
    )


@router.get("", response_model=list[MembershipGroupResponse])
async def list_groups(
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[MembershipGroupResponse]:
    memberships = await groups_service.list_user_memberships(db, principal.user_id)
    return [
        MembershipGroupResponse(**_to_response(group).model_dump(), role=member.role)
        for group, member in memberships
    ]


@router.post("", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    payload: GroupCreateRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> GroupResponse:
    group = await groups_service.create_group(
        session=db,
        store=store,
        owner_id=principal.user_id,
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        organization_id=payload.organization_id,
        max_members=payload.max_members,
        expires_at=payload.expires_at,
        actor_is_admin=principal.is_admin,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="class_group.created",
        outcome="success",
        resource_type="class_group",
        resource_id=group.id,
        request=request,
        metadata={"organization_id": payload.organization_id},
    )
    return _to_response(group)


@router.get("/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> GroupResponse:
    return _to_response(await groups_service.get_group(db, group_id))


@router.patch("/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    payload: GroupUpdateRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> GroupResponse:
    group = await groups_service.update_group(
        session=db,
        group_id=group_id,
        actor_id=principal.user_id,
        actor_is_admin=principal.is_admin,
        **payload.model_dump(exclude_unset=True),
    )
    return _to_response(group)


@router.delete("/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> None:
    await groups_service.delete_group(
        session=db,
        store=store,
        group_id=group_id,
        actor_id=principal.user_id,
        actor_is_admin=principal.is_admin,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="class_group.deleted",
        outcome="success",
        resource_type="class_group",
        resource_id=group_id,
        request=request,
    )
