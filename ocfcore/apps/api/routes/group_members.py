from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.apps.api.deps import Principal, get_db, get_store, require_access
from ocfcore.domain.models import GroupMember
from ocfcore.services import groups as groups_service
from ocfcore.services.audit import record_event
from ocfcore.services.auth.roles import MEMBERSHIP_MEMBER
from ocfcore.services.authz.policy_store import PolicyStore


router = APIRouter(prefix="/group-members", tags=["group-members"])


class AddGroupMembersRequest(BaseModel):
    user_ids: list[str] = Field(min_length=1)
    role: str = MEMBERSHIP_MEMBER


class UpdateGroupMemberRequest(BaseModel):
    role: str = Field(min_length=1)


class GroupMemberResponse(BaseModel):
    id: str
    group_id: str
    user_id: str
    role: str
    invited_by: str | None
    joined_at: datetime | None
    is_active: bool


def _to_response(member: GroupMember) -> GroupMemberResponse:
    return GroupMemberResponse(
        id=member.id,
        group_id=member.group_id,
        user_id=member.user_id,
        role=member.role,
        invited_by=member.invited_by,
        joined_at=member.joined_at,
        is_active=member.is_active,
    )


@router.get("/{group_id}", response_model=list[GroupMemberResponse])
async def list_members(
    group_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
) -> list[GroupMemberResponse]:
    await groups_service.get_group(db, group_id)
    return [_to_response(member) for member in await groups_service.list_members(db, group_id)]


@router.post("/{group_id}", response_model=list[GroupMemberResponse], status_code=status.HTTP_201_CREATED)
async def add_members(
    group_id: str,
    payload: AddGroupMembersRequest,
    request: Request,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> list[GroupMemberResponse]:
    added = await groups_service.add_members(
        session=db,
        store=store,
        group_id=group_id,
        actor_id=principal.user_id,
        user_ids=payload.user_ids,
        role=payload.role,
        actor_is_admin=principal.is_admin,
    )
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type="class_group.members.added",
        outcome="success",
        resource_type="class_group",
        resource_id=group_id,
        request=request,
        metadata={"user_ids": [member.user_id for member in added], "role": payload.role},
    )
    return [_to_response(member) for member in added]


@router.patch("/{group_id}/{user_id}", response_model=GroupMemberResponse)
async def update_member_role(
    group_id: str,
    user_id: str,
    payload: UpdateGroupMemberRequest,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> GroupMemberResponse:
    member = await groups_service.update_member_role(
        session=db,
        store=store,
        group_id=group_id,
        actor_id=principal.user_id,
        user_id=user_id,
        role=payload.role,
        actor_is_admin=principal.is_admin,
    )
    return _to_response(member)


@router.delete("/{group_id}/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    group_id: str,
    user_id: str,
    principal: Principal = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    store: PolicyStore = Depends(get_store),
) -> None:
    await groups_service.remove_member(
        session=db,
        store=store,
        group_id=group_id,
        actor_id=principal.user_id,
        user_id=user_id,
        actor_is_admin=principal.is_admin,
    )
