from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import ClassGroup, GroupMember
from ocfcore.services.auth.roles import (
    MEMBERSHIP_MANAGER,
    MEMBERSHIP_MEMBER,
    MEMBERSHIP_OWNER,
    is_manager_role,
    normalize_membership_role,
)
from ocfcore.services.authz.grants import (
    ENTITY_CLASS_GROUP,
    drop_entity_policies,
    grant_entity_access,
    revoke_entity_access,
)
from ocfcore.services.authz.policy_store import PolicyStore
from ocfcore.services.organizations import count_groups, get_membership as get_org_membership
from ocfcore.services.organizations import get_organization


logger = logging.getLogger(__name__)

GROUP_DEFAULT_MAX_MEMBERS = 50


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "GROUP_NOT_FOUND", "message": "Class group not found"},
    )


def _member_not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "MEMBER_NOT_FOUND", "message": "Member not found"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _conflict_error(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"code": code, "message": message})


async def get_group(session: AsyncSession, group_id: str) -> ClassGroup:
    group = await session.get(ClassGroup, group_id)
    if group is None:
        raise _not_found_error()
    return group


async def get_membership(
    session: AsyncSession,
    group_id: str,
    user_id: str,
    *,
    include_inactive: bool = False,
) -> GroupMember | None:
    stmt = select(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
    if not include_inactive:
        stmt = stmt.where(GroupMember.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_members(session: AsyncSession, group_id: str) -> list[GroupMember]:
    result = await session.execute(
        select(GroupMember)
        .where(GroupMember.group_id == group_id, GroupMember.is_active.is_(True))
        .order_by(GroupMember.joined_at, GroupMember.id)
    )
    return list(result.scalars().all())


async def list_user_memberships(session: AsyncSession, user_id: str) -> list[tuple[ClassGroup, GroupMember]]:
    result = await session.execute(
        select(ClassGroup, GroupMember)
        .join(GroupMember, GroupMember.group_id == ClassGroup.id)
        .where(
            GroupMember.user_id == user_id,
            GroupMember.is_active.is_(True),
            ClassGroup.is_active.is_(True),
        )
        .order_by(ClassGroup.created_at, ClassGroup.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def list_organization_groups(session: AsyncSession, organization_id: str) -> list[ClassGroup]:
    result = await session.execute(
        select(ClassGroup).where(ClassGroup.organization_id == organization_id).order_by(ClassGroup.created_at)
    )
    return list(result.scalars().all())


async def _count_active_members(session: AsyncSession, group_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(GroupMember)
        .where(GroupMember.group_id == group_id, GroupMember.is_active.is_(True))
    )
    return int(result.scalar_one())


async def _require_manager(
    session: AsyncSession,
    group: ClassGroup,
    actor_id: str,
    *,
    actor_is_admin: bool,
) -> None:
    if actor_is_admin:
        return
    membership = await get_membership(session, group.id, actor_id)
    if membership is not None and is_manager_role(membership.role):
        return
    # Managers of the parent organization administer its groups too.
    if group.organization_id is not None:
        org_membership = await get_org_membership(session, group.organization_id, actor_id)
        if org_membership is not None and is_manager_role(org_membership.role):
            return
    raise _forbidden_error("Only group owners and managers can perform this operation")


async def create_group(
    *,
    session: AsyncSession,
    store: PolicyStore,
    owner_id: str,
    name: str,
    display_name: str,
    description: str | None = None,
    organization_id: str | None = None,
    max_members: int = GROUP_DEFAULT_MAX_MEMBERS,
    expires_at: datetime | None = None,
    actor_is_admin: bool = False,
) -> ClassGroup:
    """Create a class group owned by ``owner_id``.

    Groups attached to an organization require the creator to manage that
    organization and count against its ``max_groups`` limit.
    """
    existing = await session.execute(select(ClassGroup.id).where(ClassGroup.name == name))
    if existing.first() is not None:
        raise _conflict_error("GROUP_NAME_TAKEN", "Class group name already exists")
    if organization_id is not None:
        organization = await get_organization(session, organization_id)
        if not actor_is_admin:
            org_membership = await get_org_membership(session, organization.id, owner_id)
            if org_membership is None or not is_manager_role(org_membership.role):
                raise _forbidden_error("Only organization owners and managers can create groups in it")
        if organization.max_groups != -1:
            current = await count_groups(session, organization.id)
            if current >= organization.max_groups:
                raise _conflict_error(
                    "GROUP_LIMIT_REACHED",
                    f"Organization group limit reached ({organization.max_groups})",
                )

    group = ClassGroup(
        name=name,
        display_name=display_name,
        description=description,
        owner_user_id=owner_id,
        organization_id=organization_id,
        max_members=max_members,
        is_active=True,
        expires_at=expires_at,
    )
    session.add(group)
    await session.flush()
    session.add(
        GroupMember(
            group_id=group.id,
            user_id=owner_id,
            role=MEMBERSHIP_OWNER,
            joined_at=_utc_now(),
            is_active=True,
        )
    )
    await session.commit()
    await grant_entity_access(store, entity=ENTITY_CLASS_GROUP, entity_id=group.id, user_id=owner_id, manager=True)
    logger.info("class_group_created group_id=%s owner_id=%s", group.id, owner_id)
    return group


async def update_group(
    *,
    session: AsyncSession,
    group_id: str,
    actor_id: str,
    actor_is_admin: bool = False,
    display_name: str | None = None,
    description: str | None = None,
    max_members: int | None = None,
    is_active: bool | None = None,
    expires_at: datetime | None = None,
) -> ClassGroup:
    group = await get_group(session, group_id)
    await _require_manager(session, group, actor_id, actor_is_admin=actor_is_admin)
    if display_name is not None:
        group.display_name = display_name
    if description is not None:
        group.description = description
    if max_members is not None:
        group.max_members = max_members
    if is_active is not None:
        group.is_active = is_active
    if expires_at is not None:
        group.expires_at = expires_at
    await session.commit()
    return group


async def delete_group(
    *,
    session: AsyncSession,
    store: PolicyStore,
    group_id: str,
    actor_id: str,
    actor_is_admin: bool = False,
) -> None:
    group = await get_group(session, group_id)
    if not actor_is_admin and group.owner_user_id != actor_id:
        raise _forbidden_error("Only the group owner can delete it")
    await session.delete(group)
    await session.commit()
    await drop_entity_policies(store, entity=ENTITY_CLASS_GROUP, entity_id=group_id)
    logger.info("class_group_deleted group_id=%s actor_id=%s", group_id, actor_id)


async def add_members(
    *,
    session: AsyncSession,
    store: PolicyStore,
    group_id: str,
    actor_id: str,
    user_ids: list[str],
    role: str = MEMBERSHIP_MEMBER,
    actor_is_admin: bool = False,
) -> list[GroupMember]:
    resolved_role = normalize_membership_role(role)
    if resolved_role == MEMBERSHIP_OWNER:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_ROLE", "message": "Use an ownership transfer to assign the owner role"},
        )
    group = await get_group(session, group_id)
    await _require_manager(session, group, actor_id, actor_is_admin=actor_is_admin)

    pending = [
        user_id
        for user_id in dict.fromkeys(user_ids)
        if await get_membership(session, group.id, user_id) is None
    ]
    if group.max_members != -1:
        active = await _count_active_members(session, group.id)
        if active + len(pending) > group.max_members:
            raise _conflict_error("MEMBER_LIMIT_REACHED", f"Class group member limit reached ({group.max_members})")

    added: list[GroupMember] = []
    for user_id in pending:
        row = await get_membership(session, group.id, user_id, include_inactive=True)
        if row is None:
            row = GroupMember(group_id=group.id, user_id=user_id)
            session.add(row)
        row.role = resolved_role
        row.invited_by = actor_id
        row.joined_at = _utc_now()
        row.is_active = True
        added.append(row)
    await session.commit()
    for row in added:
        await grant_entity_access(
            store,
            entity=ENTITY_CLASS_GROUP,
            entity_id=group.id,
            user_id=row.user_id,
            manager=is_manager_role(row.role),
        )
    logger.info("class_group_members_added group_id=%s count=%s", group.id, len(added))
    return added


async def update_member_role(
    *,
    session: AsyncSession,
    store: PolicyStore,
    group_id: str,
    actor_id: str,
    user_id: str,
    role: str,
    actor_is_admin: bool = False,
) -> GroupMember:
    # Promotion to owner transfers ownership and demotes the previous owner to manager.
    resolved_role = normalize_membership_role(role)
    group = await get_group(session, group_id)
    await _require_manager(session, group, actor_id, actor_is_admin=actor_is_admin)
    target = await get_membership(session, group.id, user_id)
    if target is None:
        raise _member_not_found_error()
    if target.role == MEMBERSHIP_OWNER:
        if resolved_role != MEMBERSHIP_OWNER:
            raise _conflict_error("OWNER_ROLE_LOCKED", "Transfer ownership before changing the owner's role")
        return target

    changed: list[GroupMember] = [target]
    if resolved_role == MEMBERSHIP_OWNER:
        if not actor_is_admin and group.owner_user_id != actor_id:
            raise _forbidden_error("Only the group owner can transfer ownership")
        previous = await get_membership(session, group.id, group.owner_user_id)
        if previous is not None:
            previous.role = MEMBERSHIP_MANAGER
            changed.append(previous)
        group.owner_user_id = target.user_id
    target.role = resolved_role
    await session.commit()
    for row in changed:
        await grant_entity_access(
            store,
            entity=ENTITY_CLASS_GROUP,
            entity_id=group.id,
            user_id=row.user_id,
            manager=is_manager_role(row.role),
        )
    return target


async def remove_member(
    *,
    session: AsyncSession,
    store: PolicyStore,
    group_id: str,
    actor_id: str,
    user_id: str,
    actor_is_admin: bool = False,
) -> None:
    group = await get_group(session, group_id)
    if actor_id != user_id:
        await _require_manager(session, group, actor_id, actor_is_admin=actor_is_admin)
    target = await get_membership(session, group.id, user_id)
    if target is None:
        raise _member_not_found_error()
    if target.role == MEMBERSHIP_OWNER:
        raise _conflict_error("OWNER_CANNOT_BE_REMOVED", "The group owner cannot be removed")
    target.is_active = False
    await session.commit()
    await revoke_entity_access(store, entity=ENTITY_CLASS_GROUP, entity_id=group.id, user_id=user_id)
    logger.info("class_group_member_removed group_id=%s user_id=%s", group.id, user_id)
