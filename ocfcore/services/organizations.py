from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.domain.models import ClassGroup, Organization, OrganizationMember
from ocfcore.services.auth.roles import (
    MEMBERSHIP_MANAGER,
    MEMBERSHIP_MEMBER,
    MEMBERSHIP_OWNER,
    is_manager_role,
    normalize_membership_role,
)
from ocfcore.services.authz.grants import (
    ENTITY_CLASS_GROUP,
    ENTITY_ORGANIZATION,
    drop_entity_policies,
    grant_entity_access,
    revoke_entity_access,
)
from ocfcore.services.authz.policy_store import PolicyStore


logger = logging.getLogger(__name__)

ORG_TYPE_PERSONAL = "personal"
ORG_TYPE_TEAM = "team"

TEAM_DEFAULT_MAX_GROUPS = 10
TEAM_DEFAULT_MAX_MEMBERS = 50
CONVERTED_TEAM_MAX_GROUPS = 30
CONVERTED_TEAM_MAX_MEMBERS = 100
PERSONAL_DISPLAY_NAME = "Personal Organization"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def personal_organization_name(user_id: str) -> str:
    return f"personal_{user_id}"


def _not_found_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "ORGANIZATION_NOT_FOUND", "message": "Organization not found"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _conflict_error(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"code": code, "message": message})


async def get_organization(session: AsyncSession, organization_id: str) -> Organization:
    organization = await session.get(Organization, organization_id)
    if organization is None:
        raise _not_found_error()
    return organization


async def get_membership(
    session: AsyncSession,
    organization_id: str,
    user_id: str,
    *,
    include_inactive: bool = False,
) -> OrganizationMember | None:
    stmt = select(OrganizationMember).where(
        OrganizationMember.organization_id == organization_id,
        OrganizationMember.user_id == user_id,
    )
    if not include_inactive:
        stmt = stmt.where(OrganizationMember.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_members(session: AsyncSession, organization_id: str) -> list[OrganizationMember]:
    result = await session.execute(
        select(OrganizationMember)
        .where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.is_active.is_(True),
        )
        .order_by(OrganizationMember.joined_at, OrganizationMember.id)
    )
    return list(result.scalars().all())


async def list_user_memberships(
    session: AsyncSession,
    user_id: str,
) -> list[tuple[Organization, OrganizationMember]]:
    # Active memberships in active organizations, oldest first.
    result = await session.execute(
        select(Organization, OrganizationMember)
        .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
        .where(
            OrganizationMember.user_id == user_id,
            OrganizationMember.is_active.is_(True),
            Organization.is_active.is_(True),
        )
        .order_by(Organization.created_at, Organization.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def _count_active_members(session: AsyncSession, organization_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(OrganizationMember)
        .where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.is_active.is_(True),
        )
    )
    return int(result.scalar_one())


async def _require_manager(
    session: AsyncSession,
    organization: Organization,
    actor_id: str,
    *,
    actor_is_admin: bool,
) -> OrganizationMember | None:
    if actor_is_admin:
        return await get_membership(session, organization.id, actor_id)
    membership = await get_membership(session, organization.id, actor_id)
    if membership is None or not is_manager_role(membership.role):
        raise _forbidden_error("Only organization owners and managers can perform this operation")
    return membership


def _require_owner(organization: Organization, actor_id: str, *, actor_is_admin: bool) -> None:
    if actor_is_admin:
        return
    if organization.owner_user_id != actor_id:
        raise _forbidden_error("Only the organization owner can perform this operation")


async def create_organization(
    *,
    session: AsyncSession,
    store: PolicyStore,
    owner_id: str,
    name: str,
    display_name: str,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Organization:
    # Team organizations start with default soft limits and the creator as owner.
    existing = await session.execute(select(Organization.id).where(Organization.name == name))
    if existing.first() is not None:
        raise _conflict_error("ORGANIZATION_NAME_TAKEN", "Organization name already exists")
    organization = Organization(
        name=name,
        display_name=display_name,
        description=description,
        owner_user_id=owner_id,
        organization_type=ORG_TYPE_TEAM,
        max_groups=TEAM_DEFAULT_MAX_GROUPS,
        max_members=TEAM_DEFAULT_MAX_MEMBERS,
        is_active=True,
        metadata_json=metadata,
    )
    session.add(organization)
    await session.flush()
    session.add(
        OrganizationMember(
            organization_id=organization.id,
            user_id=owner_id,
            role=MEMBERSHIP_OWNER,
            joined_at=_utc_now(),
            is_active=True,
        )
    )
    await session.commit()
    # Policy writes run after the membership commit so the two stores never hold competing locks.
    await grant_entity_access(
        store, entity=ENTITY_ORGANIZATION, entity_id=organization.id, user_id=owner_id, manager=True
    )
    logger.info("organization_created organization_id=%s owner_id=%s", organization.id, owner_id)
    return organization


async def ensure_personal_organization(
    *,
    session: AsyncSession,
    store: PolicyStore,
    user_id: str,
) -> Organization:
    # Idempotent; called on every login so first-time principals get a personal workspace.
    name = personal_organization_name(user_id)
    result = await session.execute(select(Organization).where(Organization.name == name))
    organization = result.scalar_one_or_none()
    if organization is not None:
        return organization
    organization = Organization(
        name=name,
        display_name=PERSONAL_DISPLAY_NAME,
        owner_user_id=user_id,
        organization_type=ORG_TYPE_PERSONAL,
        max_groups=-1,
        max_members=1,
        is_active=True,
    )
    session.add(organization)
    await session.flush()
    session.add(
        OrganizationMember(
            organization_id=organization.id,
            user_id=user_id,
            role=MEMBERSHIP_OWNER,
            joined_at=_utc_now(),
            is_active=True,
        )
    )
    await session.commit()
    await grant_entity_access(
        store, entity=ENTITY_ORGANIZATION, entity_id=organization.id, user_id=user_id, manager=True
    )
    logger.info("personal_organization_created organization_id=%s user_id=%s", organization.id, user_id)
    return organization


async def update_organization(
    *,
    session: AsyncSession,
    organization_id: str,
    actor_id: str,
    actor_is_admin: bool = False,
    display_name: str | None = None,
    description: str | None = None,
    max_groups: int | None = None,
    max_members: int | None = None,
    is_active: bool | None = None,
) -> Organization:
    organization = await get_organization(session, organization_id)
    await _require_manager(session, organization, actor_id, actor_is_admin=actor_is_admin)
    if display_name is not None:
        organization.display_name = display_name
    if description is not None:
        organization.description = description
    # Limits and activation are platform-administered.
    if max_groups is not None or max_members is not None or is_active is not None:
        if not actor_is_admin:
            raise _forbidden_error("Only administrators can change organization limits")
        if max_groups is not None:
            organization.max_groups = max_groups
        if max_members is not None:
            organization.max_members = max_members
        if is_active is not None:
            organization.is_active = is_active
    await session.commit()
    return organization


async def delete_organization(
    *,
    session: AsyncSession,
    store: PolicyStore,
    organization_id: str,
    actor_id: str,
    actor_is_admin: bool = False,
) -> None:
    organization = await get_organization(session, organization_id)
    _require_owner(organization, actor_id, actor_is_admin=actor_is_admin)
    if organization.organization_type == ORG_TYPE_PERSONAL:
        raise _forbidden_error("Personal organizations cannot be deleted")
    group_ids = list(
        (
            await session.execute(select(ClassGroup.id).where(ClassGroup.organization_id == organization.id))
        ).scalars()
    )
    await session.delete(organization)
    await session.commit()
    await drop_entity_policies(store, entity=ENTITY_ORGANIZATION, entity_id=organization_id)
    for group_id in group_ids:
        await drop_entity_policies(store, entity=ENTITY_CLASS_GROUP, entity_id=group_id)
    logger.info("organization_deleted organization_id=%s actor_id=%s", organization_id, actor_id)


async def convert_to_team(
    *,
    session: AsyncSession,
    organization_id: str,
    actor_id: str,
    display_name: str | None = None,
) -> Organization:
    # Only the owner of a personal organization may convert it; memberships are kept.
    organization = await get_organization(session, organization_id)
    if organization.owner_user_id != actor_id:
        raise _forbidden_error("Only the organization owner can convert it to a team")
    if organization.organization_type == ORG_TYPE_TEAM:
        raise _conflict_error("ORGANIZATION_ALREADY_TEAM", "Organization is already a team")
    if display_name:
        clash = await session.execute(
            select(Organization.id).where(
                Organization.owner_user_id == actor_id,
                Organization.display_name == display_name,
                Organization.id != organization.id,
            )
        )
        if clash.first() is not None:
            raise _conflict_error("ORGANIZATION_NAME_TAKEN", "You already own an organization with this name")
        organization.display_name = display_name
    organization.organization_type = ORG_TYPE_TEAM
    organization.max_groups = CONVERTED_TEAM_MAX_GROUPS
    organization.max_members = CONVERTED_TEAM_MAX_MEMBERS
    await session.commit()
    logger.info("organization_converted_to_team organization_id=%s", organization.id)
    return organization


async def add_members(
    *,
    session: AsyncSession,
    store: PolicyStore,
    organization_id: str,
    actor_id: str,
    user_ids: list[str],
    role: str = MEMBERSHIP_MEMBER,
    actor_is_admin: bool = False,
) -> list[OrganizationMember]:
    """Add users to an organization, skipping those already active.

    Owner rows are only created through organization creation or ownership
    transfer, so ``role`` is restricted to manager or member. The member
    limit counts active rows; -1 disables it.
    """
    resolved_role = normalize_membership_role(role)
    if resolved_role == MEMBERSHIP_OWNER:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_ROLE", "message": "Use an ownership transfer to assign the owner role"},
        )
    organization = await get_organization(session, organization_id)
    await _require_manager(session, organization, actor_id, actor_is_admin=actor_is_admin)

    pending: list[str] = []
    for user_id in dict.fromkeys(user_ids):
        existing = await get_membership(session, organization.id, user_id)
        if existing is None:
            pending.append(user_id)
    if organization.max_members != -1:
        active = await _count_active_members(session, organization.id)
        if active + len(pending) > organization.max_members:
            raise _conflict_error(
                "MEMBER_LIMIT_REACHED",
                f"Organization member limit reached ({organization.max_members})",
            )

    added: list[OrganizationMember] = []
    for user_id in pending:
        row = await get_membership(session, organization.id, user_id, include_inactive=True)
        if row is None:
            row = OrganizationMember(organization_id=organization.id, user_id=user_id)
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
            entity=ENTITY_ORGANIZATION,
            entity_id=organization.id,
            user_id=row.user_id,
            manager=is_manager_role(row.role),
        )
    logger.info("organization_members_added organization_id=%s count=%s", organization.id, len(added))
    return added


async def update_member_role(
    *,
    session: AsyncSession,
    store: PolicyStore,
    organization_id: str,
    actor_id: str,
    user_id: str,
    role: str,
    actor_is_admin: bool = False,
) -> OrganizationMember:
    """Change a member's role.

    Promoting someone to owner transfers ownership: the previous owner is
    demoted to manager in the same commit so exactly one owner remains.
    The owner's own row cannot be demoted directly.
    """
    resolved_role = normalize_membership_role(role)
    organization = await get_organization(session, organization_id)
    await _require_manager(session, organization, actor_id, actor_is_admin=actor_is_admin)
    target = await get_membership(session, organization.id, user_id)
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "MEMBER_NOT_FOUND", "message": "Member not found"},
        )
    if target.role == MEMBERSHIP_OWNER:
        if resolved_role != MEMBERSHIP_OWNER:
            raise _conflict_error("OWNER_ROLE_LOCKED", "Transfer ownership before changing the owner's role")
        return target

    changed: list[OrganizationMember] = [target]
    if resolved_role == MEMBERSHIP_OWNER:
        _require_owner(organization, actor_id, actor_is_admin=actor_is_admin)
        previous = await get_membership(session, organization.id, organization.owner_user_id)
        if previous is not None:
            previous.role = MEMBERSHIP_MANAGER
            changed.append(previous)
        organization.owner_user_id = target.user_id
    target.role = resolved_role
    await session.commit()
    for row in changed:
        await grant_entity_access(
            store,
            entity=ENTITY_ORGANIZATION,
            entity_id=organization.id,
            user_id=row.user_id,
            manager=is_manager_role(row.role),
        )
    return target


async def remove_member(
    *,
    session: AsyncSession,
    store: PolicyStore,
    organization_id: str,
    actor_id: str,
    user_id: str,
    actor_is_admin: bool = False,
) -> None:
    # Members may leave on their own; removing others needs owner or manager rights.
    organization = await get_organization(session, organization_id)
    if actor_id != user_id:
        await _require_manager(session, organization, actor_id, actor_is_admin=actor_is_admin)
    target = await get_membership(session, organization.id, user_id)
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "MEMBER_NOT_FOUND", "message": "Member not found"},
        )
    if target.role == MEMBERSHIP_OWNER:
        raise _conflict_error("OWNER_CANNOT_BE_REMOVED", "The organization owner cannot be removed")
    target.is_active = False
    await session.commit()
    await revoke_entity_access(store, entity=ENTITY_ORGANIZATION, entity_id=organization.id, user_id=user_id)
    logger.info("organization_member_removed organization_id=%s user_id=%s", organization.id, user_id)


async def count_groups(session: AsyncSession, organization_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(ClassGroup).where(ClassGroup.organization_id == organization_id)
    )
    return int(result.scalar_one())
