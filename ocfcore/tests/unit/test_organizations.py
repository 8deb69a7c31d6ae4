from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi import HTTPException

from ocfcore.persistence.db import SessionLocal
from ocfcore.services import groups as groups_service
from ocfcore.services import organizations as organizations_service
from ocfcore.services.authz.policy_store import PolicyStore


async def _create_team(store: PolicyStore, owner_id: str, name: str | None = None):
    async with SessionLocal() as session:
        return await organizations_service.create_organization(
            session=session,
            store=store,
            owner_id=owner_id,
            name=name or f"team-{uuid4().hex[:8]}",
            display_name="Team",
        )


@pytest.mark.asyncio
async def test_create_organization_grants_owner_and_rejects_duplicate_names() -> None:
    store = PolicyStore()
    owner_id = uuid4().hex
    organization = await _create_team(store, owner_id, "shared-name")

    assert organization.organization_type == "team"
    assert organization.max_members == organizations_service.TEAM_DEFAULT_MAX_MEMBERS
    assert await store.enforce(owner_id, f"/api/v1/organizations/{organization.id}", "PATCH")
    async with SessionLocal() as session:
        members = await organizations_service.list_members(session, organization.id)
    assert [(member.user_id, member.role) for member in members] == [(owner_id, "owner")]

    with pytest.raises(HTTPException) as exc_info:
        await _create_team(store, uuid4().hex, "shared-name")
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["code"] == "ORGANIZATION_NAME_TAKEN"


@pytest.mark.asyncio
async def test_personal_organization_is_idempotent_and_convertible() -> None:
    store = PolicyStore()
    user_id = uuid4().hex
    async with SessionLocal() as session:
        first = await organizations_service.ensure_personal_organization(session=session, store=store, user_id=user_id)
    async with SessionLocal() as session:
        second = await organizations_service.ensure_personal_organization(session=session, store=store, user_id=user_id)
    assert first.id == second.id
    assert first.organization_type == "personal"
    assert first.max_members == 1

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as forbidden:
            await organizations_service.convert_to_team(
                session=session, organization_id=first.id, actor_id=uuid4().hex
            )
    assert forbidden.value.status_code == 403

    async with SessionLocal() as session:
        team = await organizations_service.convert_to_team(
            session=session, organization_id=first.id, actor_id=user_id, display_name="My Team"
        )
    assert team.organization_type == "team"
    assert team.display_name == "My Team"
    assert team.max_members == organizations_service.CONVERTED_TEAM_MAX_MEMBERS

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as again:
            await organizations_service.convert_to_team(session=session, organization_id=first.id, actor_id=user_id)
    assert again.value.detail["code"] == "ORGANIZATION_ALREADY_TEAM"


@pytest.mark.asyncio
async def test_member_limit_counts_active_members() -> None:
    store = PolicyStore()
    owner_id = uuid4().hex
    organization = await _create_team(store, owner_id)
    async with SessionLocal() as session:
        await organizations_service.update_organization(
            session=session, organization_id=organization.id, actor_id=owner_id, actor_is_admin=True, max_members=2
        )

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await organizations_service.add_members(
                session=session,
                store=store,
                organization_id=organization.id,
                actor_id=owner_id,
                user_ids=[uuid4().hex, uuid4().hex],
            )
    assert exc_info.value.detail["code"] == "MEMBER_LIMIT_REACHED"

    member_id = uuid4().hex
    async with SessionLocal() as session:
        added = await organizations_service.add_members(
            session=session,
            store=store,
            organization_id=organization.id,
            actor_id=owner_id,
            user_ids=[member_id, member_id],
        )
    assert [row.user_id for row in added] == [member_id]
    assert await store.enforce(member_id, f"/api/v1/organizations/{organization.id}", "GET")
    assert not await store.enforce(member_id, f"/api/v1/organizations/{organization.id}", "PATCH")


@pytest.mark.asyncio
async def test_only_admins_change_organization_limits() -> None:
    store = PolicyStore()
    owner_id = uuid4().hex
    organization = await _create_team(store, owner_id)
    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await organizations_service.update_organization(
                session=session, organization_id=organization.id, actor_id=owner_id, max_groups=99
            )
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_ownership_transfer_demotes_previous_owner() -> None:
    store = PolicyStore()
    owner_id = uuid4().hex
    successor_id = uuid4().hex
    organization = await _create_team(store, owner_id)
    async with SessionLocal() as session:
        await organizations_service.add_members(
            session=session,
            store=store,
            organization_id=organization.id,
            actor_id=owner_id,
            user_ids=[successor_id],
        )

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as locked:
            await organizations_service.update_member_role(
                session=session,
                store=store,
                organization_id=organization.id,
                actor_id=owner_id,
                user_id=owner_id,
                role="member",
            )
    assert locked.value.detail["code"] == "OWNER_ROLE_LOCKED"

    async with SessionLocal() as session:
        await organizations_service.update_member_role(
            session=session,
            store=store,
            organization_id=organization.id,
            actor_id=owner_id,
            user_id=successor_id,
            role="owner",
        )
    async with SessionLocal() as session:
        refreshed = await organizations_service.get_organization(session, organization.id)
        roles = {
            member.user_id: member.role
            for member in await organizations_service.list_members(session, organization.id)
        }
    assert refreshed.owner_user_id == successor_id
    assert roles == {owner_id: "manager", successor_id: "owner"}
    assert await store.enforce(successor_id, f"/api/v1/organizations/{organization.id}", "DELETE")


@pytest.mark.asyncio
async def test_owner_cannot_be_removed_but_members_can_leave() -> None:
    store = PolicyStore()
    owner_id = uuid4().hex
    member_id = uuid4().hex
    organization = await _create_team(store, owner_id)
    async with SessionLocal() as session:
        await organizations_service.add_members(
            session=session, store=store, organization_id=organization.id, actor_id=owner_id, user_ids=[member_id]
        )

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await organizations_service.remove_member(
                session=session, store=store, organization_id=organization.id, actor_id=owner_id, user_id=owner_id
            )
    assert exc_info.value.detail["code"] == "OWNER_CANNOT_BE_REMOVED"

    async with SessionLocal() as session:
        await organizations_service.remove_member(
            session=session, store=store, organization_id=organization.id, actor_id=member_id, user_id=member_id
        )
    assert not await store.enforce(member_id, f"/api/v1/organizations/{organization.id}", "GET")


@pytest.mark.asyncio
async def test_personal_organizations_cannot_be_deleted() -> None:
    store = PolicyStore()
    user_id = uuid4().hex
    async with SessionLocal() as session:
        personal = await organizations_service.ensure_personal_organization(
            session=session, store=store, user_id=user_id
        )
    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await organizations_service.delete_organization(
                session=session, store=store, organization_id=personal.id, actor_id=user_id
            )
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_group_creation_respects_organization_group_limit() -> None:
    store = PolicyStore()
    owner_id = uuid4().hex
    organization = await _create_team(store, owner_id)
    async with SessionLocal() as session:
        await organizations_service.update_organization(
            session=session, organization_id=organization.id, actor_id=owner_id, actor_is_admin=True, max_groups=1
        )

    async with SessionLocal() as session:
        group = await groups_service.create_group(
            session=session,
            store=store,
            owner_id=owner_id,
            name="cohort-a",
            display_name="Cohort A",
            organization_id=organization.id,
        )
    assert await store.enforce(owner_id, f"/api/v1/class-groups/{group.id}", "PATCH")

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as limit:
            await groups_service.create_group(
                session=session,
                store=store,
                owner_id=owner_id,
                name="cohort-b",
                display_name="Cohort B",
                organization_id=organization.id,
            )
    assert limit.value.detail["code"] == "GROUP_LIMIT_REACHED"

    # Outsiders cannot attach groups to someone else's organization.
    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as outsider:
            await groups_service.create_group(
                session=session,
                store=store,
                owner_id=uuid4().hex,
                name="cohort-c",
                display_name="Cohort C",
                organization_id=organization.id,
            )
    assert outsider.value.status_code == 403


@pytest.mark.asyncio
async def test_group_members_cannot_be_added_as_owner() -> None:
    store = PolicyStore()
    owner_id = uuid4().hex
    async with SessionLocal() as session:
        group = await groups_service.create_group(
            session=session, store=store, owner_id=owner_id, name="solo", display_name="Solo", max_members=2
        )

    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as invalid:
            await groups_service.add_members(
                session=session, store=store, group_id=group.id, actor_id=owner_id, user_ids=[uuid4().hex], role="owner"
            )
    assert invalid.value.detail["code"] == "INVALID_ROLE"

    async with SessionLocal() as session:
        await groups_service.add_members(
            session=session, store=store, group_id=group.id, actor_id=owner_id, user_ids=[uuid4().hex]
        )
    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as full:
            await groups_service.add_members(
                session=session, store=store, group_id=group.id, actor_id=owner_id, user_ids=[uuid4().hex]
            )
    assert full.value.detail["code"] == "MEMBER_LIMIT_REACHED"
