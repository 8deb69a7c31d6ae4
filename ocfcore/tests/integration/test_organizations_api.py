from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from ocfcore.apps.api.main import create_app
from ocfcore.persistence.db import SessionLocal
from ocfcore.services.authz.policy_store import get_policy_store
from ocfcore.services.organizations import ensure_personal_organization
from ocfcore.tests.utils.auth import create_test_admin, create_test_principal
from ocfcore.tests.utils.billing import create_test_plan


def _org_body(**overrides) -> dict:
    body = {"name": f"team-{uuid4().hex[:8]}", "display_name": "Robotics Lab"}
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_membership_grants_follow_member_roles() -> None:
    owner_id, owner_headers = await create_test_principal()
    member_id, member_headers = await create_test_principal()
    _outsider_id, outsider_headers = await create_test_principal()
    app = create_app()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post("/api/v1/organizations", headers=owner_headers, json=_org_body())
        assert created.status_code == 201
        organization = created.json()
        assert organization["owner_user_id"] == owner_id
        assert organization["organization_type"] == "team"
        org_id = organization["id"]

        listed = await client.get("/api/v1/organizations", headers=owner_headers)
        roles = {row["id"]: row["role"] for row in listed.json()}
        assert roles[org_id] == "owner"

        outsider = await client.get(f"/api/v1/organizations/{org_id}", headers=outsider_headers)
        assert outsider.status_code == 403

        added = await client.post(
            f"/api/v1/organization-members/{org_id}", headers=owner_headers, json={"user_ids": [member_id]}
        )
        assert added.status_code == 201
        assert [(row["user_id"], row["role"]) for row in added.json()] == [(member_id, "member")]

        readable = await client.get(f"/api/v1/organizations/{org_id}", headers=member_headers)
        assert readable.status_code == 200
        read_only = await client.patch(
            f"/api/v1/organizations/{org_id}", headers=member_headers, json={"display_name": "Renamed"}
        )
        assert read_only.status_code == 403

        roster = await client.get(f"/api/v1/organization-members/{org_id}", headers=member_headers)
        assert {row["user_id"] for row in roster.json()} == {owner_id, member_id}

        promoted = await client.patch(
            f"/api/v1/organization-members/{org_id}/{member_id}", headers=owner_headers, json={"role": "manager"}
        )
        assert promoted.json()["role"] == "manager"

        # Managers may now edit the organization itself.
        renamed = await client.patch(
            f"/api/v1/organizations/{org_id}", headers=member_headers, json={"display_name": "Renamed"}
        )
        assert renamed.status_code == 200
        assert renamed.json()["display_name"] == "Renamed"

        removed = await client.delete(f"/api/v1/organization-members/{org_id}/{member_id}", headers=owner_headers)
        assert removed.status_code == 204
        revoked = await client.get(f"/api/v1/organizations/{org_id}", headers=member_headers)
        assert revoked.status_code == 403


@pytest.mark.asyncio
async def test_create_organization_rejects_unknown_fields_and_duplicates() -> None:
    _owner_id, headers = await create_test_principal()
    app = create_app()
    body = _org_body()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        extra = await client.post("/api/v1/organizations", headers=headers, json={**body, "owner_user_id": "x"})
        first = await client.post("/api/v1/organizations", headers=headers, json=body)
        duplicate = await client.post("/api/v1/organizations", headers=headers, json=body)

    assert extra.status_code == 400
    assert first.status_code == 201
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "ORGANIZATION_NAME_TAKEN"


@pytest.mark.asyncio
async def test_personal_organization_converts_to_team() -> None:
    user_id, headers = await create_test_principal()
    async with SessionLocal() as session:
        await ensure_personal_organization(session=session, store=get_policy_store(), user_id=user_id)
    app = create_app()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        listed = await client.get("/api/v1/organizations", headers=headers)
        personal = [row for row in listed.json() if row["organization_type"] == "personal"]
        assert len(personal) == 1
        org_id = personal[0]["id"]

        converted = await client.post(
            f"/api/v1/organizations/{org_id}/convert-to-team", headers=headers, json={"display_name": "Study Club"}
        )
        assert converted.status_code == 200
        assert converted.json()["organization_type"] == "team"
        assert converted.json()["display_name"] == "Study Club"

        again = await client.post(f"/api/v1/organizations/{org_id}/convert-to-team", headers=headers, json={})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ORGANIZATION_ALREADY_TEAM"


@pytest.mark.asyncio
async def test_admin_assigned_plan_entitles_organization_members() -> None:
    _admin_id, admin_headers = await create_test_admin()
    _owner_id, owner_headers = await create_test_principal()
    member_id, member_headers = await create_test_principal()
    plan = await create_test_plan(name="Campus", features=["terminals", "courses"])
    app = create_app()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        org_id = (await client.post("/api/v1/organizations", headers=owner_headers, json=_org_body())).json()["id"]
        await client.post(
            f"/api/v1/organization-members/{org_id}", headers=owner_headers, json={"user_ids": [member_id]}
        )

        none_yet = await client.get(f"/api/v1/organizations/{org_id}/subscription", headers=member_headers)
        assert none_yet.status_code == 404
        assert none_yet.json()["error"]["code"] == "SUBSCRIPTION_NOT_FOUND"

        not_admin = await client.post(
            f"/api/v1/organizations/{org_id}/subscription", headers=owner_headers, json={"plan_id": plan.id}
        )
        assert not_admin.status_code == 403

        assigned = await client.post(
            f"/api/v1/organizations/{org_id}/subscription",
            headers=admin_headers,
            json={"plan_id": plan.id, "quantity": 10},
        )
        assert assigned.status_code == 201
        assert assigned.json()["status"] == "active"
        assert assigned.json()["quantity"] == 10

        seen = await client.get(f"/api/v1/organizations/{org_id}/subscription", headers=member_headers)
        assert seen.json()["plan_name"] == "Campus"

        permissions = await client.get("/api/v1/users/me/permissions", headers=member_headers)

    body = permissions.json()
    assert body["has_any_subscription"] is True
    assert body["aggregated_features"] == ["courses", "terminals"]
    membership = [row for row in body["organization_memberships"] if row["organization_id"] == org_id]
    assert membership[0]["has_subscription"] is True
    assert membership[0]["is_owner"] is False


@pytest.mark.asyncio
async def test_class_groups_inside_an_organization() -> None:
    _owner_id, owner_headers = await create_test_principal()
    student_id, student_headers = await create_test_principal()
    app = create_app()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        org_id = (await client.post("/api/v1/organizations", headers=owner_headers, json=_org_body())).json()["id"]

        outsider_group = await client.post(
            "/api/v1/class-groups",
            headers=student_headers,
            json={"name": "intruders", "display_name": "Intruders", "organization_id": org_id, "max_members": 5},
        )
        assert outsider_group.status_code == 403

        created = await client.post(
            "/api/v1/class-groups",
            headers=owner_headers,
            json={"name": "cohort-a", "display_name": "Cohort A", "organization_id": org_id, "max_members": 5},
        )
        assert created.status_code == 201
        group_id = created.json()["id"]
        assert created.json()["organization_id"] == org_id

        joined = await client.post(
            f"/api/v1/group-members/{group_id}", headers=owner_headers, json={"user_ids": [student_id]}
        )
        assert joined.status_code == 201
        assert [row["role"] for row in joined.json()] == ["member"]

        student_groups = await client.get("/api/v1/class-groups", headers=student_headers)
        assert [(row["id"], row["role"]) for row in student_groups.json()] == [(group_id, "member")]

        cannot_edit = await client.patch(
            f"/api/v1/class-groups/{group_id}", headers=student_headers, json={"display_name": "Mine"}
        )
        assert cannot_edit.status_code == 403

        deleted = await client.delete(f"/api/v1/class-groups/{group_id}", headers=owner_headers)
        assert deleted.status_code == 204
        after = await client.get("/api/v1/class-groups", headers=student_headers)
        assert after.json() == []
