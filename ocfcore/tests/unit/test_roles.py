from __future__ import annotations

import pytest

from ocfcore.services.auth.roles import (
    ROLE_ADMINISTRATOR,
    ROLE_MEMBER,
    highest_role,
    is_manager_role,
    map_identity_role,
    normalize_membership_role,
    normalize_role,
    role_allows,
)


def test_identity_roles_collapse_onto_platform_roles() -> None:
    assert map_identity_role("Admin") == ROLE_ADMINISTRATOR
    assert map_identity_role(" teacher ") == ROLE_MEMBER
    # Unknown provider roles never escalate.
    assert map_identity_role("superuser") == ROLE_MEMBER


def test_highest_role_defaults_to_member() -> None:
    assert highest_role([]) == ROLE_MEMBER
    assert highest_role([ROLE_MEMBER, ROLE_ADMINISTRATOR]) == ROLE_ADMINISTRATOR
    assert highest_role(["unknown"]) == ROLE_MEMBER


def test_role_allows_respects_order() -> None:
    assert role_allows(role=ROLE_ADMINISTRATOR, minimum_role=ROLE_MEMBER)
    assert not role_allows(role=ROLE_MEMBER, minimum_role=ROLE_ADMINISTRATOR)


def test_role_normalization_rejects_unknown_values() -> None:
    assert normalize_role(" Administrator ") == ROLE_ADMINISTRATOR
    assert normalize_membership_role("MANAGER") == "manager"
    with pytest.raises(ValueError):
        normalize_role("guest")
    with pytest.raises(ValueError):
        normalize_membership_role("guest")


def test_owners_count_as_managers() -> None:
    assert is_manager_role("owner")
    assert is_manager_role("manager")
    assert not is_manager_role("member")
