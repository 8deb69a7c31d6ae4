from __future__ import annotations


ROLE_MEMBER = "member"
ROLE_ADMINISTRATOR = "administrator"

# Platform roles; administrator inherits member through a grouping rule.
ROLE_ORDER: dict[str, int] = {
    ROLE_MEMBER: 1,
    ROLE_ADMINISTRATOR: 2,
}

MEMBERSHIP_OWNER = "owner"
MEMBERSHIP_MANAGER = "manager"
MEMBERSHIP_MEMBER = "member"

MEMBERSHIP_ROLES = (MEMBERSHIP_OWNER, MEMBERSHIP_MANAGER, MEMBERSHIP_MEMBER)

# Identity-provider role names collapse onto the two platform roles.
_IDP_ROLE_MAP: dict[str, str] = {
    "user": ROLE_MEMBER,
    "member": ROLE_MEMBER,
    "student": ROLE_MEMBER,
    "premium_student": ROLE_MEMBER,
    "teacher": ROLE_MEMBER,
    "trainer": ROLE_MEMBER,
    "supervisor": ROLE_MEMBER,
    "admin": ROLE_ADMINISTRATOR,
    "administrator": ROLE_ADMINISTRATOR,
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased platform role vocabulary.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def map_identity_role(role_name: str) -> str:
    return _IDP_ROLE_MAP.get(role_name.strip().lower(), ROLE_MEMBER)


def highest_role(roles: list[str]) -> str:
    # Pick the most privileged platform role, defaulting to member.
    best = ROLE_MEMBER
    for role in roles:
        if ROLE_ORDER.get(role, 0) > ROLE_ORDER[best]:
            best = role
    return best


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def normalize_membership_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in MEMBERSHIP_ROLES:
        raise ValueError(f"Unsupported membership role: {role}")
    return normalized


def is_manager_role(role: str) -> bool:
    # Owners carry every manager capability.
    return role in (MEMBERSHIP_OWNER, MEMBERSHIP_MANAGER)
