from __future__ import annotations

from dataclasses import dataclass
import logging

from ocfcore.services.auth.roles import ROLE_ADMINISTRATOR, ROLE_MEMBER
from ocfcore.services.authz.policy_store import PolicyStore


logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

ENTITY_ORGANIZATION = "organization"
ENTITY_CLASS_GROUP = "class_group"

_READ = "GET"
_ENTITY_MANAGE = "(GET|PATCH|DELETE)"
_SUBRESOURCE_MANAGE = "(GET|POST|PATCH|DELETE)"


@dataclass(frozen=True)
class _ResourceGrant:
    template: str
    member_methods: str
    manager_methods: str


# Routes covered by a membership; {id} is substituted with the entity id.
_ENTITY_RESOURCES: dict[str, tuple[_ResourceGrant, ...]] = {
    ENTITY_ORGANIZATION: (
        _ResourceGrant(f"{API_PREFIX}/organizations/{{id}}", _READ, _ENTITY_MANAGE),
        _ResourceGrant(f"{API_PREFIX}/organizations/{{id}}/*", _READ, _SUBRESOURCE_MANAGE),
        _ResourceGrant(f"{API_PREFIX}/organization-members/{{id}}", _READ, _SUBRESOURCE_MANAGE),
        _ResourceGrant(f"{API_PREFIX}/organization-members/{{id}}/*", _READ, _SUBRESOURCE_MANAGE),
    ),
    ENTITY_CLASS_GROUP: (
        _ResourceGrant(f"{API_PREFIX}/class-groups/{{id}}", _READ, _ENTITY_MANAGE),
        _ResourceGrant(f"{API_PREFIX}/class-groups/{{id}}/*", _READ, _SUBRESOURCE_MANAGE),
        _ResourceGrant(f"{API_PREFIX}/group-members/{{id}}", _READ, _SUBRESOURCE_MANAGE),
        _ResourceGrant(f"{API_PREFIX}/group-members/{{id}}/*", _READ, _SUBRESOURCE_MANAGE),
    ),
}

# Baseline routes every signed-in member may call; entity routes come from membership grants.
DEFAULT_MEMBER_POLICIES: tuple[tuple[str, str], ...] = (
    (f"{API_PREFIX}/organizations", "(GET|POST)"),
    (f"{API_PREFIX}/class-groups", "(GET|POST)"),
    (f"{API_PREFIX}/users/me", "GET"),
    (f"{API_PREFIX}/users/me/*", "(GET|POST)"),
    (f"{API_PREFIX}/payments/*", "(GET|POST|PATCH|DELETE)"),
    (f"{API_PREFIX}/licenses", "GET"),
    (f"{API_PREFIX}/licenses/*", "(GET|POST|PATCH|DELETE)"),
    (f"{API_PREFIX}/terminals", "(GET|POST)"),
    (f"{API_PREFIX}/terminals/*", "(GET|POST)"),
)


def entity_role(entity: str, entity_id: str) -> str:
    return f"{entity}:{entity_id}"


def entity_manager_role(entity: str, entity_id: str) -> str:
    return f"{entity}_manager:{entity_id}"


async def ensure_default_policies(store: PolicyStore) -> None:
    # Seed baseline member routes and the administrator -> member inheritance edge.
    await store.add_policies([(ROLE_MEMBER, resource, methods) for resource, methods in DEFAULT_MEMBER_POLICIES])
    await store.add_grouping_policy(ROLE_ADMINISTRATOR, ROLE_MEMBER)


async def ensure_entity_policies(store: PolicyStore, *, entity: str, entity_id: str) -> None:
    # Materialise the member and manager rule sets for one entity.
    member = entity_role(entity, entity_id)
    manager = entity_manager_role(entity, entity_id)
    rules: list[tuple[str, str, str]] = []
    for grant in _ENTITY_RESOURCES[entity]:
        resource = grant.template.replace("{id}", entity_id)
        rules.append((member, resource, grant.member_methods))
        rules.append((manager, resource, grant.manager_methods))
    await store.add_policies(rules)
    # Managers inherit every member permission.
    await store.add_grouping_policy(manager, member)


async def grant_entity_access(
    store: PolicyStore,
    *,
    entity: str,
    entity_id: str,
    user_id: str,
    manager: bool,
) -> None:
    await ensure_entity_policies(store, entity=entity, entity_id=entity_id)
    await store.add_grouping_policy(user_id, entity_role(entity, entity_id))
    if manager:
        await store.add_grouping_policy(user_id, entity_manager_role(entity, entity_id))
    else:
        await store.remove_grouping_policy(user_id, entity_manager_role(entity, entity_id))


async def revoke_entity_access(store: PolicyStore, *, entity: str, entity_id: str, user_id: str) -> None:
    # Removing the groupings is enough; the next enforce sees the change.
    await store.remove_grouping_policy(user_id, entity_manager_role(entity, entity_id))
    await store.remove_grouping_policy(user_id, entity_role(entity, entity_id))


async def drop_entity_policies(store: PolicyStore, *, entity: str, entity_id: str) -> None:
    # Remove every rule and grouping that references a deleted entity.
    removed = await store.remove_subject_policies(entity_manager_role(entity, entity_id))
    removed += await store.remove_subject_policies(entity_role(entity, entity_id))
    logger.info("entity_policies_dropped entity=%s entity_id=%s removed=%s", entity, entity_id, removed)
