from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.persistence.repos.subscriptions import get_entitled_organization_subscription
from ocfcore.services.auth.roles import MEMBERSHIP_OWNER, ROLE_ADMINISTRATOR, ROLE_ORDER
from ocfcore.services.authz.matcher import parse_methods
from ocfcore.services.authz.policy_store import PolicyStore
from ocfcore.services.entitlements import enforce_route_entitlements, get_entitlements
from ocfcore.services import groups as group_service
from ocfcore.services import organizations as organization_service


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionRuleView:
    resource: str
    methods: list[str]


@dataclass(frozen=True)
class OrganizationAccess:
    organization_id: str
    organization_name: str
    organization_type: str
    role: str
    is_owner: bool
    features: list[str]
    has_subscription: bool


@dataclass(frozen=True)
class GroupAccess:
    group_id: str
    group_name: str
    organization_id: str | None
    role: str
    is_owner: bool


@dataclass(frozen=True)
class UserPermissions:
    user_id: str
    permissions: list[PermissionRuleView]
    roles: list[str]
    is_system_admin: bool
    organization_memberships: list[OrganizationAccess]
    group_memberships: list[GroupAccess]
    aggregated_features: list[str]
    capabilities: list[str]
    can_create_organization: bool
    can_create_group: bool
    has_any_subscription: bool
    primary_plan_id: str | None = None
    effective_limits: dict[str, int] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _forbidden_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": "Access denied"},
    )


async def platform_roles(store: PolicyStore, user_id: str) -> list[str]:
    roles = await store.get_implicit_roles_for_user(user_id)
    return [role for role in roles if role in ROLE_ORDER]


async def is_system_admin(store: PolicyStore, user_id: str) -> bool:
    return ROLE_ADMINISTRATOR in await store.get_implicit_roles_for_user(user_id)


async def get_user_permissions(
    *,
    session: AsyncSession,
    store: PolicyStore,
    user_id: str,
    now: datetime | None = None,
) -> UserPermissions:
    """Aggregate everything a client needs to decide what to show a principal.

    ``aggregated_features`` is the union of the display features of every
    organization with an active or trialing subscription; ``capabilities``
    is the flag-gated set actually used to admit requests.
    """
    resolved_now = now or _utc_now()
    rules = await store.get_implicit_permissions_for_user(user_id)
    permissions = [
        PermissionRuleView(resource=rule.resource, methods=sorted(parse_methods(rule.methods)))
        for rule in rules
    ]
    roles = await platform_roles(store, user_id)
    admin = ROLE_ADMINISTRATOR in roles

    organizations: list[OrganizationAccess] = []
    aggregated: set[str] = set()
    for organization, membership in await organization_service.list_user_memberships(session, user_id):
        entitled = await get_entitled_organization_subscription(session, organization.id, resolved_now)
        features = list(entitled[1].features or []) if entitled is not None else []
        if entitled is not None:
            aggregated.update(features)
        organizations.append(
            OrganizationAccess(
                organization_id=organization.id,
                organization_name=organization.display_name,
                organization_type=organization.organization_type,
                role=membership.role,
                is_owner=membership.role == MEMBERSHIP_OWNER,
                features=features,
                has_subscription=entitled is not None,
            )
        )

    group_memberships = [
        GroupAccess(
            group_id=group.id,
            group_name=group.display_name,
            organization_id=group.organization_id,
            role=membership.role,
            is_owner=membership.role == MEMBERSHIP_OWNER,
        )
        for group, membership in await group_service.list_user_memberships(session, user_id)
    ]

    entitlements = await get_entitlements(session, user_id, now=resolved_now)
    effective_limits: dict[str, int] = {}
    if entitlements.primary_plan is not None:
        plan = entitlements.primary_plan
        effective_limits = {
            "max_concurrent_users": plan.max_concurrent_users,
            "max_courses": plan.max_courses,
            "max_lab_sessions": plan.max_lab_sessions,
            "max_concurrent_terminals": plan.max_concurrent_terminals,
            "max_session_duration_minutes": plan.max_session_duration_minutes,
            "data_persistence_gb": plan.data_persistence_gb,
        }

    return UserPermissions(
        user_id=user_id,
        permissions=permissions,
        roles=roles,
        is_system_admin=admin,
        organization_memberships=organizations,
        group_memberships=group_memberships,
        aggregated_features=sorted(aggregated),
        capabilities=sorted(entitlements.capabilities),
        can_create_organization=True,
        can_create_group=admin or bool(organizations) or bool(group_memberships),
        has_any_subscription=(
            entitlements.has_personal_subscription
            or entitlements.has_organization_subscription
        ),
        primary_plan_id=entitlements.primary_plan.id if entitlements.primary_plan is not None else None,
        effective_limits=effective_limits,
    )


async def authorize_request(
    *,
    session: AsyncSession,
    store: PolicyStore,
    user_id: str,
    method: str,
    path: str,
    route_path: str,
    now: datetime | None = None,
) -> None:
    """Admit or reject one request for an authenticated principal.

    Administrators pass outright. Everyone else needs a matching policy
    rule, then the route's feature flag and quota when it has them.
    Membership changes take effect on the next request since nothing here
    is cached beyond the policy projection.
    """
    if await is_system_admin(store, user_id):
        return
    if not await store.enforce(user_id, path, method):
        logger.info("access_denied user_id=%s method=%s path=%s", user_id, method, path)
        raise _forbidden_error()
    await enforce_route_entitlements(
        session=session, user_id=user_id, method=method, route_path=route_path, now=now
    )
