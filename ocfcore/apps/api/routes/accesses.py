from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from ocfcore.apps.api.deps import Principal, get_store, parse_body, require_role
from ocfcore.services.audit import record_event
from ocfcore.services.auth.roles import ROLE_ADMINISTRATOR
from ocfcore.services.authz.matcher import InvalidPatternError, normalize_methods, parse_methods
from ocfcore.services.authz.policy_store import PolicyStore


router = APIRouter(prefix="/accesses", tags=["accesses"])


class AccessRule(BaseModel):
    subject: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    methods: list[str] | str = Field(min_length=1)


class AccessRuleResponse(BaseModel):
    subject: str
    resource: str
    methods: list[str]


class AccessRemoval(BaseModel):
    subject: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    methods: list[str] | str | None = None


class RoleAssignment(BaseModel):
    user_id: str = Field(min_length=1)
    role: str = Field(min_length=1)


class RoleAssignmentsResponse(BaseModel):
    user_id: str
    roles: list[str]


class ChangeResponse(BaseModel):
    changed: int


def _invalid_pattern_error(exc: InvalidPatternError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_POLICY_PATTERN", "message": str(exc)},
    )


async def _audit(request: Request, principal: Principal, event_type: str, metadata: dict[str, object]) -> None:
    await record_event(
        actor_type="user",
        actor_id=principal.user_id,
        actor_roles=principal.roles,
        event_type=event_type,
        outcome="success",
        resource_type="policy",
        request=request,
        metadata=metadata,
    )


@router.get("/users/{user_id}", response_model=list[AccessRuleResponse])
async def list_user_accesses(
    user_id: str,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    store: PolicyStore = Depends(get_store),
) -> list[AccessRuleResponse]:
    rules = await store.get_implicit_permissions_for_user(user_id)
    return [
        AccessRuleResponse(subject=rule.subject, resource=rule.resource, methods=sorted(parse_methods(rule.methods)))
        for rule in rules
    ]


@router.post("", response_model=AccessRuleResponse, status_code=status.HTTP_201_CREATED)
async def add_access(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    store: PolicyStore = Depends(get_store),
) -> AccessRuleResponse:
    body = await parse_body(request, AccessRule)
    try:
        methods = normalize_methods(body.methods)
        await store.add_policy(body.subject, body.resource, methods)
    except InvalidPatternError as exc:
        raise _invalid_pattern_error(exc) from exc
    await _audit(
        request,
        principal,
        "authz.policy.added",
        {"subject": body.subject, "resource": body.resource, "methods": methods},
    )
    return AccessRuleResponse(subject=body.subject, resource=body.resource, methods=sorted(parse_methods(methods)))


@router.delete("", response_model=ChangeResponse)
async def remove_access(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    store: PolicyStore = Depends(get_store),
) -> ChangeResponse:
    body = await parse_body(request, AccessRemoval)
    try:
        removed = await store.remove_policy(body.subject, body.resource, body.methods)
    except InvalidPatternError as exc:
        raise _invalid_pattern_error(exc) from exc
    await _audit(
        request,
        principal,
        "authz.policy.removed",
        {"subject": body.subject, "resource": body.resource, "removed": removed},
    )
    return ChangeResponse(changed=removed)


@router.post("/roles", response_model=RoleAssignmentsResponse, status_code=status.HTTP_201_CREATED)
async def assign_role(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    store: PolicyStore = Depends(get_store),
) -> RoleAssignmentsResponse:
    body = await parse_body(request, RoleAssignment)
    await store.add_grouping_policy(body.user_id, body.role)
    await _audit(request, principal, "authz.role.assigned", {"user_id": body.user_id, "role": body.role})
    return RoleAssignmentsResponse(user_id=body.user_id, roles=await store.get_roles_for_user(body.user_id))


@router.delete("/roles", response_model=RoleAssignmentsResponse)
async def unassign_role(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMINISTRATOR)),
    store: PolicyStore = Depends(get_store),
) -> RoleAssignmentsResponse:
    body = await parse_body(request, RoleAssignment)
    await store.remove_grouping_policy(body.user_id, body.role)
    await _audit(request, principal, "authz.role.removed", {"user_id": body.user_id, "role": body.role})
    return RoleAssignmentsResponse(user_id=body.user_id, roles=await store.get_roles_for_user(body.user_id))
