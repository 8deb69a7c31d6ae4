from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from ocfcore.apps.api.errors import (
    UPSTREAM_ERRORS,
    http_exception_handler,
    unhandled_exception_handler,
    upstream_exception_handler,
    validation_exception_handler,
)
from ocfcore.apps.api.response import API_PREFIX, API_VERSION
from ocfcore.apps.api.routes.accesses import router as accesses_router
from ocfcore.apps.api.routes.auth import router as auth_router
from ocfcore.apps.api.routes.class_groups import router as class_groups_router
from ocfcore.apps.api.routes.group_members import router as group_members_router
from ocfcore.apps.api.routes.health import router as health_router
from ocfcore.apps.api.routes.licenses import router as licenses_router
from ocfcore.apps.api.routes.organization_members import router as organization_members_router
from ocfcore.apps.api.routes.organizations import router as organizations_router
from ocfcore.apps.api.routes.payments import router as payments_router
from ocfcore.apps.api.routes.terminals import router as terminals_router
from ocfcore.apps.api.routes.users import router as users_router
from ocfcore.core.logging import configure_logging
from ocfcore.services.authz.grants import ensure_default_policies
from ocfcore.services.authz.policy_store import get_policy_store


logger = logging.getLogger(__name__)

# Routes reachable without a bearer token.
_PUBLIC_PATHS = {
    f"{API_PREFIX}/health",
    f"{API_PREFIX}/auth/login",
    f"{API_PREFIX}/auth/refresh",
    f"{API_PREFIX}/auth/verify-email",
    f"{API_PREFIX}/auth/resend-verification",
    f"{API_PREFIX}/auth/password-reset/request",
    f"{API_PREFIX}/auth/password-reset/confirm",
    f"{API_PREFIX}/payments/plans",
    f"{API_PREFIX}/payments/plans/{{plan_id}}",
    f"{API_PREFIX}/payments/pricing-preview",
    f"{API_PREFIX}/payments/webhook",
}

_ROUTERS = (
    health_router,
    auth_router,
    # Platform administration of policy rules and role groupings.
    accesses_router,
    organizations_router,
    organization_members_router,
    class_groups_router,
    group_members_router,
    users_router,
    payments_router,
    licenses_router,
    terminals_router,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Build the policy projection and seed baseline rules before serving traffic.
    store = get_policy_store()
    await store.load_policy()
    await ensure_default_policies(store)
    logger.info("policy_store_ready")
    yield


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="OCF Core API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    for error_type in UPSTREAM_ERRORS:
        app.add_exception_handler(error_type, upstream_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    def custom_openapi() -> dict:
        # Inject bearer auth into the schema for every non-public operation.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="OCF Core API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
