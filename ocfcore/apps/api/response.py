from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
API_PREFIX = f"/api/{API_VERSION}"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    # Extra keys from a structured HTTPException detail, e.g. quota figures.
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    # The middleware normally assigns one; handlers raised before it ran still need an id.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Only errors are enveloped; successful responses are the bare resource.
    return {
        "error": ErrorDetail(code=code, message=message, details=details).model_dump(exclude_none=True),
        "meta": ResponseMeta(request_id=get_request_id(request)).model_dump(),
    }
