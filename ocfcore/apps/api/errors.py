from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ocfcore.apps.api.response import error_response, is_versioned_request
from ocfcore.core.errors import IdentityProviderError, PaymentProcessorError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    410: "GONE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "REQUEST_VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _public_errors(errors: Any) -> list[dict[str, Any]]:
    # Drop submitted values (passwords, tokens) and exception context from field errors.
    return [
        jsonable_encoder({key: value for key, value in dict(error).items() if key not in {"input", "ctx", "url"}})
        for error in errors
    ]


def validation_error(errors: Any) -> HTTPException:
    # Body validation on versioned routes reports 400 with the field errors attached.
    return HTTPException(
        status_code=400,
        detail={
            "code": "REQUEST_VALIDATION_ERROR",
            "message": "Validation error",
            "errors": _public_errors(errors),
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers service-raised HTTPException as well as routing 404/405 from Starlette.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": _public_errors(exc.errors())}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": _public_errors(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=400)


async def upstream_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Identity provider and payment processor failures that escaped a service.
    logger.warning("upstream_failure path=%s error=%s", request.url.path, type(exc).__name__)
    payload = error_response(request=request, code="UPSTREAM_ERROR", message="Upstream service unavailable")
    return JSONResponse(content=payload, status_code=502)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)


UPSTREAM_ERRORS = (IdentityProviderError, PaymentProcessorError)
