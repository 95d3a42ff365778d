from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from grantline.apps.api.response import error_response
from grantline.core.errors import (
    AccessGrantNotFoundError,
    AccessGrantStateError,
    CredentialDecryptionError,
    CredentialValidationError,
    EncryptionConfigError,
    GrantlineError,
    ManualTaskNotFoundError,
    ManualTaskStateError,
    ProviderConfigError,
    ProvisioningStateError,
    PurchaseNotFoundError,
    ResourceNotFoundError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain error -> (status, code); first match wins, so subclasses come first.
_DOMAIN_ERRORS: tuple[tuple[type[GrantlineError], int, str], ...] = (
    (AccessGrantNotFoundError, 404, "ACCESS_GRANT_NOT_FOUND"),
    (ManualTaskNotFoundError, 404, "MANUAL_TASK_NOT_FOUND"),
    (ResourceNotFoundError, 404, "RESOURCE_NOT_FOUND"),
    (PurchaseNotFoundError, 404, "PURCHASE_NOT_FOUND"),
    (AccessGrantStateError, 409, "ACCESS_GRANT_INVALID_STATE"),
    (ManualTaskStateError, 409, "MANUAL_TASK_INVALID_STATE"),
    (ProvisioningStateError, 409, "PROVISIONING_STATE_CONFLICT"),
    (CredentialValidationError, 422, "CREDENTIALS_INVALID"),
    (WebhookSignatureError, 400, "INVALID_SIGNATURE"),
    (EncryptionConfigError, 503, "SERVICE_MISCONFIGURED"),
    (ProviderConfigError, 503, "SERVICE_MISCONFIGURED"),
    (CredentialDecryptionError, 500, "CREDENTIALS_UNREADABLE"),
)


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


def classify_domain_error(exc: GrantlineError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 400, "BAD_REQUEST"


async def grantline_error_handler(request: Request, exc: GrantlineError) -> JSONResponse:
    status_code, code = classify_domain_error(exc)
    details: dict[str, Any] | None = None
    if isinstance(exc, CredentialValidationError):
        details = {"http_status": exc.http_status, "error_kind": exc.error_kind}
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s", request.url.path, code)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure Starlette-raised exceptions are also wrapped consistently.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
