from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hookline.apps.api.response import error_response, is_versioned_request
from hookline.core.errors import (
    DeliveryNotFoundError,
    DeliveryStateError,
    HooklineError,
    KeyringConfigurationError,
    WebhookNotFoundError,
    WebhookQuotaExceededError,
    WebhookValidationError,
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
}

# Domain errors mapped to (status, code); order matters only for subclasses.
_HOOKLINE_ERROR_MAP: tuple[tuple[type[HooklineError], int, str], ...] = (
    (WebhookValidationError, 422, "WEBHOOK_VALIDATION_ERROR"),
    (WebhookQuotaExceededError, 409, "WEBHOOK_LIMIT_REACHED"),
    (WebhookNotFoundError, 404, "WEBHOOK_NOT_FOUND"),
    (DeliveryNotFoundError, 404, "DELIVERY_NOT_FOUND"),
    (DeliveryStateError, 409, "DELIVERY_STATE_CONFLICT"),
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


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405 come from Starlette and need the same envelope.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def hookline_error_handler(request: Request, exc: HooklineError) -> JSONResponse:
    # Keyring problems are operator misconfiguration; never echo their message to clients.
    if isinstance(exc, KeyringConfigurationError):
        logger.error("keyring_misconfigured path=%s", request.url.path)
        payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
        return JSONResponse(content=payload, status_code=500)
    for error_type, status_code, code in _HOOKLINE_ERROR_MAP:
        if isinstance(exc, error_type):
            details = {"limit": exc.limit} if isinstance(exc, WebhookQuotaExceededError) else None
            payload = error_response(request=request, code=code, message=str(exc), details=details)
            return JSONResponse(content=payload, status_code=status_code)
    return await unhandled_exception_handler(request, exc)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
