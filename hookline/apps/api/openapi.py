from __future__ import annotations

from typing import Any

from hookline.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _error_response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Tenant-Id header is required"),
    ),
    404: _error_response(
        "Not found",
        _error_example(code="WEBHOOK_NOT_FOUND", message="Webhook not found"),
    ),
    409: _error_response(
        "Conflict",
        _error_example(
            code="WEBHOOK_LIMIT_REACHED",
            message="Tenant already has the maximum of 10 webhooks",
            details={"limit": 10},
        ),
    ),
    422: _error_response(
        "Validation error",
        _error_example(code="WEBHOOK_VALIDATION_ERROR", message="url must use https://"),
    ),
    500: _error_response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}
