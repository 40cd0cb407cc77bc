from __future__ import annotations

from typing import Any

from tenantwatch.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "success": False,
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *examples: dict[str, Any]) -> dict[str, Any]:
    # Several codes can share one status; OpenAPI lists those as named examples.
    if len(examples) == 1:
        content: dict[str, Any] = {"example": examples[0]}
    else:
        content = {"examples": {example["error"]["code"]: {"value": example} for example in examples}}
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": content},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Admin identity required"),
    ),
    403: _error_response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Admin role required"),
    ),
    422: _error_response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _error_response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

DETECTION_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    503: _error_response(
        "Detector unavailable",
        _error_example(
            code="DETECTION_TIMEOUT",
            message="cross_tenant_contamination query timed out after 5s",
            details={"category": "cross_tenant_contamination"},
        ),
        _error_example(
            code="DETECTION_CONNECTION_FAILED",
            message="orphaned_records could not reach the store: ConnectionRefusedError",
            details={"category": "orphaned_records"},
        ),
    ),
}

ALERT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: _error_response(
        "Alert not found",
        _error_example(code="ALERT_NOT_FOUND", message="Alert cross-tenant-contamination-0f3a not found"),
    ),
}
