from __future__ import annotations

from typing import Any

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    # Detector failures carry {"category": ...}; validation failures carry {"errors": [...]}.
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    """Body of every non-2xx response; integrity clients branch on ``success``."""

    success: bool = False
    error: ErrorDetail
    meta: ResponseMeta


def _meta(request: Request) -> dict[str, Any]:
    # The request middleware stamps request_id; handlers that run outside it fall back to "unknown".
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or "unknown"
    return ResponseMeta(request_id=request_id).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"success": False, "error": error.model_dump(exclude_none=True), "meta": _meta(request)}
