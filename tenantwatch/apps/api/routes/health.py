from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tenantwatch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantwatch.apps.api.response import ResponseMeta, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class HealthEnvelope(BaseModel):
    success: bool = True
    data: HealthResponse
    meta: ResponseMeta


@router.get("/health", response_model=HealthEnvelope)
async def health(request: Request) -> dict:
    # Liveness only; integrity state lives behind the admin routes.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload.model_dump())
