from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantwatch.apps.api.deps import service_for_app
from tenantwatch.apps.api.errors import (
    detection_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    unknown_alert_exception_handler,
    validation_exception_handler,
)
from tenantwatch.apps.api.response import API_VERSION
from tenantwatch.apps.api.routes.data_integrity import router as data_integrity_router
from tenantwatch.apps.api.routes.health import router as health_router
from tenantwatch.core.config import get_settings
from tenantwatch.core.errors import DetectionError, UnknownAlertError
from tenantwatch.core.logging import configure_logging
from tenantwatch.persistence.db import dispose_engine
from tenantwatch.services.integrity.service import IntegrityService
from tenantwatch.services.integrity.worker import run_alert_loop
from tenantwatch.services.telemetry import record_request


def create_app(service: IntegrityService | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Optionally run background alerting alongside the API; the loop shares the app's registry.
        task: asyncio.Task | None = None
        if get_settings().integrity_background_enabled:
            task = asyncio.create_task(run_alert_loop(service_for_app(app)))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
            if service is None:
                await dispose_engine()

    app = FastAPI(title="tenantwatch data integrity API", lifespan=lifespan)
    if service is not None:
        app.state.integrity_service = service

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(DetectionError, detection_exception_handler)
    app.add_exception_handler(UnknownAlertError, unknown_alert_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Admin-only integrity monitoring, alerts and dashboard.
    app.include_router(data_integrity_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
