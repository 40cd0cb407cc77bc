from __future__ import annotations

from fastapi import FastAPI, Header, HTTPException, Request, status
from pydantic import BaseModel

from tenantwatch.core.config import get_settings
from tenantwatch.persistence.db import get_engine
from tenantwatch.services.integrity.service import IntegrityService, build_integrity_service


_ADMIN_ROLES = {"admin", "super_admin"}


class AdminPrincipal(BaseModel):
    # Identity asserted by the upstream auth layer; this service only checks the role.
    subject_id: str
    role: str


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _upstream_principal(request: Request) -> AdminPrincipal | None:
    # Prefer a principal already attached by upstream middleware.
    principal = getattr(request.state, "principal", None)
    if principal is None:
        return None
    if isinstance(principal, AdminPrincipal):
        return principal
    if isinstance(principal, dict):
        return AdminPrincipal(subject_id=str(principal.get("subject_id", "")), role=str(principal.get("role", "")))
    return AdminPrincipal(
        subject_id=str(getattr(principal, "subject_id", "")),
        role=str(getattr(principal, "role", "")),
    )


async def require_admin(
    request: Request,
    x_admin_id: str | None = Header(default=None),
    x_role: str | None = Header(default=None),
) -> AdminPrincipal:
    # Authorization is enforced upstream; this gate only rejects calls that arrive without an admin identity.
    settings = get_settings()
    if not settings.auth_enabled:
        return AdminPrincipal(subject_id="auth-disabled", role="admin")
    principal = _upstream_principal(request)
    if principal is None and settings.auth_trust_headers and x_admin_id:
        principal = AdminPrincipal(subject_id=x_admin_id, role=(x_role or "").strip().lower())
    if principal is None or not principal.subject_id:
        raise _auth_error("Admin identity required")
    if principal.role not in _ADMIN_ROLES:
        raise _forbidden_error("Admin role required")
    return principal


def service_for_app(app: FastAPI) -> IntegrityService:
    # One service (and alert registry) per app; built from the shared engine on first use.
    service = getattr(app.state, "integrity_service", None)
    if service is None:
        service = build_integrity_service(get_engine())
        app.state.integrity_service = service
    return service


def get_integrity_service(request: Request) -> IntegrityService:
    return service_for_app(request.app)
