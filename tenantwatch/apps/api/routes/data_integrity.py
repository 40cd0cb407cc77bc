from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from tenantwatch.apps.api.deps import AdminPrincipal, get_integrity_service, require_admin
from tenantwatch.apps.api.openapi import (
    ALERT_ERROR_RESPONSES,
    DEFAULT_ERROR_RESPONSES,
    DETECTION_ERROR_RESPONSES,
)
from tenantwatch.apps.api.response import success_response
from tenantwatch.core.errors import UnknownAlertError
from tenantwatch.domain.records import Alert, AlertStatus, Severity
from tenantwatch.services.integrity.orphans import group_orphans_by_type
from tenantwatch.services.integrity.performance import count_performance_issues
from tenantwatch.services.integrity.service import IntegrityService
from tenantwatch.services.telemetry import counters_snapshot, detector_stats, external_call_stats, p95_latency


router = APIRouter(
    prefix="/admin/data-integrity",
    tags=["data-integrity"],
    responses=DEFAULT_ERROR_RESPONSES,
)


def _alert_not_found(alert_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "ALERT_NOT_FOUND", "message": f"Alert {alert_id} not found"},
    )


def _alert_payload(alert: Alert) -> dict[str, Any]:
    return alert.to_dict()


@router.get("/metrics", responses=DETECTION_ERROR_RESPONSES)
async def get_metrics(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    # Failed categories come back as null plus an errors entry, never as a request failure.
    metrics = await service.monitor.get_data_integrity_metrics()
    return success_response(request=request, data=metrics.to_dict())


@router.get("/full-check")
async def full_check(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    result = await service.monitor.run_full_integrity_check()
    return success_response(request=request, data=result.to_dict())


@router.get("/contamination/cross-tenant", responses=DETECTION_ERROR_RESPONSES)
async def cross_tenant_contamination(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    records = await service.monitor.cross_tenant_contamination()
    return success_response(
        request=request,
        data={
            "contamination": [record.to_dict() for record in records],
            "count": len(records),
            "has_critical_issues": bool(records),
        },
    )


@router.get("/contamination/analytics", responses=DETECTION_ERROR_RESPONSES)
async def analytics_contamination(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    records = await service.monitor.analytics_contamination()
    return success_response(
        request=request,
        data={"contamination": [record.to_dict() for record in records], "count": len(records)},
    )


@router.get("/orphaned-records", responses=DETECTION_ERROR_RESPONSES)
async def orphaned_records(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    records = await service.monitor.orphans.detect_orphaned_records()
    return success_response(
        request=request,
        data={
            "orphaned_records": [record.to_dict() for record in records],
            "count": len(records),
            "by_type": group_orphans_by_type(records),
        },
    )


@router.get("/trigger-health", responses=DETECTION_ERROR_RESPONSES)
async def trigger_health(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    records = await service.monitor.triggers.check_trigger_health()
    return success_response(
        request=request,
        data={"trigger_failures": [record.to_dict() for record in records], "count": len(records)},
    )


@router.get("/performance", responses=DETECTION_ERROR_RESPONSES)
async def query_performance(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    records = await service.monitor.performance.check_query_performance()
    return success_response(
        request=request,
        data={
            "slow_queries": [record.to_dict() for record in records],
            "performance_issues": count_performance_issues(records),
            "count": len(records),
            "has_critical_issues": any(record.severity == Severity.HIGH for record in records),
        },
    )


@router.get("/isolation/{tenant_id}", responses=DETECTION_ERROR_RESPONSES)
async def tenant_isolation(
    tenant_id: str,
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    report = await service.monitor.contamination.validate_tenant_isolation(tenant_id)
    return success_response(request=request, data=report.to_dict())


@router.get("/alerts")
async def list_alerts(
    request: Request,
    status: AlertStatus | None = Query(default=None),
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    # Default view is the open set (active + acknowledged); pass status to see history.
    alerts = service.registry.all(status) if status is not None else service.alerts.get_active_alerts()
    return success_response(
        request=request,
        data={
            "alerts": [_alert_payload(alert) for alert in alerts],
            "stats": service.alerts.get_alert_stats(),
        },
    )


@router.post("/alerts/check")
async def check_alerts(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    alerts = await service.alerts.check_alerts()
    return success_response(
        request=request,
        data={"alerts": [_alert_payload(alert) for alert in alerts], "count": len(alerts)},
    )


@router.post("/alerts/{alert_id}/acknowledge", responses=ALERT_ERROR_RESPONSES)
async def acknowledge_alert(
    alert_id: str,
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    # Unknown ids are a 404; known-but-resolved ids report acknowledged=false.
    try:
        service.registry.require(alert_id)
    except UnknownAlertError:
        raise _alert_not_found(alert_id) from None
    acknowledged = await service.alerts.acknowledge_alert(alert_id)
    alert = service.registry.require(alert_id)
    return success_response(
        request=request,
        data={"alert_id": alert_id, "acknowledged": acknowledged, "status": alert.status.value},
    )


@router.post("/alerts/{alert_id}/resolve", responses=ALERT_ERROR_RESPONSES)
async def resolve_alert(
    alert_id: str,
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    try:
        service.registry.require(alert_id)
    except UnknownAlertError:
        raise _alert_not_found(alert_id) from None
    resolved = await service.alerts.resolve_alert(alert_id)
    # A zero-length resolved history drops the alert as soon as it resolves.
    alert = service.registry.get(alert_id)
    status = alert.status.value if alert is not None else "resolved"
    return success_response(
        request=request,
        data={"alert_id": alert_id, "resolved": resolved, "status": status},
    )


@router.get("/dashboard")
async def dashboard(
    request: Request,
    service: IntegrityService = Depends(get_integrity_service),
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    payload = await service.dashboard.get_dashboard()
    return success_response(request=request, data=payload)


@router.get("/telemetry")
async def telemetry(
    request: Request,
    _admin: AdminPrincipal = Depends(require_admin),
) -> dict:
    # Process-local counters for detector failures, alert volume and webhook delivery.
    return success_response(
        request=request,
        data={
            "counters": counters_snapshot(),
            "request_p95_ms": p95_latency(3600, path_prefix="/v1/admin/data-integrity"),
            "external_calls": external_call_stats(3600),
            "detectors": detector_stats(3600),
        },
    )
