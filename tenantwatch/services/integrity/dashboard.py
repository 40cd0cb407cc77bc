from __future__ import annotations

from typing import Any

from tenantwatch.domain.records import IntegrityDetails, IntegrityMetrics
from tenantwatch.services.integrity.alerts import AlertEngine
from tenantwatch.services.integrity.metrics import (
    HealthWeights,
    calculate_health_score,
    health_status,
)


_CATEGORY_LABELS = {
    "cross_tenant_contamination": "Cross-tenant contamination",
    "analytics_contamination": "Analytics contamination",
    "orphaned_records": "Orphaned records",
    "trigger_failures": "Trigger health",
    "performance_issues": "Query performance",
}
_ORPHAN_CLEANUP_THRESHOLD = 50
_PERFORMANCE_REVIEW_THRESHOLD = 5


def build_recommendations(metrics: IntegrityMetrics, details: IntegrityDetails | None = None) -> list[str]:
    # Derive operator guidance purely from non-zero metrics; no side effects.
    recommendations: list[str] = []
    for category, error in sorted(metrics.errors.items()):
        label = _CATEGORY_LABELS.get(category, category)
        recommendations.append(
            f"{label} metric unavailable ({error.get('code', 'UNKNOWN')}); check database connectivity and query timeouts."
        )
    if metrics.cross_tenant_contamination:
        recommendations.append("CRITICAL: Fix cross-tenant data contamination immediately.")
        recommendations.append("Review tenant ownership validation on every write path that links records.")
        affected = sorted(
            {
                tenant
                for record in (details.contamination if details else ())
                for tenant in (record.subject_owner_id, record.referenced_owner_id)
            }
        )
        if affected:
            recommendations.append(f"Audit data access for affected tenants: {', '.join(affected)}.")
    if metrics.analytics_contamination:
        recommendations.append("Fix analytics data contamination and audit analytics queries for tenant filters.")
        recommendations.append("Add database constraints that keep analytics rows on their parent's tenant.")
    if metrics.trigger_failures:
        recommendations.append("Investigate and fix failing database triggers using the trigger execution log.")
        recommendations.append("Review trigger error handling so failures surface before data drifts.")
    if metrics.orphaned_records and metrics.orphaned_records > _ORPHAN_CLEANUP_THRESHOLD:
        recommendations.append("Clean up orphaned records and add foreign key constraints.")
    elif metrics.orphaned_records:
        recommendations.append("Review orphaned records and remove rows whose references no longer exist.")
    if metrics.performance_issues and metrics.performance_issues > _PERFORMANCE_REVIEW_THRESHOLD:
        recommendations.append("Optimize slow queries and add indexes on tenant and foreign key columns.")
    if not recommendations:
        recommendations.append("Data integrity looks good! Continue regular monitoring.")
    return recommendations


class IntegrityDashboard:
    """Read-only assembly of metrics, details, alerts and guidance for dashboard consumers."""

    def __init__(self, alerts: AlertEngine, *, weights: HealthWeights | None = None) -> None:
        self._alerts = alerts
        self._weights = weights or HealthWeights()

    async def get_dashboard(self) -> dict[str, Any]:
        result = await self._alerts.monitor.run_full_integrity_check()
        score = calculate_health_score(result.summary, self._weights)
        return {
            "metrics": result.summary.to_dict(),
            "details": result.details.to_dict(),
            "alerts": {
                "active": [alert.to_dict() for alert in self._alerts.get_active_alerts()],
                "stats": self._alerts.get_alert_stats(),
            },
            "health_score": score,
            "health_status": health_status(score),
            "recommendations": build_recommendations(result.summary, result.details),
            "degraded": result.summary.degraded,
        }
