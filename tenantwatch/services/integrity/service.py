from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from tenantwatch.core.config import Settings, get_settings
from tenantwatch.persistence.queries import QueryRunner
from tenantwatch.services.integrity.alerts import AlertEngine, AlertRegistry, default_rules
from tenantwatch.services.integrity.contamination import ContaminationDetector
from tenantwatch.services.integrity.dashboard import IntegrityDashboard
from tenantwatch.services.integrity.metrics import IntegrityMonitor, weights_from_settings
from tenantwatch.services.integrity.notifications import AlertNotifier, notifier_from_settings
from tenantwatch.services.integrity.orphans import OrphanDetector
from tenantwatch.services.integrity.performance import QueryPerformanceMonitor
from tenantwatch.services.integrity.relationships import RelationshipCatalog, default_catalog
from tenantwatch.services.integrity.severity import thresholds_from_settings
from tenantwatch.services.integrity.triggers import TriggerHealthMonitor


@dataclass
class IntegrityService:
    # One instance per process; the registry inside is the only mutable shared state.
    runner: QueryRunner
    monitor: IntegrityMonitor
    alerts: AlertEngine
    dashboard: IntegrityDashboard

    @property
    def registry(self) -> AlertRegistry:
        return self.alerts.registry


def build_integrity_service(
    engine: AsyncEngine,
    *,
    settings: Settings | None = None,
    catalog: RelationshipCatalog | None = None,
    registry: AlertRegistry | None = None,
    notifier: AlertNotifier | None = None,
) -> IntegrityService:
    settings = settings or get_settings()
    catalog = catalog or default_catalog()
    thresholds = thresholds_from_settings(settings)
    runner = QueryRunner(engine, timeout_s=settings.integrity_query_timeout_s)
    monitor = IntegrityMonitor(
        contamination=ContaminationDetector(runner, catalog, thresholds=thresholds),
        orphans=OrphanDetector(runner, catalog),
        triggers=TriggerHealthMonitor(
            runner,
            log_table=settings.integrity_trigger_log_table,
            window_hours=settings.integrity_trigger_window_hours,
        ),
        performance=QueryPerformanceMonitor(
            runner,
            catalog.monitored_tables(),
            slow_ms=settings.integrity_slow_query_ms,
            critical_ms=settings.integrity_critical_query_ms,
        ),
    )
    alerts = AlertEngine(
        monitor,
        registry or AlertRegistry(max_resolved=settings.integrity_alert_resolved_history),
        rules=default_rules(thresholds=thresholds, orphan_alert_min=settings.integrity_orphan_alert_min),
        notifier=notifier or notifier_from_settings(),
    )
    return IntegrityService(
        runner=runner,
        monitor=monitor,
        alerts=alerts,
        dashboard=IntegrityDashboard(alerts, weights=weights_from_settings(settings)),
    )
