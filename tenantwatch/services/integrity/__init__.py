from tenantwatch.services.integrity.alerts import AlertEngine, AlertRegistry, AlertRule, default_rules
from tenantwatch.services.integrity.contamination import ContaminationDetector
from tenantwatch.services.integrity.dashboard import IntegrityDashboard, build_recommendations
from tenantwatch.services.integrity.metrics import (
    HealthWeights,
    IntegrityMonitor,
    calculate_health_score,
    health_status,
)
from tenantwatch.services.integrity.orphans import OrphanDetector
from tenantwatch.services.integrity.performance import QueryPerformanceMonitor
from tenantwatch.services.integrity.service import IntegrityService, build_integrity_service
from tenantwatch.services.integrity.severity import SeverityThresholds, classify_severity
from tenantwatch.services.integrity.triggers import TriggerHealthMonitor, provision_trigger_log

__all__ = [
    "AlertEngine",
    "AlertRegistry",
    "AlertRule",
    "ContaminationDetector",
    "HealthWeights",
    "IntegrityDashboard",
    "IntegrityMonitor",
    "IntegrityService",
    "OrphanDetector",
    "QueryPerformanceMonitor",
    "SeverityThresholds",
    "TriggerHealthMonitor",
    "build_integrity_service",
    "build_recommendations",
    "calculate_health_score",
    "classify_severity",
    "default_rules",
    "health_status",
    "provision_trigger_log",
]
