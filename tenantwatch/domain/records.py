"""Typed integrity records produced at the query boundary.

Detector output never leaves the persistence layer as raw rows; everything
downstream works with the frozen dataclasses defined here.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class ContaminationRecord:
    subject_owner_id: str
    referenced_owner_id: str
    mismatched_count: int
    table_name: str
    severity: Severity = Severity.LOW

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.value
        return payload


@dataclass(frozen=True)
class OrphanedRecord:
    orphan_type: str
    record_id: str
    table_name: str
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "orphan_type": self.orphan_type,
            "record_id": self.record_id,
            "table_name": self.table_name,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class TriggerFailureRecord:
    trigger_name: str
    table_name: str
    operation: str
    error_message: str | None
    occurred_at: datetime | None
    # Number of log rows collapsed into this record.
    failure_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_name": self.trigger_name,
            "table_name": self.table_name,
            "operation": self.operation,
            "error_message": self.error_message,
            "occurred_at": _iso(self.occurred_at),
            "failure_count": self.failure_count,
        }


@dataclass(frozen=True)
class SlowQueryRecord:
    query: str
    calls: int
    mean_ms: float
    max_ms: float
    severity: Severity
    is_issue: bool

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.value
        return payload


@dataclass(frozen=True)
class TenantIsolationReport:
    tenant_id: str
    is_isolated: bool
    violations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "is_isolated": self.is_isolated,
            "violations": list(self.violations),
        }


@dataclass(frozen=True)
class IntegrityMetrics:
    # None marks a category whose detector failed this pass; see ``errors``.
    cross_tenant_contamination: int | None
    analytics_contamination: int | None
    orphaned_records: int | None
    trigger_failures: int | None
    performance_issues: int | None
    last_checked: datetime
    errors: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cross_tenant_contamination": self.cross_tenant_contamination,
            "analytics_contamination": self.analytics_contamination,
            "orphaned_records": self.orphaned_records,
            "trigger_failures": self.trigger_failures,
            "performance_issues": self.performance_issues,
            "last_checked": self.last_checked.isoformat(),
            "errors": dict(self.errors),
        }


@dataclass(frozen=True)
class IntegrityDetails:
    # Empty tuples for failed categories; the matching metrics entry is None.
    contamination: tuple[ContaminationRecord, ...] = ()
    analytics_contamination: tuple[ContaminationRecord, ...] = ()
    orphaned_records: tuple[OrphanedRecord, ...] = ()
    trigger_failures: tuple[TriggerFailureRecord, ...] = ()
    performance_issues: tuple[SlowQueryRecord, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "contamination": [row.to_dict() for row in self.contamination],
            "analytics_contamination": [row.to_dict() for row in self.analytics_contamination],
            "orphaned_records": [row.to_dict() for row in self.orphaned_records],
            "trigger_failures": [row.to_dict() for row in self.trigger_failures],
            "performance_issues": [row.to_dict() for row in self.performance_issues],
        }


@dataclass(frozen=True)
class IntegrityCheckResult:
    summary: IntegrityMetrics
    details: IntegrityDetails
    summary_text: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "summary_text": self.summary_text,
            "details": self.details.to_dict(),
        }


@dataclass(frozen=True)
class Alert:
    id: str
    rule_id: str
    resource_key: str
    severity: Severity
    status: AlertStatus
    message: str
    details: dict[str, Any]
    created_at: datetime
    last_seen_at: datetime
    detection_count: int = 1
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "resource_key": self.resource_key,
            "severity": self.severity.value,
            "status": self.status.value,
            "message": self.message,
            "details": dict(self.details),
            "created_at": self.created_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
            "detection_count": self.detection_count,
            "acknowledged_at": _iso(self.acknowledged_at),
            "resolved_at": _iso(self.resolved_at),
        }
