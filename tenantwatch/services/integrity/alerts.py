from __future__ import annotations

import asyncio
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import hashlib
import logging
from typing import Any, Callable, Iterable, Sequence

from tenantwatch.core.errors import UnknownAlertError
from tenantwatch.domain.records import (
    Alert,
    AlertStatus,
    ContaminationRecord,
    IntegrityCheckResult,
    IntegrityDetails,
    OrphanedRecord,
    Severity,
    SlowQueryRecord,
    TriggerFailureRecord,
)
from tenantwatch.services.integrity.contamination import ANALYTICS_CATEGORY, CROSS_TENANT_CATEGORY
from tenantwatch.services.integrity.metrics import IntegrityMonitor
from tenantwatch.services.integrity.notifications import AlertNotifier, LogAlertNotifier
from tenantwatch.services.integrity.orphans import ORPHAN_CATEGORY, orphan_category
from tenantwatch.services.integrity.performance import PERFORMANCE_CATEGORY
from tenantwatch.services.integrity.severity import SeverityThresholds, classify_severity
from tenantwatch.services.integrity.triggers import TRIGGER_CATEGORY
from tenantwatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SAMPLE_LIMIT = 10


def _utc_now() -> datetime:
    # Keep alert timestamps UTC for deterministic ordering across processes.
    return datetime.now(timezone.utc)


def alert_id_for(rule_id: str, resource_key: str, occurrence: int) -> str:
    # Same condition maps to the same id until resolved; each later occurrence gets a fresh id.
    digest = hashlib.sha1(f"{rule_id}|{resource_key}|{occurrence}".encode("utf-8")).hexdigest()
    return f"{rule_id}-{digest[:16]}"


class AlertRegistry:
    """Process-lifetime alert store keyed by ``(rule_id, resource_key)``.

    Constructed once per process and injected into the engine and API. All
    mutation goes through one ``asyncio.Lock`` so concurrent checks cannot
    open two alerts for the same key. Alerts are frozen; updates swap in a new
    instance. Only the newest ``max_resolved`` resolved alerts are kept; older
    ones are dropped and survive only in the ``resolved`` and ``total`` counts.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        max_resolved: int = 1000,
    ) -> None:
        if max_resolved < 0:
            raise ValueError("max_resolved must be >= 0")
        self._clock = clock or _utc_now
        self._max_resolved = max_resolved
        self._resolved_ids: deque[str] = deque()
        self._evicted = 0
        self._lock = asyncio.Lock()
        self._alerts: dict[str, Alert] = {}
        self._open_by_key: dict[tuple[str, str], str] = {}
        self._occurrences: dict[tuple[str, str], int] = defaultdict(int)

    async def upsert(
        self,
        *,
        rule_id: str,
        resource_key: str,
        severity: Severity,
        message: str,
        details: dict[str, Any],
    ) -> tuple[Alert, bool]:
        # Refresh the open alert for this key, or open a new one; severity only ever escalates.
        key = (rule_id, resource_key)
        async with self._lock:
            now = self._clock()
            existing_id = self._open_by_key.get(key)
            if existing_id is not None:
                existing = self._alerts[existing_id]
                refreshed = replace(
                    existing,
                    severity=severity if severity.rank > existing.severity.rank else existing.severity,
                    message=message,
                    details=dict(details),
                    last_seen_at=now,
                    detection_count=existing.detection_count + 1,
                )
                self._alerts[existing_id] = refreshed
                return refreshed, False
            alert = Alert(
                id=alert_id_for(rule_id, resource_key, self._occurrences[key]),
                rule_id=rule_id,
                resource_key=resource_key,
                severity=severity,
                status=AlertStatus.ACTIVE,
                message=message,
                details=dict(details),
                created_at=now,
                last_seen_at=now,
            )
            self._alerts[alert.id] = alert
            self._open_by_key[key] = alert.id
            return alert, True

    async def acknowledge(self, alert_id: str) -> bool:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED:
                return False
            if alert.status == AlertStatus.ACKNOWLEDGED:
                return True
            self._alerts[alert_id] = replace(
                alert, status=AlertStatus.ACKNOWLEDGED, acknowledged_at=self._clock()
            )
            return True

    async def resolve(self, alert_id: str) -> bool:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED:
                return False
            self._alerts[alert_id] = replace(alert, status=AlertStatus.RESOLVED, resolved_at=self._clock())
            key = (alert.rule_id, alert.resource_key)
            if self._open_by_key.get(key) == alert_id:
                del self._open_by_key[key]
            # Resolution is history: the next occurrence of this key gets a new id.
            self._occurrences[key] += 1
            self._resolved_ids.append(alert_id)
            while len(self._resolved_ids) > self._max_resolved:
                del self._alerts[self._resolved_ids.popleft()]
                self._evicted += 1
            return True

    def get(self, alert_id: str) -> Alert | None:
        return self._alerts.get(alert_id)

    def require(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise UnknownAlertError(alert_id)
        return alert

    def all(self, status: AlertStatus | None = None) -> list[Alert]:
        rows = [alert for alert in self._alerts.values() if status is None or alert.status == status]
        return sorted(rows, key=lambda alert: (-alert.severity.rank, alert.created_at, alert.id))

    def active(self) -> list[Alert]:
        return [alert for alert in self.all() if alert.is_open]

    def stats(self) -> dict[str, Any]:
        alerts = list(self._alerts.values())
        by_status = Counter(alert.status.value for alert in alerts)
        by_severity = Counter(alert.severity.value for alert in alerts if alert.is_open)
        return {
            "total": len(alerts) + self._evicted,
            "active": by_status.get(AlertStatus.ACTIVE.value, 0),
            "acknowledged": by_status.get(AlertStatus.ACKNOWLEDGED.value, 0),
            "resolved": by_status.get(AlertStatus.RESOLVED.value, 0) + self._evicted,
            "by_severity": {severity.value: by_severity.get(severity.value, 0) for severity in Severity},
        }

    def reset(self) -> None:
        self._alerts.clear()
        self._open_by_key.clear()
        self._occurrences.clear()
        self._resolved_ids.clear()
        self._evicted = 0


@dataclass(frozen=True)
class RuleMatch:
    resource_key: str
    severity: Severity
    message: str
    details: dict[str, Any]


Records = Sequence[Any]


@dataclass(frozen=True)
class AlertRule:
    """Declarative alert rule evaluated against one integrity pass.

    ``detector`` picks the records the rule looks at, ``trigger`` decides
    whether the rule fires, ``group`` splits the records into addressable
    resources, and ``severity``/``details``/``message`` describe each resource.
    """

    id: str
    name: str
    category: str
    detector: Callable[[IntegrityDetails], Records]
    trigger: Callable[[Records], bool]
    group: Callable[[Records], Iterable[tuple[str, Records]]]
    severity: Callable[[Records], Severity]
    details: Callable[[Records], dict[str, Any]]
    message: Callable[[Records], str]
    enabled: bool = True

    def evaluate(self, result: IntegrityCheckResult) -> list[RuleMatch]:
        # A category that failed this pass has no data; it neither fires nor refreshes.
        if self.category in result.summary.errors:
            return []
        records = self.detector(result.details)
        if not self.trigger(records):
            return []
        return [
            RuleMatch(
                resource_key=resource_key,
                severity=self.severity(group),
                message=self.message(group),
                details=self.details(group),
            )
            for resource_key, group in self.group(records)
        ]


def _any(records: Records) -> bool:
    return len(records) > 0


def _per_contamination_record(records: Records) -> Iterable[tuple[str, Records]]:
    for record in records:
        yield f"{record.table_name}:{record.subject_owner_id}:{record.referenced_owner_id}", [record]


def _contamination_details(records: Sequence[ContaminationRecord]) -> dict[str, Any]:
    record = records[0]
    return {
        "table_name": record.table_name,
        "mismatched_count": record.mismatched_count,
        "subject_owner_id": record.subject_owner_id,
        "referenced_owner_id": record.referenced_owner_id,
        "affected_tenants": [record.subject_owner_id, record.referenced_owner_id],
    }


def _group_by(key: Callable[[Any], str]) -> Callable[[Records], Iterable[tuple[str, Records]]]:
    def _group(records: Records) -> Iterable[tuple[str, Records]]:
        grouped: dict[str, list[Any]] = defaultdict(list)
        for record in records:
            grouped[key(record)].append(record)
        return sorted(grouped.items())

    return _group


def _single_group(records: Records) -> Iterable[tuple[str, Records]]:
    return [("all", records)]


def _orphan_details(records: Sequence[OrphanedRecord]) -> dict[str, Any]:
    first = records[0]
    return {
        "table_name": first.table_name,
        "orphan_type": first.orphan_type,
        "count": len(records),
        "sample_record_ids": [record.record_id for record in records[:_SAMPLE_LIMIT]],
    }


def _trigger_details(records: Sequence[TriggerFailureRecord]) -> dict[str, Any]:
    latest = max(records, key=lambda record: record.occurred_at or datetime.min.replace(tzinfo=timezone.utc))
    return {
        "trigger_name": latest.trigger_name,
        "table_name": latest.table_name,
        "failure_count": sum(record.failure_count for record in records),
        "operations": sorted({record.operation for record in records}),
        "last_error": latest.error_message,
        "last_failure_at": latest.occurred_at.isoformat() if latest.occurred_at else None,
    }


def _performance_details(records: Sequence[SlowQueryRecord]) -> dict[str, Any]:
    slowest = sorted(records, key=lambda record: record.mean_ms, reverse=True)[:5]
    return {
        "count": len(records),
        "slowest": [{"query": record.query[:100], "mean_ms": record.mean_ms} for record in slowest],
    }


def default_rules(
    *,
    thresholds: SeverityThresholds | None = None,
    orphan_alert_min: int = 1,
    performance_issue_limit: int = 5,
) -> tuple[AlertRule, ...]:
    thresholds = thresholds or SeverityThresholds()
    minimum = max(1, orphan_alert_min)
    return (
        AlertRule(
            id="cross-tenant-contamination",
            name="Cross-tenant data contamination",
            category=CROSS_TENANT_CATEGORY,
            detector=lambda details: details.contamination,
            trigger=_any,
            group=_per_contamination_record,
            severity=lambda records: records[0].severity,
            details=_contamination_details,
            message=lambda records: (
                f"{records[0].mismatched_count} {records[0].table_name} row(s) owned by "
                f"{records[0].subject_owner_id} reference data owned by {records[0].referenced_owner_id}"
            ),
        ),
        AlertRule(
            id="analytics-contamination",
            name="Analytics data contamination",
            category=ANALYTICS_CATEGORY,
            detector=lambda details: details.analytics_contamination,
            trigger=_any,
            group=_per_contamination_record,
            severity=lambda records: records[0].severity,
            details=_contamination_details,
            message=lambda records: (
                f"{records[0].mismatched_count} analytics row(s) in {records[0].table_name} "
                f"cross tenants {records[0].subject_owner_id} and {records[0].referenced_owner_id}"
            ),
        ),
        AlertRule(
            id="orphaned-records",
            name="Orphaned records",
            category=ORPHAN_CATEGORY,
            detector=lambda details: details.orphaned_records,
            trigger=lambda records: len(records) >= minimum,
            group=_group_by(orphan_category),
            severity=lambda records: classify_severity(len(records), thresholds=thresholds),
            details=_orphan_details,
            message=lambda records: (
                f"{len(records)} {records[0].table_name} row(s) with {records[0].orphan_type.replace('_', ' ')}"
            ),
        ),
        AlertRule(
            id="trigger-failures",
            name="Database trigger failures",
            category=TRIGGER_CATEGORY,
            detector=lambda details: details.trigger_failures,
            trigger=_any,
            group=_group_by(lambda record: f"{record.trigger_name}:{record.table_name}"),
            severity=lambda records: Severity.HIGH,
            details=_trigger_details,
            message=lambda records: (
                f"Trigger {records[0].trigger_name} on {records[0].table_name} failed "
                f"{sum(record.failure_count for record in records)} time(s)"
            ),
        ),
        AlertRule(
            id="performance-degradation",
            name="Query performance degradation",
            category=PERFORMANCE_CATEGORY,
            detector=lambda details: [record for record in details.performance_issues if record.is_issue],
            trigger=lambda records: len(records) > performance_issue_limit,
            group=_single_group,
            severity=lambda records: Severity.MEDIUM,
            details=_performance_details,
            message=lambda records: f"{len(records)} slow queries on monitored tables",
        ),
        AlertRule(
            id="critical-performance",
            name="Critical query performance",
            category=PERFORMANCE_CATEGORY,
            detector=lambda details: [
                record for record in details.performance_issues if record.severity == Severity.HIGH
            ],
            trigger=_any,
            group=_single_group,
            severity=lambda records: Severity.HIGH,
            details=_performance_details,
            message=lambda records: f"{len(records)} queries above the critical latency threshold",
        ),
    )


class AlertEngine:
    def __init__(
        self,
        monitor: IntegrityMonitor,
        registry: AlertRegistry,
        *,
        rules: Sequence[AlertRule] | None = None,
        notifier: AlertNotifier | None = None,
    ) -> None:
        self.monitor = monitor
        self.registry = registry
        self.rules = tuple(rules) if rules is not None else default_rules()
        self.notifier = notifier or LogAlertNotifier()

    async def check_alerts(self) -> list[Alert]:
        result = await self.monitor.run_full_integrity_check()
        return await self.evaluate(result)

    async def evaluate(self, result: IntegrityCheckResult) -> list[Alert]:
        # Return every alert created or refreshed by this pass; notify only on creation.
        touched: list[Alert] = []
        created: list[Alert] = []
        for rule in self.rules:
            if not rule.enabled:
                continue
            for match in rule.evaluate(result):
                alert, is_new = await self.registry.upsert(
                    rule_id=rule.id,
                    resource_key=match.resource_key,
                    severity=match.severity,
                    message=match.message,
                    details=match.details,
                )
                touched.append(alert)
                if is_new:
                    created.append(alert)
        increment_counter("integrity_alerts_created_total", len(created))
        increment_counter("integrity_alerts_refreshed_total", len(touched) - len(created))
        for alert in created:
            logger.info("integrity_alert_created id=%s rule=%s severity=%s", alert.id, alert.rule_id, alert.severity.value)
            await self.notifier.notify(alert)
        return touched

    async def acknowledge_alert(self, alert_id: str) -> bool:
        acknowledged = await self.registry.acknowledge(alert_id)
        if acknowledged:
            logger.info("integrity_alert_acknowledged id=%s", alert_id)
        return acknowledged

    async def resolve_alert(self, alert_id: str) -> bool:
        resolved = await self.registry.resolve(alert_id)
        if resolved:
            logger.info("integrity_alert_resolved id=%s", alert_id)
        return resolved

    def get_active_alerts(self) -> list[Alert]:
        return self.registry.active()

    def get_alert_stats(self) -> dict[str, Any]:
        return self.registry.stats()
