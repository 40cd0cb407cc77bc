from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any, Awaitable, Callable

from tenantwatch.core.config import Settings, get_settings
from tenantwatch.core.errors import DetectionError
from tenantwatch.domain.records import (
    ContaminationRecord,
    IntegrityCheckResult,
    IntegrityDetails,
    IntegrityMetrics,
)
from tenantwatch.services.integrity.contamination import (
    ANALYTICS_CATEGORY,
    CROSS_TENANT_CATEGORY,
    ContaminationDetector,
)
from tenantwatch.services.integrity.orphans import ORPHAN_CATEGORY, OrphanDetector
from tenantwatch.services.integrity.performance import (
    PERFORMANCE_CATEGORY,
    QueryPerformanceMonitor,
    count_performance_issues,
)
from tenantwatch.services.integrity.severity import escalate_cross_table
from tenantwatch.services.integrity.triggers import TRIGGER_CATEGORY, TriggerHealthMonitor
from tenantwatch.services.telemetry import increment_counter, record_detector_run


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HealthWeights:
    contamination: float = 25.0
    orphans: float = 2.0
    triggers: float = 1.0

    def __post_init__(self) -> None:
        if not (self.contamination > self.orphans > self.triggers > 0):
            raise ValueError("health weights must satisfy contamination > orphans > triggers > 0")


def weights_from_settings(settings: Settings | None = None) -> HealthWeights:
    settings = settings or get_settings()
    return HealthWeights(
        contamination=settings.integrity_health_weight_contamination,
        orphans=settings.integrity_health_weight_orphans,
        triggers=settings.integrity_health_weight_triggers,
    )


def calculate_health_score(metrics: IntegrityMetrics, weights: HealthWeights | None = None) -> int:
    # Unavailable categories contribute nothing; the degraded flag carries that signal instead.
    weights = weights or HealthWeights()
    contamination = (metrics.cross_tenant_contamination or 0) + (metrics.analytics_contamination or 0)
    penalty = (
        weights.contamination * contamination
        + weights.orphans * (metrics.orphaned_records or 0)
        + weights.triggers * (metrics.trigger_failures or 0)
    )
    score = round(100 - min(100.0, penalty))
    return max(0, min(100, int(score)))


def health_status(score: int) -> str:
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    return "poor"


def build_summary_text(metrics: IntegrityMetrics) -> str:
    parts = []
    labels = (
        ("cross-tenant contamination issues", metrics.cross_tenant_contamination),
        ("analytics contamination issues", metrics.analytics_contamination),
        ("orphaned records", metrics.orphaned_records),
        ("trigger failures", metrics.trigger_failures),
        ("performance issues", metrics.performance_issues),
    )
    for label, value in labels:
        parts.append(f"{label}: {'unavailable' if value is None else value}")
    return "Integrity check completed. " + ", ".join(parts) + "."


@dataclass(frozen=True)
class _Outcome:
    value: Any
    error: DetectionError | None


class IntegrityMonitor:
    """Runs every detector concurrently and reduces the results.

    One failed detector never aborts the pass: its category reports ``None``
    and an entry in ``errors`` while the remaining categories keep their data.
    """

    def __init__(
        self,
        *,
        contamination: ContaminationDetector,
        orphans: OrphanDetector,
        triggers: TriggerHealthMonitor,
        performance: QueryPerformanceMonitor,
    ) -> None:
        self.contamination = contamination
        self.orphans = orphans
        self.triggers = triggers
        self.performance = performance

    async def _guard(self, category: str, call: Callable[[], Awaitable[Any]]) -> _Outcome:
        start = time.monotonic()
        try:
            value = await call()
        except DetectionError as exc:
            record_detector_run(category=category, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            increment_counter(f"integrity_detector_failures_total.{category}")
            logger.warning("integrity_detector_failed category=%s code=%s", category, exc.code)
            return _Outcome(value=None, error=exc)
        record_detector_run(category=category, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        return _Outcome(value=value, error=None)

    @staticmethod
    def _escalate(
        cross: list[ContaminationRecord], analytics: list[ContaminationRecord]
    ) -> tuple[list[ContaminationRecord], list[ContaminationRecord]]:
        # Escalation considers every relationship that reported contamination in this pass.
        rows = escalate_cross_table([*cross, *analytics])
        return rows[: len(cross)], rows[len(cross) :]

    async def cross_tenant_contamination(self) -> list[ContaminationRecord]:
        # The requested category raises on failure; the analytics pass only feeds escalation.
        cross, analytics = await asyncio.gather(
            self.contamination.detect_cross_tenant_contamination(),
            self._guard(ANALYTICS_CATEGORY, self.contamination.detect_analytics_contamination),
        )
        return self._escalate(cross, analytics.value or [])[0]

    async def analytics_contamination(self) -> list[ContaminationRecord]:
        cross, analytics = await asyncio.gather(
            self._guard(CROSS_TENANT_CATEGORY, self.contamination.detect_cross_tenant_contamination),
            self.contamination.detect_analytics_contamination(),
        )
        return self._escalate(cross.value or [], analytics)[1]

    async def _collect(self) -> tuple[IntegrityDetails, dict[str, _Outcome]]:
        cross, analytics, orphans, triggers, performance = await asyncio.gather(
            self._guard(CROSS_TENANT_CATEGORY, self.contamination.detect_cross_tenant_contamination),
            self._guard(ANALYTICS_CATEGORY, self.contamination.detect_analytics_contamination),
            self._guard(ORPHAN_CATEGORY, self.orphans.detect_orphaned_records),
            self._guard(TRIGGER_CATEGORY, self.triggers.check_trigger_health),
            self._guard(PERFORMANCE_CATEGORY, self.performance.check_query_performance),
        )
        primary, secondary = self._escalate(cross.value or [], analytics.value or [])
        details = IntegrityDetails(
            contamination=tuple(primary),
            analytics_contamination=tuple(secondary),
            orphaned_records=tuple(orphans.value or ()),
            trigger_failures=tuple(triggers.value or ()),
            performance_issues=tuple(performance.value or ()),
        )
        outcomes = {
            CROSS_TENANT_CATEGORY: cross,
            ANALYTICS_CATEGORY: analytics,
            ORPHAN_CATEGORY: orphans,
            TRIGGER_CATEGORY: triggers,
            PERFORMANCE_CATEGORY: performance,
        }
        return details, outcomes

    @staticmethod
    def _metrics(details: IntegrityDetails, outcomes: dict[str, _Outcome]) -> IntegrityMetrics:
        def _count(category: str, value: int) -> int | None:
            return None if outcomes[category].error is not None else value

        errors = {
            category: outcome.error.as_dict()
            for category, outcome in outcomes.items()
            if outcome.error is not None
        }
        return IntegrityMetrics(
            cross_tenant_contamination=_count(CROSS_TENANT_CATEGORY, len(details.contamination)),
            analytics_contamination=_count(ANALYTICS_CATEGORY, len(details.analytics_contamination)),
            orphaned_records=_count(ORPHAN_CATEGORY, len(details.orphaned_records)),
            trigger_failures=_count(TRIGGER_CATEGORY, len(details.trigger_failures)),
            performance_issues=_count(
                PERFORMANCE_CATEGORY, count_performance_issues(details.performance_issues)
            ),
            last_checked=_utc_now(),
            errors=errors,
        )

    async def get_data_integrity_metrics(self) -> IntegrityMetrics:
        details, outcomes = await self._collect()
        return self._metrics(details, outcomes)

    async def run_full_integrity_check(self) -> IntegrityCheckResult:
        details, outcomes = await self._collect()
        metrics = self._metrics(details, outcomes)
        logger.info(
            "integrity_check_completed contamination=%s analytics=%s orphans=%s triggers=%s degraded=%s",
            metrics.cross_tenant_contamination,
            metrics.analytics_contamination,
            metrics.orphaned_records,
            metrics.trigger_failures,
            metrics.degraded,
        )
        return IntegrityCheckResult(summary=metrics, details=details, summary_text=build_summary_text(metrics))
