from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable

from tenantwatch.core.config import Settings, get_settings
from tenantwatch.domain.records import ContaminationRecord, Severity


@dataclass(frozen=True)
class SeverityThresholds:
    medium_at: int = 5
    high_at: int = 20

    def table(self) -> tuple[tuple[int, Severity], ...]:
        # Ordered highest floor first; the first floor the count reaches wins.
        return (
            (self.high_at, Severity.HIGH),
            (self.medium_at, Severity.MEDIUM),
            (0, Severity.LOW),
        )


def thresholds_from_settings(settings: Settings | None = None) -> SeverityThresholds:
    settings = settings or get_settings()
    return SeverityThresholds(
        medium_at=settings.integrity_severity_medium_at,
        high_at=settings.integrity_severity_high_at,
    )


def classify_severity(
    count: int,
    *,
    spans_multiple_tables: bool = False,
    thresholds: SeverityThresholds | None = None,
) -> Severity:
    # Map a violation count onto the bucket table; high escalates when a pass spans tables.
    thresholds = thresholds or SeverityThresholds()
    severity = Severity.LOW
    for floor, bucket in thresholds.table():
        if count >= floor:
            severity = bucket
            break
    if severity == Severity.HIGH and spans_multiple_tables:
        return Severity.CRITICAL
    return severity


def escalate_cross_table(records: Iterable[ContaminationRecord]) -> list[ContaminationRecord]:
    # Promote high records to critical when one pass found contamination in more than one relationship.
    rows = list(records)
    if len({row.table_name for row in rows}) <= 1:
        return rows
    return [
        replace(row, severity=Severity.CRITICAL) if row.severity == Severity.HIGH else row
        for row in rows
    ]


def max_severity(values: Iterable[Severity]) -> Severity | None:
    ranked = sorted(values, key=lambda value: value.rank)
    return ranked[-1] if ranked else None
