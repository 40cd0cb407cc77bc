from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import Float, Integer, Text, bindparam, text
from sqlalchemy.sql.expression import TextualSelect

from tenantwatch.core.config import get_settings
from tenantwatch.core.errors import SchemaAbsentError
from tenantwatch.domain.records import Severity, SlowQueryRecord
from tenantwatch.persistence.queries import QueryRunner


logger = logging.getLogger(__name__)

PERFORMANCE_CATEGORY = "performance_issues"
_STATEMENT_LIMIT = 20


def slow_query_statement(pattern_count: int) -> TextualSelect:
    # pg_stat_statements only exists on Postgres with the extension installed.
    filters = " OR ".join(f"query LIKE :pattern_{index}" for index in range(pattern_count)) or "TRUE"
    sql = (
        "SELECT query, calls, mean_exec_time AS mean_ms, max_exec_time AS max_ms "
        "FROM pg_stat_statements "
        f"WHERE {filters} "
        "ORDER BY mean_exec_time DESC "
        "LIMIT :row_limit"
    )
    return (
        text(sql)
        .bindparams(bindparam("row_limit", type_=Integer))
        .columns(query=Text, calls=Integer, mean_ms=Float, max_ms=Float)
    )


class QueryPerformanceMonitor:
    def __init__(
        self,
        runner: QueryRunner,
        tables: Iterable[str],
        *,
        slow_ms: float | None = None,
        critical_ms: float | None = None,
    ) -> None:
        settings = get_settings()
        self._runner = runner
        self._tables = tuple(tables)
        self._slow_ms = slow_ms if slow_ms is not None else settings.integrity_slow_query_ms
        self._critical_ms = critical_ms if critical_ms is not None else settings.integrity_critical_query_ms

    def classify(self, mean_ms: float) -> Severity:
        if mean_ms > self._critical_ms:
            return Severity.HIGH
        if mean_ms > self._slow_ms:
            return Severity.MEDIUM
        return Severity.LOW

    async def check_query_performance(self) -> list[SlowQueryRecord]:
        if self._runner.dialect_name != "postgresql":
            return []
        params: dict[str, object] = {"row_limit": _STATEMENT_LIMIT}
        for index, table in enumerate(self._tables):
            params[f"pattern_{index}"] = f"%{table}%"
        try:
            rows = await self._runner.fetch_all(
                slow_query_statement(len(self._tables)),
                params,
                category=PERFORMANCE_CATEGORY,
                relation="pg_stat_statements",
                optional=True,
            )
        except SchemaAbsentError:
            logger.debug("pg_stat_statements_absent")
            return []
        records: list[SlowQueryRecord] = []
        for row in rows:
            mean_ms = float(row["mean_ms"] or 0.0)
            records.append(
                SlowQueryRecord(
                    query=str(row["query"])[:500],
                    calls=int(row["calls"] or 0),
                    mean_ms=round(mean_ms, 2),
                    max_ms=round(float(row["max_ms"] or 0.0), 2),
                    severity=self.classify(mean_ms),
                    is_issue=mean_ms > self._slow_ms,
                )
            )
        return records


def count_performance_issues(records: Iterable[SlowQueryRecord]) -> int:
    return sum(1 for record in records if record.is_issue)
