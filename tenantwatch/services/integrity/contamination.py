from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import Integer, String, text
from sqlalchemy.sql.expression import TextualSelect

from tenantwatch.domain.records import ContaminationRecord, TenantIsolationReport
from tenantwatch.persistence.queries import QueryRunner
from tenantwatch.services.integrity.relationships import RelationshipCatalog, TenantRelationship
from tenantwatch.services.integrity.severity import SeverityThresholds, classify_severity


logger = logging.getLogger(__name__)

CROSS_TENANT_CATEGORY = "cross_tenant_contamination"
ANALYTICS_CATEGORY = "analytics_contamination"


def contamination_statement(relationship: TenantRelationship) -> TextualSelect:
    # Join on the reference and keep only owner mismatches, one row per owner pair.
    sql = (
        f"SELECT c.{relationship.child_tenant_column} AS subject_owner_id, "
        f"p.{relationship.parent_tenant_column} AS referenced_owner_id, "
        "COUNT(*) AS mismatched_count "
        f"FROM {relationship.child_table} c "
        f"JOIN {relationship.parent_table} p ON c.{relationship.foreign_key} = p.{relationship.parent_key} "
        f"WHERE c.{relationship.child_tenant_column} != p.{relationship.parent_tenant_column} "
        f"GROUP BY c.{relationship.child_tenant_column}, p.{relationship.parent_tenant_column} "
        "ORDER BY mismatched_count DESC, subject_owner_id ASC, referenced_owner_id ASC"
    )
    return text(sql).columns(
        subject_owner_id=String,
        referenced_owner_id=String,
        mismatched_count=Integer,
    )


class ContaminationDetector:
    def __init__(
        self,
        runner: QueryRunner,
        catalog: RelationshipCatalog,
        *,
        thresholds: SeverityThresholds | None = None,
    ) -> None:
        self._runner = runner
        self._catalog = catalog
        self._thresholds = thresholds or SeverityThresholds()

    async def _detect(
        self, relationships: Iterable[TenantRelationship], *, category: str
    ) -> list[ContaminationRecord]:
        records: list[ContaminationRecord] = []
        for relationship in relationships:
            rows = await self._runner.fetch_all(
                contamination_statement(relationship),
                category=category,
                relation=relationship.child_table,
            )
            for row in rows:
                count = int(row["mismatched_count"])
                records.append(
                    ContaminationRecord(
                        subject_owner_id=str(row["subject_owner_id"]),
                        referenced_owner_id=str(row["referenced_owner_id"]),
                        mismatched_count=count,
                        table_name=relationship.label,
                        severity=classify_severity(count, thresholds=self._thresholds),
                    )
                )
        if records:
            logger.warning(
                "tenant_contamination_detected category=%s groups=%s rows=%s",
                category,
                len(records),
                sum(record.mismatched_count for record in records),
            )
        return records

    async def detect_cross_tenant_contamination(self) -> list[ContaminationRecord]:
        return await self._detect(self._catalog.primary, category=CROSS_TENANT_CATEGORY)

    async def detect_analytics_contamination(self) -> list[ContaminationRecord]:
        return await self._detect(self._catalog.analytics, category=ANALYTICS_CATEGORY)

    async def validate_tenant_isolation(self, tenant_id: str) -> TenantIsolationReport:
        # Report every mismatch where the tenant appears on either side of the relationship.
        violations: list[str] = []
        records = [
            *await self.detect_cross_tenant_contamination(),
            *await self.detect_analytics_contamination(),
        ]
        for record in records:
            if record.subject_owner_id == tenant_id:
                violations.append(
                    f"{record.mismatched_count} {record.table_name} row(s) owned by {tenant_id} "
                    f"reference data owned by {record.referenced_owner_id}"
                )
            elif record.referenced_owner_id == tenant_id:
                violations.append(
                    f"{record.mismatched_count} {record.table_name} row(s) owned by "
                    f"{record.subject_owner_id} reference data owned by {tenant_id}"
                )
        return TenantIsolationReport(
            tenant_id=tenant_id,
            is_isolated=not violations,
            violations=tuple(violations),
        )
