from __future__ import annotations

from collections import Counter
import logging
from typing import Iterable

from sqlalchemy import DateTime, String, text
from sqlalchemy.sql.expression import TextualSelect

from tenantwatch.domain.records import OrphanedRecord
from tenantwatch.persistence.queries import QueryRunner, as_utc
from tenantwatch.services.integrity.relationships import RelationshipCatalog, RequiredReference


logger = logging.getLogger(__name__)

ORPHAN_CATEGORY = "orphaned_records"


def orphan_statement(reference: RequiredReference) -> TextualSelect:
    # Left anti-join: dependent rows whose reference resolves to nothing.
    sql = (
        f"SELECT CAST(c.{reference.child_key} AS TEXT) AS record_id, c.created_at AS created_at "
        f"FROM {reference.child_table} c "
        f"LEFT JOIN {reference.parent_table} p ON c.{reference.foreign_key} = p.{reference.parent_key} "
        f"WHERE p.{reference.parent_key} IS NULL "
        "ORDER BY record_id ASC"
    )
    return text(sql).columns(record_id=String, created_at=DateTime(timezone=True))


def orphan_category(record: OrphanedRecord) -> str:
    return f"{record.table_name}_{record.orphan_type}"


def group_orphans_by_type(records: Iterable[OrphanedRecord]) -> dict[str, int]:
    counts = Counter(orphan_category(record) for record in records)
    return dict(sorted(counts.items()))


class OrphanDetector:
    def __init__(self, runner: QueryRunner, catalog: RelationshipCatalog) -> None:
        self._runner = runner
        self._catalog = catalog

    async def detect_orphaned_records(self) -> list[OrphanedRecord]:
        # Cover every required reference in one pass; a failed check fails the category.
        records: list[OrphanedRecord] = []
        for reference in self._catalog.required:
            rows = await self._runner.fetch_all(
                orphan_statement(reference),
                category=ORPHAN_CATEGORY,
                relation=reference.child_table,
            )
            records.extend(
                OrphanedRecord(
                    orphan_type=reference.orphan_type,
                    record_id=str(row["record_id"]),
                    table_name=reference.child_table,
                    created_at=as_utc(row["created_at"]),
                )
                for row in rows
            )
        if records:
            logger.info("orphaned_records_detected count=%s by_type=%s", len(records), group_orphans_by_type(records))
        return records
