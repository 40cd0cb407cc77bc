from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import DateTime, Integer, MetaData, String, Text, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.sql.expression import TextualSelect

from tenantwatch.core.config import get_settings
from tenantwatch.core.errors import SchemaAbsentError
from tenantwatch.domain.models import TriggerExecutionLog
from tenantwatch.domain.records import TriggerFailureRecord
from tenantwatch.persistence.queries import QueryRunner, as_utc, is_missing_table_error
from tenantwatch.services.integrity.relationships import check_identifier


logger = logging.getLogger(__name__)

TRIGGER_CATEGORY = "trigger_failures"
_VALID_OPERATIONS = {"insert", "update", "delete"}


def _utc_now() -> datetime:
    # Window boundaries are computed in UTC to match store timestamps.
    return datetime.now(timezone.utc)


def trigger_failure_statement(log_table: str) -> TextualSelect:
    # Collapse repeated failures of one trigger/error into a single counted row.
    sql = (
        "SELECT trigger_name, table_name, operation, error_message, "
        "COUNT(*) AS failure_count, MAX(created_at) AS occurred_at "
        f"FROM {log_table} "
        "WHERE status != :success_status AND created_at >= :since "
        "GROUP BY trigger_name, table_name, operation, error_message "
        "ORDER BY occurred_at DESC, trigger_name ASC, table_name ASC"
    )
    return (
        text(sql)
        .bindparams(
            bindparam("success_status", type_=String),
            bindparam("since", type_=DateTime(timezone=True)),
        )
        .columns(
            trigger_name=String,
            table_name=String,
            operation=String,
            error_message=Text,
            failure_count=Integer,
            occurred_at=DateTime(timezone=True),
        )
    )


class TriggerHealthMonitor:
    def __init__(
        self,
        runner: QueryRunner,
        *,
        log_table: str | None = None,
        window_hours: int | None = None,
    ) -> None:
        settings = get_settings()
        self._runner = runner
        self._log_table = check_identifier(log_table or settings.integrity_trigger_log_table)
        self._window = timedelta(hours=window_hours or settings.integrity_trigger_window_hours)

    @property
    def log_table(self) -> str:
        return self._log_table

    async def check_trigger_health(self) -> list[TriggerFailureRecord]:
        # A missing execution log means logging is not provisioned yet, which reads as zero failures.
        try:
            rows = await self._runner.fetch_all(
                trigger_failure_statement(self._log_table),
                {"success_status": "success", "since": _utc_now() - self._window},
                category=TRIGGER_CATEGORY,
                relation=self._log_table,
                optional=True,
            )
        except SchemaAbsentError:
            logger.debug("trigger_log_absent table=%s", self._log_table)
            return []
        records = [
            TriggerFailureRecord(
                trigger_name=str(row["trigger_name"]),
                table_name=str(row["table_name"]),
                operation=str(row["operation"]),
                error_message=row["error_message"],
                occurred_at=as_utc(row["occurred_at"]),
                failure_count=int(row["failure_count"]),
            )
            for row in rows
        ]
        if records:
            logger.warning(
                "trigger_failures_detected groups=%s failures=%s",
                len(records),
                sum(record.failure_count for record in records),
            )
        return records

    async def log_trigger_execution(
        self,
        *,
        trigger_name: str,
        table_name: str,
        operation: str,
        status: str = "success",
        error_message: str | None = None,
        execution_time_ms: int | None = None,
    ) -> bool:
        # Best-effort write to the execution log; monitoring must never fail the caller's write path.
        normalized_operation = operation.strip().lower()
        if normalized_operation not in _VALID_OPERATIONS:
            raise ValueError(f"operation must be one of {sorted(_VALID_OPERATIONS)}")
        statement = text(
            f"INSERT INTO {self._log_table} "
            "(trigger_name, table_name, operation, status, error_message, execution_time_ms, created_at) "
            "VALUES (:trigger_name, :table_name, :operation, :status, :error_message, :execution_time_ms, :created_at)"
        ).bindparams(bindparam("created_at", type_=DateTime(timezone=True)))
        try:
            await self._runner.execute(
                statement,
                {
                    "trigger_name": trigger_name,
                    "table_name": table_name,
                    "operation": normalized_operation,
                    "status": status,
                    "error_message": error_message,
                    "execution_time_ms": execution_time_ms,
                    "created_at": _utc_now(),
                },
            )
        except SQLAlchemyError as exc:
            if is_missing_table_error(exc):
                logger.warning("trigger_log_write_skipped reason=table_absent table=%s", self._log_table)
            else:
                logger.warning("trigger_log_write_failed trigger=%s", trigger_name, exc_info=exc)
            return False
        return True


async def provision_trigger_log(engine: AsyncEngine, *, log_table: str | None = None) -> str:
    # Create the execution log and its indexes if missing; safe to run repeatedly.
    table_name = check_identifier(log_table or get_settings().integrity_trigger_log_table)
    table = TriggerExecutionLog.__table__
    if table_name != table.name:
        table = table.to_metadata(MetaData(), name=table_name)
        for index in table.indexes:
            index.name = index.name.replace(TriggerExecutionLog.__tablename__, table_name)
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: table.create(sync_conn, checkfirst=True))
    logger.info("trigger_log_provisioned table=%s", table_name)
    return table_name
