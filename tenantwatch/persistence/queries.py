from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.sql.expression import Executable

from tenantwatch.core.config import get_settings
from tenantwatch.core.errors import DetectionError, SchemaAbsentError


logger = logging.getLogger(__name__)


def is_missing_table_error(exc: Exception) -> bool:
    # Recognize missing-relation errors across asyncpg and sqlite without importing driver classes.
    message = str(exc).lower()
    if "undefinedtableerror" in message or "no such table" in message:
        return True
    return "relation" in message and "does not exist" in message


def is_connection_error(exc: BaseException) -> bool:
    # asyncpg raises OSError from connect; SQLAlchemy wraps some of them, keeping the original on .orig.
    if isinstance(exc, OSError):
        return True
    return isinstance(getattr(exc, "orig", None), OSError)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive timestamps; everything downstream compares in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QueryRunner:
    """Read-mostly query boundary shared by all detectors.

    Every call borrows its own pooled connection so independent detectors can
    run concurrently, and every call carries a client-side timeout. Driver
    exceptions never escape: they surface as ``DetectionError`` or, for a
    missing optional relation, ``SchemaAbsentError``.
    """

    def __init__(self, engine: AsyncEngine, *, timeout_s: float | None = None) -> None:
        self._engine = engine
        self._timeout_s = timeout_s if timeout_s is not None else get_settings().integrity_query_timeout_s

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    async def fetch_all(
        self,
        statement: Executable,
        params: dict[str, Any] | None = None,
        *,
        category: str,
        relation: str | None = None,
        optional: bool = False,
    ) -> list[dict[str, Any]]:
        async def _run() -> list[dict[str, Any]]:
            async with self._engine.connect() as conn:
                result = await conn.execute(statement, params or {})
                return [dict(row._mapping) for row in result]

        try:
            return await asyncio.wait_for(_run(), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            logger.warning("integrity_query_timeout category=%s timeout_s=%s", category, self._timeout_s)
            raise DetectionError(
                category,
                f"{category} query timed out after {self._timeout_s:g}s",
                code="DETECTION_TIMEOUT",
            ) from None
        except (SQLAlchemyError, OSError) as exc:
            if is_connection_error(exc):
                raise self._connection_failed(category, exc) from exc
            if is_missing_table_error(exc):
                # Only optional supporting tables may be absent; a missing monitored table is schema drift.
                if optional:
                    raise SchemaAbsentError(relation or category) from exc
                raise DetectionError(
                    category,
                    f"{category} query failed: table {relation or 'unknown'} does not exist",
                    code="DETECTION_SCHEMA_MISSING",
                ) from exc
            logger.warning("integrity_query_failed category=%s", category, exc_info=exc)
            raise DetectionError(
                category,
                f"{category} query failed: {exc.__class__.__name__}",
            ) from exc

    async def table_exists(self, table_name: str) -> bool:
        async def _run() -> bool:
            async with self._engine.connect() as conn:
                return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(table_name))

        try:
            return await asyncio.wait_for(_run(), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            raise DetectionError(
                table_name,
                f"table lookup for {table_name} timed out after {self._timeout_s:g}s",
                code="DETECTION_TIMEOUT",
            ) from None
        except (SQLAlchemyError, OSError) as exc:
            if is_connection_error(exc):
                raise self._connection_failed(table_name, exc) from exc
            raise DetectionError(table_name, f"table lookup failed: {exc.__class__.__name__}") from exc

    def _connection_failed(self, category: str, exc: BaseException) -> DetectionError:
        logger.warning("integrity_store_unreachable category=%s error=%s", category, exc.__class__.__name__)
        return DetectionError(
            category,
            f"{category} could not reach the store: {exc.__class__.__name__}",
            code="DETECTION_CONNECTION_FAILED",
        )

    async def execute(self, statement: Executable, params: dict[str, Any] | None = None) -> None:
        # Write path reserved for the trigger log sink and provisioning.
        async with self._engine.begin() as conn:
            await conn.execute(statement, params or {})
