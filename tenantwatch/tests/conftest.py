from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import delete, insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tenantwatch.core.config import get_settings
from tenantwatch.domain.models import (
    Agent,
    AgentAnalytics,
    Base,
    Call,
    LeadAnalytics,
    MONITORED_TABLES,
    TriggerExecutionLog,
    User,
)
from tenantwatch.domain.records import Alert
from tenantwatch.services.integrity.alerts import AlertRegistry
from tenantwatch.services.integrity.service import IntegrityService, build_integrity_service
from tenantwatch.services.integrity.triggers import provision_trigger_log
from tenantwatch.services.telemetry import reset_telemetry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RecordingNotifier:
    # Capture notifications instead of logging so tests can assert on delivery.
    def __init__(self) -> None:
        self.sent: list[Alert] = []

    async def notify(self, alert: Alert) -> None:
        self.sent.append(alert)


class StoreSeeder:
    # Insert rows straight into the monitored tables; no FK constraints exist, so any shape is allowed.
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def _insert(self, model: Any, **values: Any) -> None:
        values.setdefault("created_at", _utc_now())
        async with self.engine.begin() as conn:
            await conn.execute(insert(model.__table__).values(**values))

    async def user(self, user_id: str) -> None:
        await self._insert(User, id=user_id, email=f"{user_id}@example.test")

    async def agent(self, agent_id: str, tenant_id: str) -> None:
        await self._insert(Agent, id=agent_id, tenant_id=tenant_id, name=f"agent {agent_id}")

    async def call(self, call_id: str, *, agent_id: str, tenant_id: str) -> None:
        await self._insert(Call, id=call_id, agent_id=agent_id, tenant_id=tenant_id)

    async def lead_analytics(self, row_id: str, *, call_id: str, tenant_id: str) -> None:
        await self._insert(LeadAnalytics, id=row_id, call_id=call_id, tenant_id=tenant_id)

    async def agent_analytics(self, row_id: str, *, agent_id: str, tenant_id: str) -> None:
        await self._insert(AgentAnalytics, id=row_id, agent_id=agent_id, tenant_id=tenant_id)

    async def trigger_log(
        self,
        *,
        trigger_name: str,
        table_name: str = "calls",
        operation: str = "insert",
        status: str = "error",
        error_message: str | None = "boom",
        created_at: datetime | None = None,
    ) -> None:
        await self._insert(
            TriggerExecutionLog,
            trigger_name=trigger_name,
            table_name=table_name,
            operation=operation,
            status=status,
            error_message=error_message,
            created_at=created_at or _utc_now(),
        )

    async def delete_call(self, call_id: str) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(delete(Call.__table__).where(Call.__table__.c.id == call_id))

    async def delete_lead_analytics(self, row_id: str) -> None:
        table = LeadAnalytics.__table__
        async with self.engine.begin() as conn:
            await conn.execute(delete(table).where(table.c.id == row_id))

    async def tenant_pair(self, *tenant_ids: str) -> None:
        for tenant_id in tenant_ids:
            await self.user(tenant_id)


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings and counters are process-wide; isolate them per test.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    # File-backed SQLite so concurrent detector connections see the same data.
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'integrity.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, tables=list(MONITORED_TABLES)))
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
async def engine_with_trigger_log(engine: AsyncEngine) -> AsyncEngine:
    await provision_trigger_log(engine)
    return engine


@pytest.fixture
def seeder(engine: AsyncEngine) -> StoreSeeder:
    return StoreSeeder(engine)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(engine: AsyncEngine, notifier: RecordingNotifier) -> IntegrityService:
    return build_integrity_service(engine, registry=AlertRegistry(), notifier=notifier)
