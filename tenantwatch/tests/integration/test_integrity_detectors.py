from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from tenantwatch.core.errors import DetectionError
from tenantwatch.domain.records import AlertStatus, Severity
from tenantwatch.persistence.queries import QueryRunner
from tenantwatch.services.integrity.alerts import AlertRegistry
from tenantwatch.services.integrity.contamination import contamination_statement
from tenantwatch.services.integrity.relationships import (
    RelationshipCatalog,
    TenantRelationship,
    default_catalog,
)
from tenantwatch.services.integrity.service import build_integrity_service
from tenantwatch.services.integrity.triggers import TriggerHealthMonitor, provision_trigger_log
from tenantwatch.services.integrity.worker import run_alert_cycle
from tenantwatch.services.telemetry import counters_snapshot


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def _seed_cross_tenant_call(seeder, *, call_id: str = "c1") -> None:
    # One T1 call pointing at a T2 agent; both owners exist so nothing else fires.
    await seeder.tenant_pair("T1", "T2")
    await seeder.agent("a2", "T2")
    await seeder.call(call_id, agent_id="a2", tenant_id="T1")


@pytest.mark.asyncio
async def test_clean_store_reports_nothing(service, seeder) -> None:
    await seeder.tenant_pair("T1", "T2")
    await seeder.agent("a1", "T1")
    await seeder.call("c1", agent_id="a1", tenant_id="T1")
    await seeder.lead_analytics("la1", call_id="c1", tenant_id="T1")
    await seeder.agent_analytics("aa1", agent_id="a1", tenant_id="T1")

    contamination = service.monitor.contamination

    assert await contamination.detect_cross_tenant_contamination() == []
    assert await contamination.detect_analytics_contamination() == []
    assert await service.monitor.orphans.detect_orphaned_records() == []


@pytest.mark.asyncio
async def test_empty_store_metrics_are_all_zero(service) -> None:
    metrics = await service.monitor.get_data_integrity_metrics()

    assert metrics.cross_tenant_contamination == 0
    assert metrics.analytics_contamination == 0
    assert metrics.orphaned_records == 0
    assert metrics.trigger_failures == 0
    assert metrics.performance_issues == 0
    assert metrics.errors == {}
    assert metrics.degraded is False


@pytest.mark.asyncio
async def test_cross_tenant_detection_is_deterministic(service, seeder) -> None:
    await _seed_cross_tenant_call(seeder)
    await seeder.agent("a1", "T1")
    await seeder.call("c2", agent_id="a1", tenant_id="T2")
    await seeder.call("c3", agent_id="a1", tenant_id="T2")

    runs = [await service.monitor.contamination.detect_cross_tenant_contamination() for _ in range(3)]

    assert runs[0] == runs[1] == runs[2]
    assert [(row.subject_owner_id, row.referenced_owner_id, row.mismatched_count) for row in runs[0]] == [
        ("T2", "T1", 2),
        ("T1", "T2", 1),
    ]
    assert all(row.table_name == "calls→agents" for row in runs[0])


@pytest.mark.asyncio
async def test_contamination_severity_follows_mismatch_count(service, seeder) -> None:
    await seeder.tenant_pair("T1", "T2")
    await seeder.agent("a2", "T2")
    for index in range(15):
        await seeder.call(f"c{index}", agent_id="a2", tenant_id="T1")

    records = await service.monitor.contamination.detect_cross_tenant_contamination()

    assert len(records) == 1
    assert records[0].mismatched_count == 15
    assert records[0].severity == Severity.MEDIUM


@pytest.mark.asyncio
async def test_high_contamination_spanning_tables_escalates_to_critical(service, seeder) -> None:
    await seeder.tenant_pair("T1", "T2")
    await seeder.agent("a2", "T2")
    for index in range(20):
        await seeder.call(f"c{index}", agent_id="a2", tenant_id="T1")
    await seeder.lead_analytics("la1", call_id="c0", tenant_id="T2")

    result = await service.monitor.run_full_integrity_check()

    assert result.details.contamination[0].severity == Severity.CRITICAL
    assert result.details.analytics_contamination[0].table_name == "lead_analytics→calls"
    assert result.details.analytics_contamination[0].severity == Severity.LOW


@pytest.mark.asyncio
async def test_analytics_contamination_covers_both_analytics_tables(service, seeder) -> None:
    await seeder.tenant_pair("T1", "T2")
    await seeder.agent("a1", "T1")
    await seeder.call("c1", agent_id="a1", tenant_id="T1")
    await seeder.lead_analytics("la1", call_id="c1", tenant_id="T2")
    await seeder.agent_analytics("aa1", agent_id="a1", tenant_id="T2")

    records = await service.monitor.contamination.detect_analytics_contamination()

    assert [record.table_name for record in records] == ["lead_analytics→calls", "agent_analytics→agents"]
    assert await service.monitor.contamination.detect_cross_tenant_contamination() == []


@pytest.mark.asyncio
async def test_tenant_isolation_report(service, seeder) -> None:
    await _seed_cross_tenant_call(seeder)

    affected = await service.monitor.contamination.validate_tenant_isolation("T1")
    referenced = await service.monitor.contamination.validate_tenant_isolation("T2")
    bystander = await service.monitor.contamination.validate_tenant_isolation("T3")

    assert affected.is_isolated is False
    assert len(affected.violations) == 1
    assert "owned by T1" in affected.violations[0]
    assert referenced.is_isolated is False
    assert bystander.is_isolated is True
    assert bystander.violations == ()


@pytest.mark.asyncio
async def test_orphan_appears_after_parent_is_deleted(service, seeder) -> None:
    await seeder.user("T1")
    await seeder.agent("a1", "T1")
    await seeder.call("c1", agent_id="a1", tenant_id="T1")
    await seeder.lead_analytics("la1", call_id="c1", tenant_id="T1")
    assert await service.monitor.orphans.detect_orphaned_records() == []

    await seeder.delete_call("c1")
    orphans = await service.monitor.orphans.detect_orphaned_records()

    assert [(row.orphan_type, row.record_id, row.table_name) for row in orphans] == [
        ("missing_call", "la1", "lead_analytics")
    ]
    assert orphans[0].created_at is not None
    assert orphans[0].created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_orphans_cover_missing_agent_and_missing_user(service, seeder) -> None:
    await seeder.call("c1", agent_id="gone", tenant_id="ghost")

    orphans = await service.monitor.orphans.detect_orphaned_records()

    assert sorted(row.orphan_type for row in orphans) == ["missing_agent", "missing_user"]


@pytest.mark.asyncio
async def test_missing_trigger_log_reads_as_healthy(service) -> None:
    assert await service.monitor.triggers.check_trigger_health() == []


@pytest.mark.asyncio
async def test_trigger_failures_within_window(engine_with_trigger_log, service, seeder) -> None:
    await seeder.trigger_log(trigger_name="update_kpis", error_message="boom")
    await seeder.trigger_log(trigger_name="update_kpis", error_message="boom")
    await seeder.trigger_log(trigger_name="update_kpis", status="success", error_message=None)
    await seeder.trigger_log(
        trigger_name="sync_agent",
        table_name="agents",
        created_at=_now_utc() - timedelta(hours=30),
    )

    failures = await service.monitor.triggers.check_trigger_health()

    assert len(failures) == 1
    assert failures[0].trigger_name == "update_kpis"
    assert failures[0].failure_count == 2
    assert failures[0].error_message == "boom"
    assert failures[0].occurred_at is not None


@pytest.mark.asyncio
async def test_log_trigger_execution(engine, service) -> None:
    monitor = service.monitor.triggers

    assert await monitor.log_trigger_execution(trigger_name="t", table_name="calls", operation="insert") is False

    await provision_trigger_log(engine)
    assert await monitor.log_trigger_execution(
        trigger_name="update_kpis",
        table_name="calls",
        operation="UPDATE",
        status="error",
        error_message="division by zero",
        execution_time_ms=12,
    ) is True
    failures = await monitor.check_trigger_health()

    assert [(row.trigger_name, row.operation, row.error_message) for row in failures] == [
        ("update_kpis", "update", "division by zero")
    ]
    with pytest.raises(ValueError):
        await monitor.log_trigger_execution(trigger_name="t", table_name="calls", operation="truncate")


@pytest.mark.asyncio
async def test_trigger_log_honors_custom_table(engine) -> None:
    table = await provision_trigger_log(engine, log_table="trigger_audit")
    runner = QueryRunner(engine)
    monitor = TriggerHealthMonitor(runner, log_table=table)

    assert await monitor.log_trigger_execution(
        trigger_name="t", table_name="calls", operation="delete", status="error"
    ) is True
    assert len(await monitor.check_trigger_health()) == 1
    assert await runner.table_exists("trigger_execution_log") is False


@pytest.mark.asyncio
async def test_provision_trigger_log_is_idempotent(engine) -> None:
    await provision_trigger_log(engine)
    await provision_trigger_log(engine)

    assert await QueryRunner(engine).table_exists("trigger_execution_log") is True


@pytest.mark.asyncio
async def test_performance_check_is_empty_off_postgres(service) -> None:
    assert service.runner.dialect_name == "sqlite"
    assert await service.monitor.performance.check_query_performance() == []


@pytest.mark.asyncio
async def test_missing_monitored_table_degrades_only_its_category(engine, notifier) -> None:
    base = default_catalog()
    catalog = RelationshipCatalog(
        primary=base.primary,
        analytics=(TenantRelationship("lead_scores", "call_id", "calls"),),
        required=base.required,
    )
    service = build_integrity_service(engine, catalog=catalog, registry=AlertRegistry(), notifier=notifier)

    metrics = await service.monitor.get_data_integrity_metrics()

    assert metrics.analytics_contamination is None
    assert metrics.errors["analytics_contamination"]["code"] == "DETECTION_SCHEMA_MISSING"
    assert metrics.cross_tenant_contamination == 0
    assert metrics.orphaned_records == 0
    assert metrics.degraded is True
    assert counters_snapshot()["integrity_detector_failures_total.analytics_contamination"] == 1


@pytest.mark.asyncio
async def test_query_timeout_surfaces_as_detection_error(engine) -> None:
    runner = QueryRunner(engine, timeout_s=0)
    statement = contamination_statement(default_catalog().primary[0])

    with pytest.raises(DetectionError) as exc_info:
        await runner.fetch_all(statement, category="cross_tenant_contamination", relation="calls")

    assert exc_info.value.code == "DETECTION_TIMEOUT"
    assert exc_info.value.category == "cross_tenant_contamination"


@pytest.mark.asyncio
async def test_unreachable_store_degrades_every_category(notifier) -> None:
    # Nothing listens on port 1, so every pooled connect is refused.
    engine = create_async_engine("postgresql+asyncpg://u:p@127.0.0.1:1/db")
    try:
        service = build_integrity_service(engine, registry=AlertRegistry(), notifier=notifier)

        metrics = await service.monitor.get_data_integrity_metrics()

        categories = (
            "cross_tenant_contamination",
            "analytics_contamination",
            "orphaned_records",
            "trigger_failures",
            "performance_issues",
        )
        assert [getattr(metrics, category) for category in categories] == [None] * 5
        assert {metrics.errors[category]["code"] for category in categories} == {"DETECTION_CONNECTION_FAILED"}
        assert metrics.degraded is True

        with pytest.raises(DetectionError) as exc_info:
            await service.runner.table_exists("calls")
        assert exc_info.value.code == "DETECTION_CONNECTION_FAILED"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_single_tenant_mismatch_raises_one_low_alert(service, seeder, notifier) -> None:
    await _seed_cross_tenant_call(seeder)

    alerts = await service.alerts.check_alerts()

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.rule_id == "cross-tenant-contamination"
    assert alert.severity == Severity.LOW
    assert alert.status == AlertStatus.ACTIVE
    assert alert.details["affected_tenants"] == ["T1", "T2"]
    assert [sent.id for sent in notifier.sent] == [alert.id]


@pytest.mark.asyncio
async def test_repeated_checks_refresh_the_same_alert(service, seeder, notifier) -> None:
    await _seed_cross_tenant_call(seeder)

    first = await service.alerts.check_alerts()
    second = await service.alerts.check_alerts()

    assert [alert.id for alert in second] == [first[0].id]
    assert second[0].detection_count == 2
    assert len(service.alerts.get_active_alerts()) == 1
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_alert_lifecycle_through_engine(service, seeder) -> None:
    await _seed_cross_tenant_call(seeder)
    (alert,) = await service.alerts.check_alerts()

    assert await service.alerts.acknowledge_alert(alert.id) is True
    assert await service.alerts.resolve_alert(alert.id) is True
    assert await service.alerts.acknowledge_alert(alert.id) is False
    assert service.alerts.get_active_alerts() == []

    (reopened,) = await service.alerts.check_alerts()

    assert reopened.id != alert.id
    assert reopened.status == AlertStatus.ACTIVE
    assert service.alerts.get_alert_stats()["resolved"] == 1


@pytest.mark.asyncio
async def test_failed_category_keeps_its_open_alert_untouched(service, seeder, monkeypatch) -> None:
    await _seed_cross_tenant_call(seeder)
    (alert,) = await service.alerts.check_alerts()

    async def _timeout() -> list:
        raise DetectionError("cross_tenant_contamination", "timed out", code="DETECTION_TIMEOUT")

    monkeypatch.setattr(service.monitor.contamination, "detect_cross_tenant_contamination", _timeout)
    touched = await service.alerts.check_alerts()

    assert touched == []
    current = service.registry.require(alert.id)
    assert current.status == AlertStatus.ACTIVE
    assert current.detection_count == 1


@pytest.mark.asyncio
async def test_alert_cycle_summary(service, seeder) -> None:
    await _seed_cross_tenant_call(seeder)

    summary = await run_alert_cycle(service)

    assert summary["status"] == "ok"
    assert summary["alerts_touched"] == 1
    assert summary["active_alerts"] == 1
    assert summary["critical_alerts"] == 0


@pytest.mark.asyncio
async def test_dashboard_reflects_contamination(service, seeder) -> None:
    await _seed_cross_tenant_call(seeder)
    await service.alerts.check_alerts()

    dashboard = await service.dashboard.get_dashboard()

    assert dashboard["health_score"] == 75
    assert dashboard["health_status"] == "good"
    assert dashboard["recommendations"][0] == "CRITICAL: Fix cross-tenant data contamination immediately."
    assert len(dashboard["alerts"]["active"]) == 1
    assert dashboard["degraded"] is False


@pytest.mark.asyncio
async def test_removing_orphan_clears_next_pass(service, seeder) -> None:
    await seeder.lead_analytics("la9", call_id="missing", tenant_id="T1")

    (orphan,) = await service.monitor.orphans.detect_orphaned_records()
    assert orphan.orphan_type == "missing_call"

    await seeder.delete_lead_analytics("la9")
    assert await service.monitor.orphans.detect_orphaned_records() == []
