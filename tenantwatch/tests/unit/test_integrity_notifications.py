from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json

import httpx
import pytest

from tenantwatch.core.config import get_settings
from tenantwatch.domain.records import Alert, AlertStatus, Severity
from tenantwatch.services.integrity.notifications import (
    LogAlertNotifier,
    WebhookAlertNotifier,
    build_alert_signature,
    notifier_from_settings,
)
from tenantwatch.services.resilience import RetryPolicy
from tenantwatch.services.telemetry import counters_snapshot, external_call_stats


def _alert() -> Alert:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return Alert(
        id="cross-tenant-contamination-0123456789abcdef",
        rule_id="cross-tenant-contamination",
        resource_key="calls→agents:t1:t2",
        severity=Severity.LOW,
        status=AlertStatus.ACTIVE,
        message="1 calls→agents row(s) owned by t1 reference data owned by t2",
        details={"affected_tenants": ["t1", "t2"]},
        created_at=now,
        last_seen_at=now,
    )


def _policy(max_attempts: int = 1) -> RetryPolicy:
    return RetryPolicy(timeout_ms=1000, max_attempts=max_attempts, backoff_ms=0)


def test_signature_matches_hmac_sha256() -> None:
    payload = b'{"event_type":"integrity.alert.created"}'
    expected = hmac.new(b"secret", payload, hashlib.sha256).hexdigest()

    assert build_alert_signature("secret", payload) == expected


@pytest.mark.asyncio
async def test_webhook_posts_signed_payload() -> None:
    captured: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202)

    notifier = WebhookAlertNotifier(
        "https://hooks.example.test/integrity",
        secret="secret",
        policy=_policy(),
        transport=httpx.MockTransport(_handler),
    )

    result = await notifier.deliver(_alert())

    assert result.sent is True
    assert result.status_code == 202
    request = captured[0]
    body = json.loads(request.content)
    assert body["event_type"] == "integrity.alert.created"
    assert body["alert"]["id"] == "cross-tenant-contamination-0123456789abcdef"
    assert request.headers["X-Integrity-Event"] == "integrity.alert.created"
    assert request.headers["X-Integrity-Signature"] == build_alert_signature("secret", request.content)
    assert external_call_stats(60)["integrity.webhook"]["failures"] == 0


@pytest.mark.asyncio
async def test_webhook_omits_signature_without_secret() -> None:
    captured: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200)

    notifier = WebhookAlertNotifier(
        "https://hooks.example.test/integrity", policy=_policy(), transport=httpx.MockTransport(_handler)
    )

    await notifier.deliver(_alert())

    assert "X-Integrity-Signature" not in captured[0].headers


@pytest.mark.asyncio
async def test_webhook_client_error_is_reported_without_retry() -> None:
    calls = 0

    def _handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400)

    notifier = WebhookAlertNotifier(
        "https://hooks.example.test/integrity", policy=_policy(max_attempts=3), transport=httpx.MockTransport(_handler)
    )

    result = await notifier.deliver(_alert())

    assert result.sent is False
    assert result.status_code == 400
    assert calls == 1


@pytest.mark.asyncio
async def test_webhook_server_error_is_retried_then_reported() -> None:
    calls = 0

    def _handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    notifier = WebhookAlertNotifier(
        "https://hooks.example.test/integrity", policy=_policy(max_attempts=2), transport=httpx.MockTransport(_handler)
    )

    await notifier.notify(_alert())

    assert calls == 2
    counters = counters_snapshot()
    assert counters["integrity_notifications_failed_total"] == 1
    assert counters["external_retries_total"] == 1
    assert external_call_stats(60)["integrity.webhook"]["failures"] == 1


@pytest.mark.asyncio
async def test_log_notifier_counts_notifications() -> None:
    await LogAlertNotifier().notify(_alert())

    assert counters_snapshot()["integrity_notifications_logged_total"] == 1


def test_notifier_from_settings_defaults_to_logging() -> None:
    assert isinstance(notifier_from_settings(), LogAlertNotifier)


def test_notifier_from_settings_uses_webhook_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INTEGRITY_ALERT_WEBHOOK_URL", "https://hooks.example.test/integrity")
    get_settings.cache_clear()

    assert isinstance(notifier_from_settings(), WebhookAlertNotifier)
