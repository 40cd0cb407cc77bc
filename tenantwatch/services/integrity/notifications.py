from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
import time
from typing import Protocol

import httpx

from tenantwatch.core.config import get_settings
from tenantwatch.domain.records import Alert
from tenantwatch.services.resilience import RetryPolicy, default_retry_policy, retry_async
from tenantwatch.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


class AlertNotifier(Protocol):
    async def notify(self, alert: Alert) -> None: ...


class LogAlertNotifier:
    """Default delivery: one structured warning per newly raised alert."""

    async def notify(self, alert: Alert) -> None:
        increment_counter("integrity_notifications_logged_total")
        logger.warning(
            "integrity_alert_raised id=%s rule=%s severity=%s message=%s",
            alert.id,
            alert.rule_id,
            alert.severity.value,
            alert.message,
        )


@dataclass(frozen=True)
class WebhookDeliveryResult:
    # Summarize webhook delivery attempts for callers and tests.
    sent: bool
    status_code: int | None
    message: str


def build_alert_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures so receivers can verify alert payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class WebhookAlertNotifier:
    def __init__(
        self,
        url: str,
        *,
        secret: str = "",
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._policy = policy or default_retry_policy()
        self._transport = transport

    async def deliver(self, alert: Alert) -> WebhookDeliveryResult:
        # Post the alert with a short timeout; failures are reported, never raised.
        body = json.dumps(
            {"event_type": "integrity.alert.created", "alert": alert.to_dict()},
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Integrity-Event": "integrity.alert.created"}
        if self._secret:
            headers["X-Integrity-Signature"] = build_alert_signature(self._secret, body)

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._policy.timeout_ms / 1000.0, transport=self._transport) as client:
                response = await client.post(self._url, content=body, headers=headers)
                if response.status_code >= 500:
                    response.raise_for_status()
                return response

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError)):
                return True
            if isinstance(exc, httpx.HTTPStatusError):
                return exc.response.status_code >= 500
            return False

        start = time.monotonic()
        try:
            response = await retry_async(_call, policy=self._policy, retryable=_retryable)
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            record_external_call(
                integration="integrity.webhook",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("integrity_webhook_send_failed alert_id=%s", alert.id, exc_info=exc)
            return WebhookDeliveryResult(sent=False, status_code=None, message=str(exc))

        success = response.status_code < 400
        record_external_call(
            integration="integrity.webhook",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if not success:
            logger.warning(
                "integrity_webhook_rejected alert_id=%s status_code=%s", alert.id, response.status_code
            )
            return WebhookDeliveryResult(
                sent=False,
                status_code=response.status_code,
                message=f"Webhook responded with {response.status_code}",
            )
        return WebhookDeliveryResult(sent=True, status_code=response.status_code, message="delivered")

    async def notify(self, alert: Alert) -> None:
        result = await self.deliver(alert)
        increment_counter(
            "integrity_notifications_sent_total" if result.sent else "integrity_notifications_failed_total"
        )


def notifier_from_settings() -> AlertNotifier:
    settings = get_settings()
    if settings.integrity_alert_webhook_url:
        return WebhookAlertNotifier(
            settings.integrity_alert_webhook_url,
            secret=settings.integrity_alert_webhook_secret,
        )
    return LogAlertNotifier()
