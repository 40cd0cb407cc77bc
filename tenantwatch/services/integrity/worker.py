from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any

from tenantwatch.core.config import get_settings
from tenantwatch.domain.records import Severity
from tenantwatch.services.integrity.service import IntegrityService


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    # Keep worker timestamps in UTC to avoid skew between API and background processes.
    return datetime.now(timezone.utc)


async def run_alert_cycle(service: IntegrityService) -> dict[str, Any]:
    # Run one headless alert pass so alerting does not depend on dashboard traffic.
    started = _utc_now()
    alerts = await service.alerts.check_alerts()
    stats = service.alerts.get_alert_stats()
    critical = sum(1 for alert in alerts if alert.severity == Severity.CRITICAL)
    if critical:
        logger.error("integrity_alert_cycle_critical count=%s", critical)
    return {
        "status": "ok",
        "started_at": started.isoformat(),
        "alerts_touched": len(alerts),
        "active_alerts": stats["active"] + stats["acknowledged"],
        "critical_alerts": critical,
    }


async def run_alert_loop(service: IntegrityService, *, interval_s: int | None = None) -> None:
    # Run the alert pass on a fixed cadence and continue after failures to keep monitoring alive.
    interval = max(5, int(interval_s or get_settings().integrity_alert_interval_s))
    logger.info("integrity_alert_loop_started interval_s=%s", interval)
    while True:
        try:
            summary = await run_alert_cycle(service)
            logger.info(
                "integrity_alert_cycle_completed touched=%s active=%s",
                summary["alerts_touched"],
                summary["active_alerts"],
            )
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("integrity alert cycle failed")
        await asyncio.sleep(interval)
