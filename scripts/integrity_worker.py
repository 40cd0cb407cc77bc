from __future__ import annotations

import asyncio

from tenantwatch.core.logging import configure_logging
from tenantwatch.persistence.db import dispose_engine, get_engine
from tenantwatch.services.integrity.service import build_integrity_service
from tenantwatch.services.integrity.worker import run_alert_loop


async def _main() -> None:
    # Boot a dedicated alert loop process so integrity alerts continue without dashboard traffic.
    configure_logging()
    service = build_integrity_service(get_engine())
    try:
        await run_alert_loop(service)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(_main())
