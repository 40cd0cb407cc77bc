from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

from tenantwatch.core.logging import configure_logging
from tenantwatch.persistence.db import dispose_engine, get_engine
from tenantwatch.services.integrity.dashboard import build_recommendations
from tenantwatch.services.integrity.metrics import calculate_health_score, health_status, weights_from_settings
from tenantwatch.services.integrity.service import build_integrity_service
from tenantwatch.services.integrity.triggers import provision_trigger_log


async def run_initialization(*, output_json: str | None, skip_provision: bool) -> int:
    # Provision the trigger log, run one full pass, and fail the deploy step on contamination.
    engine = get_engine()
    try:
        provisioned = None if skip_provision else await provision_trigger_log(engine)
        service = build_integrity_service(engine)
        result = await service.monitor.run_full_integrity_check()
    finally:
        await dispose_engine()

    metrics = result.summary
    score = calculate_health_score(metrics, weights_from_settings())
    contaminated = bool(metrics.cross_tenant_contamination or metrics.analytics_contamination)
    summary: dict[str, Any] = {
        "status": "fail" if contaminated else "pass",
        "trigger_log_table": provisioned,
        "health_score": score,
        "health_status": health_status(score),
        "metrics": metrics.to_dict(),
        "summary": result.summary_text,
        "recommendations": build_recommendations(metrics, result.details),
    }
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 1 if contaminated else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Provision integrity monitoring and run an initial check.")
    parser.add_argument("--output-json", default=None)
    parser.add_argument("--skip-provision", action="store_true", help="Do not create the trigger log table.")
    args = parser.parse_args()
    configure_logging()
    return asyncio.run(run_initialization(output_json=args.output_json, skip_provision=args.skip_provision))


if __name__ == "__main__":
    sys.exit(main())
