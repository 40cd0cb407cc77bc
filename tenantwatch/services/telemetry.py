from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class DetectorSample:
    ts: float
    category: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_detector_samples: Deque[DetectorSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for the ops snapshot.
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture outbound call latency and outcomes (alert webhooks).
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_detector_run(*, category: str, latency_ms: float, success: bool) -> None:
    # One sample per detector per pass; failures include timeouts and schema drift.
    _detector_samples.append(
        DetectorSample(ts=time.time(), category=category, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for detector failures, alert volume and notification delivery.
    _counters[name] += value


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    # Compute p95 latency for requests in the window, optionally filtered by path.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if path_prefix:
        samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
    if not samples:
        return None
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def external_call_stats(window_s: int) -> dict[str, dict[str, float | int]]:
    # Summarize outbound calls per integration in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "calls": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": latencies[p95_idx],
        }
    return result


def detector_stats(window_s: int) -> dict[str, dict[str, float | int]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[DetectorSample]] = defaultdict(list)
    for sample in _detector_samples:
        if sample.ts >= cutoff:
            grouped[sample.category].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for category, samples in sorted(grouped.items()):
        latencies = sorted(sample.latency_ms for sample in samples)
        result[category] = {
            "runs": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": latencies[max(0, math.ceil(0.95 * len(latencies)) - 1)],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    _request_samples.clear()
    _external_samples.clear()
    _detector_samples.clear()
    _counters.clear()
