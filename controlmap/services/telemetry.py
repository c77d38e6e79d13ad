from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from typing import Deque, Iterable, NamedTuple

# Process-local only: every API worker reports its own numbers.


class _Request(NamedTuple):
    ts: float
    status_code: int
    latency_ms: float


class _ExternalCall(NamedTuple):
    ts: float
    integration: str
    latency_ms: float
    success: bool


_requests: Deque[_Request] = deque(maxlen=20000)
_external_calls: Deque[_ExternalCall] = deque(maxlen=10000)
_stream_durations: Deque[float] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def _percentile(sorted_values: list[float], q: float) -> float:
    # Nearest-rank percentile over an already sorted, non-empty list.
    return sorted_values[max(0, math.ceil(q * len(sorted_values)) - 1)]


def _since(samples: Iterable, window_s: int) -> list:
    cutoff = time.time() - window_s
    return [sample for sample in samples if sample.ts >= cutoff]


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _requests.append(_Request(time.time(), status_code, latency_ms))
    if path.startswith("/v1/analyses") and status_code >= 500:
        increment_counter("analysis_api_errors_total")


def record_stream_duration(duration_ms: float) -> None:
    _stream_durations.append(duration_ms)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_calls.append(_ExternalCall(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def availability(window_s: int) -> float | None:
    """Share of non-5xx responses in the window, in percent; None without traffic."""
    samples = _since(_requests, window_s)
    if not samples:
        return None
    ok = sum(1 for sample in samples if sample.status_code < 500)
    return ok * 100.0 / len(samples)


def request_latency_by_status(window_s: int) -> dict[str, dict[str, float]]:
    by_family: dict[str, list[float]] = defaultdict(list)
    for sample in _since(_requests, window_s):
        by_family[f"{sample.status_code // 100}xx"].append(sample.latency_ms)
    result = {}
    for family, latencies in by_family.items():
        latencies.sort()
        result[family] = {
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
        }
    return result


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int]]:
    """Evaluation backend latency and failure counts per client name."""
    by_integration: dict[str, list[_ExternalCall]] = defaultdict(list)
    for sample in _since(_external_calls, window_s):
        by_integration[sample.integration].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for integration, calls in by_integration.items():
        latencies = sorted(call.latency_ms for call in calls)
        result[integration] = {
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
            "calls": len(calls),
            "failures": sum(1 for call in calls if not call.success),
        }
    return result


def stream_duration_stats() -> dict[str, float | None]:
    if not _stream_durations:
        return {"p95": None, "max": None}
    durations = sorted(_stream_durations)
    return {"p95": _percentile(durations, 0.95), "max": durations[-1]}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    for buffer in (_requests, _external_calls, _stream_durations, _counters, _gauges):
        buffer.clear()
