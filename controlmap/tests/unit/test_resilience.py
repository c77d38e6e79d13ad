from __future__ import annotations

import pytest

from controlmap.core.errors import (
    EvaluationAuthError,
    EvaluationOutputError,
    EvaluationTransportError,
    IntegrationUnavailableError,
)
from controlmap.services.resilience import (
    BreakerState,
    Bulkhead,
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    get_circuit_breaker,
    get_circuit_breaker_state,
    is_transient,
    retry_async,
)
from controlmap.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_stops_on_non_retryable() -> None:
    calls = {"count": 0}

    async def broken() -> str:
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_bounds_attempts() -> None:
    seen: list[int] = []

    async def always_down() -> str:
        raise TimeoutError("still down")

    with pytest.raises(TimeoutError):
        await retry_async(
            always_down,
            policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
            on_retry=lambda attempt, _exc: seen.append(attempt),
        )
    assert seen == [1]


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    def time_source() -> float:
        return now["t"]

    breaker = CircuitBreaker(
        "test.integration",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=time_source,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    assert await breaker.state() == "open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] = 11.0
    await breaker.before_call()
    assert await breaker.state() == "half_open"
    # Only one trial call is admitted while half-open.
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    assert await breaker.state() == "closed"
    await breaker.before_call()


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        "test.reopen",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()
    assert await breaker.state() == "open"


@pytest.mark.asyncio
async def test_breaker_registry_is_process_local() -> None:
    assert await get_circuit_breaker_state("evaluation.unknown") == "closed"
    first = await get_circuit_breaker("evaluation.test")
    second = await get_circuit_breaker("evaluation.test")
    assert first is second


def test_transient_classification() -> None:
    assert is_transient(EvaluationTransportError("503"))
    assert is_transient(EvaluationOutputError("not json"))
    assert is_transient(TimeoutError())
    assert not is_transient(EvaluationAuthError("401"))
    assert not is_transient(IntegrationUnavailableError("open"))
    assert not is_transient(ValueError("bug"))


@pytest.mark.asyncio
async def test_guard_counts_only_backend_failures() -> None:
    breaker = CircuitBreaker(
        "test.guard",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1),
    )
    with pytest.raises(EvaluationAuthError):
        async with breaker.guard():
            raise EvaluationAuthError("bad key")
    assert await breaker.state() == "closed"

    with pytest.raises(EvaluationTransportError):
        async with breaker.guard():
            raise EvaluationTransportError("502")
    assert await breaker.state() == "open"
    with pytest.raises(IntegrationUnavailableError, match="temporarily unavailable"):
        async with breaker.guard():
            pass


def test_breaker_state_mapping_round_trip() -> None:
    state = BreakerState(state="open", failures=0, opened_at=1712.5, trials=0)
    assert BreakerState.from_mapping(state.to_mapping()) == state
    assert BreakerState.from_mapping({}) == BreakerState()


def test_bulkhead_rejects_when_saturated() -> None:
    bulkhead = Bulkhead("analysis", 1)
    lease = bulkhead.try_acquire()
    assert lease is not None
    assert bulkhead.try_acquire() is None
    lease.release()
    # Releasing twice must not free a second slot.
    lease.release()
    assert bulkhead.active == 0
    again = bulkhead.try_acquire()
    assert again is not None
    assert bulkhead.try_acquire() is None
    again.release()
