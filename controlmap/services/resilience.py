from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from controlmap.core.config import get_settings
from controlmap.core.errors import (
    EvaluationOutputError,
    EvaluationTransportError,
    IntegrationUnavailableError,
)
from controlmap.services.telemetry import increment_counter, set_gauge

logger = logging.getLogger(__name__)

BREAKER_CLOSED = "closed"
BREAKER_OPEN = "open"
BREAKER_HALF_OPEN = "half_open"

_STATE_GAUGE = {BREAKER_CLOSED: 0.0, BREAKER_HALF_OPEN: 0.5, BREAKER_OPEN: 1.0}

# Failures the backend itself is responsible for; these count against the breaker.
BACKEND_FAILURES = (EvaluationTransportError, TimeoutError, OSError)


def is_transient(exc: Exception) -> bool:
    """True for evaluation failures worth one more attempt.

    Malformed output is retried because the next completion may be valid.
    Auth, config and open-breaker errors will not heal within a retry window.
    """
    if isinstance(exc, IntegrationUnavailableError):
        return False
    return isinstance(exc, BACKEND_FAILURES + (EvaluationOutputError,))


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls, *, headroom_ms: int = 0) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            timeout_ms=settings.evaluation_timeout_ms + headroom_ms,
            max_attempts=settings.evaluation_max_attempts,
            backoff_ms=settings.evaluation_retry_backoff_ms,
        )

    @property
    def attempts(self) -> int:
        return max(self.max_attempts, 1)

    def delay_s(self, attempt: int) -> float:
        # Exponential in the attempt number, jittered so parallel controls spread out.
        base = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        return base * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> Any:
    policy = policy or RetryPolicy.from_settings()
    for attempt in range(1, policy.attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless another attempt is allowed
            if attempt == policy.attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            if on_retry is not None:
                on_retry(attempt, exc)
            await asyncio.sleep(policy.delay_s(attempt))
    raise AssertionError("unreachable")


_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def _shared_redis() -> Redis | None:
    # Breakers share state across API workers only when CB_SHARED_STATE is on.
    settings = get_settings()
    if not settings.cb_shared_state:
        return None
    global _redis_client, _redis_loop
    loop = asyncio.get_running_loop()
    if _redis_client is not None and _redis_loop is loop:
        return _redis_client
    try:
        _redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    except (RedisError, ValueError) as exc:
        logger.warning("breaker_redis_unavailable url=%s", settings.redis_url, exc_info=exc)
        return None
    _redis_loop = loop
    return _redis_client


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class BreakerState:
    state: str = BREAKER_CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> "BreakerState":
        opened_at = raw.get("opened_at")
        return cls(
            state=raw.get("state", BREAKER_CLOSED),
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Fails evaluation calls fast while a backend is known to be down.

    closed -> open after ``failure_threshold`` consecutive backend failures;
    open -> half_open once ``open_seconds`` elapsed; half_open admits
    ``half_open_trials`` calls, closing on success and reopening on failure.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        # Wall clock when shared so every worker agrees on opened_at.
        self._now = time_source or (time.time if redis is not None else time.monotonic)
        self._local = BreakerState()

    @property
    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self.name}"

    async def _load(self) -> BreakerState:
        if self._redis is None:
            return self._local
        try:
            raw = await self._redis.hgetall(self._key)
        except (RedisError, OSError) as exc:
            logger.warning("breaker_load_failed name=%s", self.name, exc_info=exc)
            return self._local
        return BreakerState.from_mapping(raw) if raw else self._local

    async def _store(self, state: BreakerState) -> None:
        # The local copy survives a Redis outage, degrading to per-process breaking.
        self._local = state
        if self._redis is None:
            return
        try:
            await self._redis.hset(self._key, mapping=state.to_mapping())
            await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))
        except (RedisError, OSError) as exc:
            logger.warning("breaker_store_failed name=%s", self.name, exc_info=exc)

    def _move(self, current: BreakerState, target: str) -> BreakerState:
        if current.state != target:
            logger.warning("breaker_transition name=%s from=%s to=%s", self.name, current.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self.name}.{target}")
            if target == BREAKER_OPEN:
                increment_counter("circuit_breaker_open_total")
            set_gauge(f"circuit_breaker_state.{self.name}", _STATE_GAUGE[target])
        return BreakerState(state=target, opened_at=self._now() if target == BREAKER_OPEN else None)

    async def state(self) -> str:
        return (await self._load()).state

    async def before_call(self) -> None:
        current = await self._load()
        if current.state == BREAKER_OPEN:
            elapsed = self._now() - (current.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            current = self._move(current, BREAKER_HALF_OPEN)
        if current.state == BREAKER_HALF_OPEN:
            if current.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            current.trials += 1
        await self._store(current)

    async def record_success(self) -> None:
        current = await self._load()
        if current.state == BREAKER_CLOSED:
            current.failures = 0
            await self._store(current)
            return
        await self._store(self._move(current, BREAKER_CLOSED))

    async def record_failure(self) -> None:
        current = await self._load()
        if current.state == BREAKER_HALF_OPEN or current.failures + 1 >= self._config.failure_threshold:
            await self._store(self._move(current, BREAKER_OPEN))
            return
        current.failures += 1
        await self._store(current)

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[None]:
        """Admit one backend call and record how it ended.

        Only backend failures count against the breaker; errors about the
        request itself (auth, bad output) leave it closed.
        """
        await self.before_call()
        try:
            yield
        except BACKEND_FAILURES:
            await self.record_failure()
            raise
        await self.record_success()


_breakers: dict[str, CircuitBreaker] = {}


async def get_circuit_breaker(name: str) -> CircuitBreaker:
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(name, redis=await _shared_redis())
        _breakers[name] = breaker
    return breaker


async def get_circuit_breaker_state(name: str) -> str:
    breaker = _breakers.get(name)
    return await breaker.state() if breaker is not None else BREAKER_CLOSED


def reset_breakers() -> None:
    global _redis_client, _redis_loop
    _breakers.clear()
    _redis_client = None
    _redis_loop = None


@dataclass
class BulkheadLease:
    bulkhead: "Bulkhead"
    released: bool = field(default=False)

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.bulkhead._active -= 1


class Bulkhead:
    """Caps concurrently running analyses; never queues."""

    def __init__(self, name: str, limit: int) -> None:
        self.name = name
        self.limit = max(1, limit)
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    def try_acquire(self) -> BulkheadLease | None:
        if self._active >= self.limit:
            return None
        self._active += 1
        return BulkheadLease(self)
