from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque

from controlmap.core.config import get_settings
from controlmap.domain.analysis import ProgressEvent
from controlmap.services.telemetry import increment_counter, set_gauge

logger = logging.getLogger(__name__)


class Subscription:
    """One observer's view of a job topic.

    Yields a replay of the latest snapshot first, then live events, and ends
    after the terminal event. A slow consumer loses its oldest queued events,
    never the newest.
    """

    def __init__(self, broadcaster: "ProgressBroadcaster", job_id: str, buffer_size: int) -> None:
        self._broadcaster = broadcaster
        self.job_id = job_id
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=max(1, buffer_size))
        self._finished = False
        self._closed = False
        self.dropped = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def _offer(self, event: ProgressEvent | None) -> None:
        if self._closed:
            return
        if self._queue.full():
            # Events are full snapshots, so dropping the oldest loses no state.
            self._queue.get_nowait()
            self.dropped += 1
            increment_counter("progress_events_dropped_total")
        self._queue.put_nowait(event)

    async def next_event(self, timeout: float | None = None) -> ProgressEvent | None:
        """Return the next event, or None if ``timeout`` elapses first.

        Raises ``StopAsyncIteration`` once the stream has ended.
        """
        if self._finished:
            raise StopAsyncIteration
        try:
            if timeout is None:
                event = await self._queue.get()
            else:
                event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if event is None:
            self._finished = True
            self.close()
            raise StopAsyncIteration
        if event.terminal:
            self._finished = True
            self.close()
        return event

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.next_event()
        assert event is not None
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broadcaster._detach(self)

    def _end(self) -> None:
        # Topic teardown while still attached: wake the reader so it can finish.
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


@dataclass
class _Topic:
    job_id: str
    history: Deque[ProgressEvent]
    subscribers: set[Subscription] = field(default_factory=set)
    last_event: ProgressEvent | None = None
    seq: int = 0
    terminal_at: float | None = None
    teardown_handle: asyncio.TimerHandle | None = None


class ProgressBroadcaster:
    """Process-wide registry of per-job progress topics."""

    def __init__(
        self,
        *,
        replay_ttl_s: float | None = None,
        buffer_size: int | None = None,
        history_size: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._ttl = settings.progress_replay_ttl_s if replay_ttl_s is None else replay_ttl_s
        self._buffer_size = buffer_size or settings.progress_subscriber_buffer
        self._history_size = history_size or settings.progress_history_size
        self._clock = clock or time.monotonic
        self._topics: dict[str, _Topic] = {}

    @property
    def topic_count(self) -> int:
        return len(self._topics)

    def register(self, job_id: str, initial: ProgressEvent | None = None) -> None:
        if job_id not in self._topics:
            self._topics[job_id] = _Topic(job_id=job_id, history=deque(maxlen=self._history_size))
            set_gauge("progress_topics_active", len(self._topics))
        if initial is not None:
            self.publish(job_id, initial)

    def has_topic(self, job_id: str) -> bool:
        return job_id in self._topics

    def last_event(self, job_id: str) -> ProgressEvent | None:
        topic = self._topics.get(job_id)
        return topic.last_event if topic else None

    def history(self, job_id: str) -> list[ProgressEvent]:
        topic = self._topics.get(job_id)
        return list(topic.history) if topic else []

    def subscriber_count(self, job_id: str) -> int:
        topic = self._topics.get(job_id)
        return len(topic.subscribers) if topic else 0

    def publish(self, job_id: str, event: ProgressEvent) -> ProgressEvent | None:
        """Fan an event out to every subscriber without awaiting any of them.

        The broadcaster assigns the per-job sequence number. Events for unknown
        or already-terminal topics are dropped.
        """
        topic = self._topics.get(job_id)
        if topic is None:
            logger.debug("progress_publish_unknown_job job_id=%s", job_id)
            return None
        if topic.terminal_at is not None:
            logger.warning("progress_publish_after_terminal job_id=%s stage=%s", job_id, event.stage)
            return None
        topic.seq += 1
        event = replace(event, seq=topic.seq, replay=False)
        topic.last_event = event
        topic.history.append(event)
        for subscriber in list(topic.subscribers):
            subscriber._offer(event)
        if event.terminal:
            topic.terminal_at = self._clock()
            self._schedule_teardown(topic, self._ttl)
        return event

    def subscribe(self, job_id: str) -> Subscription | None:
        topic = self._topics.get(job_id)
        if topic is None:
            return None
        subscription = Subscription(self, job_id, self._buffer_size)
        if topic.last_event is not None:
            subscription._offer(replace(topic.last_event, replay=True))
        topic.subscribers.add(subscription)
        if topic.teardown_handle is not None:
            topic.teardown_handle.cancel()
            topic.teardown_handle = None
        logger.debug("progress_subscribed job_id=%s subscribers=%s", job_id, len(topic.subscribers))
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        topic = self._topics.get(subscription.job_id)
        if topic is None:
            return
        topic.subscribers.discard(subscription)
        if topic.terminal_at is not None and not topic.subscribers:
            remaining = self._ttl - (self._clock() - topic.terminal_at)
            self._schedule_teardown(topic, remaining)

    def _schedule_teardown(self, topic: _Topic, delay: float) -> None:
        if topic.teardown_handle is not None:
            topic.teardown_handle.cancel()
            topic.teardown_handle = None
        if topic.subscribers:
            return
        if delay <= 0:
            self._drop(topic.job_id)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        topic.teardown_handle = loop.call_later(delay, self.sweep)

    def sweep(self) -> list[str]:
        """Drop every terminal topic whose replay window has elapsed and that nobody observes."""
        now = self._clock()
        dropped = []
        for job_id, topic in list(self._topics.items()):
            if topic.terminal_at is None or topic.subscribers:
                continue
            if now - topic.terminal_at >= self._ttl:
                self._drop(job_id)
                dropped.append(job_id)
        return dropped

    def _drop(self, job_id: str) -> None:
        topic = self._topics.pop(job_id, None)
        if topic is None:
            return
        if topic.teardown_handle is not None:
            topic.teardown_handle.cancel()
        for subscriber in list(topic.subscribers):
            subscriber._end()
        set_gauge("progress_topics_active", len(self._topics))
        logger.info("progress_topic_dropped job_id=%s", job_id)

    def discard(self, job_id: str) -> None:
        # Explicit removal, e.g. when the analysis is deleted.
        self._drop(job_id)


_broadcaster: ProgressBroadcaster | None = None


def get_progress_broadcaster() -> ProgressBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = ProgressBroadcaster()
    return _broadcaster


def reset_progress_broadcaster() -> None:
    global _broadcaster
    _broadcaster = None
