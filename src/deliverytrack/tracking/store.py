"""
Shared driver-fix store.

The store holds the replicated "current location" record of every driver. It is
single-writer (the driver's own tracker, or the HTTP endpoint acting for a remote one)
and multi-reader. Writes replace the whole record, so readers never see a partial fix.

Publishing is implicit: every accepted write fans out to the streams subscribed to
`driver:<id>` and, while the driver has an active order, `order:<id>`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Protocol

from deliverytrack.domain.models import DriverFix

logger = logging.getLogger(__name__)


class StoreUnavailableError(ConnectionError):
    """The store (or its change feed) is temporarily unreachable."""


def driver_topic(driver_id: str) -> str:
    return f"driver:{driver_id}"


def order_topic(order_id: str) -> str:
    return f"order:{order_id}"


class FixStream:
    """Async iterator over the fixes published to one topic after subscription."""

    def __init__(self, topic: str, store: InMemoryFixStore):
        self.topic = topic
        self._store = store
        self._queue: asyncio.Queue[DriverFix | Exception | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, fix: DriverFix) -> None:
        if not self._closed:
            self._queue.put_nowait(fix)

    def _fail(self, exc: Exception) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(exc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._drop_stream(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> FixStream:
        return self

    async def __anext__(self) -> DriverFix:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FixStore(Protocol):
    async def write_driver_fix(self, fix: DriverFix) -> bool: ...

    async def read_driver_fix(self, driver_id: str) -> DriverFix | None: ...

    async def read_topic_fix(self, topic: str) -> DriverFix | None: ...

    async def subscribe(self, topic: str) -> FixStream: ...


class InMemoryFixStore:
    """Process-local store with a change feed and per-order location history."""

    def __init__(self, *, history_limit: int = 50):
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self._history_limit = history_limit
        self._latest: dict[str, DriverFix] = {}
        self._active_order: dict[str, str] = {}
        self._history: dict[str, deque[DriverFix]] = {}
        self._streams: dict[str, set[FixStream]] = {}
        self._available = True

    def _require_available(self) -> None:
        if not self._available:
            raise StoreUnavailableError("driver-fix store is unavailable")

    def assign_order(self, driver_id: str, order_id: str | None) -> None:
        """Route this driver's fixes to `order:<order_id>` (None clears the assignment)."""
        if order_id is None:
            self._active_order.pop(driver_id, None)
        else:
            self._active_order[driver_id] = order_id

    def active_order(self, driver_id: str) -> str | None:
        return self._active_order.get(driver_id)

    @property
    def stream_count(self) -> int:
        """Open change-feed streams across all topics."""
        return sum(len(group) for group in self._streams.values())

    async def write_driver_fix(self, fix: DriverFix) -> bool:
        """Replace the driver's record if `fix` is newer. Returns whether it was accepted."""
        self._require_available()
        current = self._latest.get(fix.driver_id)
        if not fix.is_newer_than(current):
            logger.debug("Ignoring out-of-order fix for driver %s", fix.driver_id)
            return False

        self._latest[fix.driver_id] = fix
        topics = [driver_topic(fix.driver_id)]
        order_id = self._active_order.get(fix.driver_id)
        if order_id is not None:
            self._history.setdefault(order_id, deque(maxlen=self._history_limit)).appendleft(fix)
            topics.append(order_topic(order_id))

        for topic in topics:
            for stream in list(self._streams.get(topic, ())):
                stream._push(fix)
        return True

    async def read_driver_fix(self, driver_id: str) -> DriverFix | None:
        self._require_available()
        return self._latest.get(driver_id)

    async def read_topic_fix(self, topic: str) -> DriverFix | None:
        """Latest fix relevant to a `driver:` or `order:` topic."""
        self._require_available()
        kind, _, key = topic.partition(":")
        if kind == "driver":
            return self._latest.get(key)
        if kind == "order":
            history = self._history.get(key)
            return history[0] if history else None
        raise ValueError(f"Unknown topic: {topic!r}")

    async def order_history(self, order_id: str, limit: int | None = None) -> list[DriverFix]:
        """Most recent fixes recorded for an order, newest first."""
        self._require_available()
        history = list(self._history.get(order_id, ()))
        return history[:limit] if limit is not None else history

    async def subscribe(self, topic: str) -> FixStream:
        self._require_available()
        stream = FixStream(topic, self)
        self._streams.setdefault(topic, set()).add(stream)
        return stream

    def _drop_stream(self, stream: FixStream) -> None:
        streams = self._streams.get(stream.topic)
        if streams is not None:
            streams.discard(stream)
            if not streams:
                del self._streams[stream.topic]

    def disconnect(self) -> None:
        """Simulate a connectivity loss: reads/writes fail and open streams error out."""
        self._available = False
        streams = [s for group in self._streams.values() for s in group]
        self._streams.clear()
        for stream in streams:
            stream._fail(StoreUnavailableError(f"change feed for {stream.topic} disconnected"))
        logger.warning("Driver-fix store disconnected (%d streams dropped)", len(streams))

    def reconnect(self) -> None:
        self._available = True
        logger.info("Driver-fix store reconnected")
