"""
Live location channel.

A channel relays the fixes persisted for one topic (`driver:<id>` or `order:<id>`) to any
number of local subscribers (customer tracking screen, restaurant view, dashboard):

- bursts are coalesced by a trailing debounce window (`debounce_seconds`), capped by
  `max_wait_seconds` so a steady stream of fixes still gets through;
- every subscriber holds only the latest undelivered fix (slow consumers skip ahead);
- subscribers see fixes emitted after they joined, unless they ask for `replay=True`,
  which reads the latest stored fix explicitly;
- a dropped store feed is re-subscribed after `reconnect_delay_seconds`, and the store's
  latest fix is delivered if it is newer than the last one relayed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from deliverytrack.config.settings import Settings
from deliverytrack.domain.models import DriverFix, FixSource
from deliverytrack.tracking.store import FixStore, FixStream, StoreUnavailableError

logger = logging.getLogger(__name__)


class LocationSubscription:
    """One subscriber's handle. Iterate it to receive fixes; `unsubscribe()` any time."""

    def __init__(self, on_unsubscribe: Callable[[LocationSubscription], None] | None = None):
        self._on_unsubscribe = on_unsubscribe
        self._pending: DriverFix | None = None
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, fix: DriverFix) -> None:
        if self._closed:
            return
        self._pending = fix
        self._ready.set()

    def unsubscribe(self) -> None:
        """Idempotent; safe even if the owning subscribe() call never completed."""
        if self._closed:
            return
        self._closed = True
        self._pending = None
        self._ready.set()
        if self._on_unsubscribe is not None:
            self._on_unsubscribe(self)

    async def next(self, timeout: float | None = None) -> DriverFix | None:
        """Wait for the next fix; None on timeout or once unsubscribed."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        fix, self._pending = self._pending, None
        self._ready.clear()
        if self._closed:
            return None
        return fix

    def __aiter__(self) -> LocationSubscription:
        return self

    async def __anext__(self) -> DriverFix:
        fix = await self.next()
        if fix is None:
            raise StopAsyncIteration
        return fix


class LiveLocationChannel:
    def __init__(
        self,
        store: FixStore,
        topic: str,
        *,
        debounce_seconds: float = 1.0,
        max_wait_seconds: float = 5.0,
        reconnect_delay_seconds: float = 2.0,
    ):
        if debounce_seconds < 0 or max_wait_seconds < 0 or reconnect_delay_seconds < 0:
            raise ValueError("channel timings must be >= 0")
        self._store = store
        self.topic = topic
        self._debounce_seconds = float(debounce_seconds)
        self._max_wait_seconds = float(max_wait_seconds)
        self._reconnect_delay_seconds = float(reconnect_delay_seconds)

        self._subscribers: set[LocationSubscription] = set()
        self._pending: DriverFix | None = None
        self._first_pending_at: float | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._last_delivered: DriverFix | None = None
        self._stream: FixStream | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()
        self._closed = False

    @classmethod
    def from_settings(cls, store: FixStore, topic: str, settings: Settings) -> LiveLocationChannel:
        ch = settings.channel
        return cls(
            store,
            topic,
            debounce_seconds=ch.debounce_seconds,
            max_wait_seconds=ch.max_wait_seconds,
            reconnect_delay_seconds=ch.reconnect_delay_seconds,
        )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def last_delivered(self) -> DriverFix | None:
        return self._last_delivered

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Start relaying; returns once the first store subscription attempt finished."""
        if self._closed:
            raise RuntimeError(f"channel {self.topic} is closed")
        if self._pump_task is not None:
            return
        self._pump_task = asyncio.create_task(self._pump(), name=f"channel-pump:{self.topic}")
        # Fixes written before the feed is attached would otherwise be missed.
        waiter = asyncio.create_task(self._connected.wait())
        await asyncio.wait({waiter, self._pump_task}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()

    async def subscribe(self, *, replay: bool = False) -> LocationSubscription:
        subscription = LocationSubscription(on_unsubscribe=self._subscribers.discard)
        if self._closed:
            subscription.unsubscribe()
            return subscription
        self._subscribers.add(subscription)
        if replay:
            try:
                latest = await self._store.read_topic_fix(self.topic)
            except StoreUnavailableError as exc:
                logger.warning("Replay for %s skipped: %s", self.topic, exc)
                latest = None
            if latest is not None:
                subscription.deliver(latest.model_copy(update={"source": FixSource.REMOTE}))
        return subscription

    async def _pump(self) -> None:
        resync = False
        while not self._closed:
            try:
                self._stream = await self._store.subscribe(self.topic)
                self._connected.set()
                if resync:
                    latest = await self._store.read_topic_fix(self.topic)
                    if latest is not None:
                        self._on_fix(latest)
                    logger.info("Channel %s resubscribed", self.topic)
                async for fix in self._stream:
                    self._on_fix(fix)
                return
            except StoreUnavailableError as exc:
                self._connected.set()
                logger.warning(
                    "Channel %s lost its feed (%s); retrying in %.1fs",
                    self.topic,
                    exc,
                    self._reconnect_delay_seconds,
                )
                resync = True
                await asyncio.sleep(self._reconnect_delay_seconds)

    def _newest_seen(self) -> DriverFix | None:
        return self._pending or self._last_delivered

    def _on_fix(self, fix: DriverFix) -> None:
        if self._closed or not fix.is_newer_than(self._newest_seen()):
            return
        self._pending = fix
        if self._debounce_seconds == 0:
            self._flush()
            return

        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._first_pending_at is None:
            self._first_pending_at = now
        delay = self._debounce_seconds
        if self._max_wait_seconds > 0:
            delay = min(delay, max(0.0, self._first_pending_at + self._max_wait_seconds - now))
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(delay, self._flush)

    def _flush(self) -> None:
        self._timer = None
        self._first_pending_at = None
        fix, self._pending = self._pending, None
        if fix is None or self._closed:
            return
        self._last_delivered = fix
        relayed = fix.model_copy(update={"source": FixSource.REMOTE})
        for subscription in list(self._subscribers):
            subscription.deliver(relayed)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._stream is not None:
            self._stream.close()
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
        for subscription in list(self._subscribers):
            subscription.unsubscribe()
        logger.debug("Channel %s closed", self.topic)


class ChannelRegistry:
    """Shares one started channel per topic between all local subscribers.

    Every `acquire(topic)` must be paired with a `release(topic)`; the channel (its pump
    task and store feed) is closed when the last holder releases it.
    """

    def __init__(self, store: FixStore, settings: Settings):
        self._store = store
        self._settings = settings
        self._channels: dict[str, LiveLocationChannel] = {}
        self._refs: dict[str, int] = {}

    @property
    def topics(self) -> list[str]:
        return sorted(self._channels)

    async def acquire(self, topic: str) -> LiveLocationChannel:
        channel = self._channels.get(topic)
        self._refs[topic] = self._refs.get(topic, 0) + 1
        if channel is None or channel.closed:
            channel = LiveLocationChannel.from_settings(self._store, topic, self._settings)
            self._channels[topic] = channel
            await channel.start()
        return channel

    async def release(self, topic: str) -> None:
        count = self._refs.get(topic, 0) - 1
        if count > 0:
            self._refs[topic] = count
            return
        self._refs.pop(topic, None)
        channel = self._channels.pop(topic, None)
        if channel is not None:
            await channel.close()

    async def close_all(self) -> None:
        channels, self._channels = list(self._channels.values()), {}
        self._refs.clear()
        for channel in channels:
            await channel.close()
