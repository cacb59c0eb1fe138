"""
Driver location tracking.

`LocationTracker` turns device position readings into `DriverFix` values:
- one authoritative one-shot fix on start (permission is required, failures are raised),
- then a continuous watch gated by two independent thresholds: distance moved and time
  elapsed since the last emitted fix (either one crossing emits a fix),
- each fix becomes the local "last known" value immediately and, while the driver is
  online, is written to the shared store for remote subscribers.

The device itself is abstracted behind `LocationService` so the tracker runs the same
against a phone bridge, a simulator or a test double.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Protocol

from deliverytrack.config.settings import Settings
from deliverytrack.core.geo import haversine_m
from deliverytrack.core.time import ensure_utc
from deliverytrack.domain.models import Coordinate, DriverFix, FixSource
from deliverytrack.tracking.store import FixStore, StoreUnavailableError

logger = logging.getLogger(__name__)


class LocationPermissionError(PermissionError):
    """Location access was denied; tracking cannot proceed."""


class LocationUnavailableError(RuntimeError):
    """The device could not produce a position (provider off, no signal, ...)."""


@dataclass(frozen=True)
class PositionReading:
    """A raw device reading, before threshold/accuracy gating."""

    coordinate: Coordinate
    captured_at: datetime
    accuracy_m: float | None = None


class WatchHandle(Protocol):
    def remove(self) -> None: ...


PositionCallback = Callable[[PositionReading], Awaitable[None]]
FixListener = Callable[[DriverFix], Awaitable[None] | None]


class LocationService(Protocol):
    async def request_permission(self) -> bool: ...

    async def current_position(self) -> PositionReading: ...

    async def watch_position(
        self,
        distance_threshold_m: float,
        time_threshold_seconds: float,
        callback: PositionCallback,
    ) -> WatchHandle: ...


@dataclass(frozen=True)
class MovementThreshold:
    """Emit when moved >= `min_distance_m` OR waited >= `min_interval_seconds`."""

    min_distance_m: float = 50.0
    min_interval_seconds: float = 30.0

    def should_emit(self, last: DriverFix | None, reading: PositionReading) -> bool:
        if last is None:
            return True
        captured_at = ensure_utc(reading.captured_at)
        if captured_at <= last.captured_at:
            return False
        elapsed = (captured_at - last.captured_at).total_seconds()
        if elapsed >= self.min_interval_seconds:
            return True
        return haversine_m(last.coordinate, reading.coordinate) >= self.min_distance_m


class LocationTracker:
    def __init__(
        self,
        driver_id: str,
        service: LocationService,
        store: FixStore | None = None,
        *,
        min_distance_m: float = 50.0,
        min_interval_seconds: float = 30.0,
        max_accuracy_m: float | None = 50.0,
        online: bool = True,
        on_store_error: Callable[[Exception], None] | None = None,
    ):
        self.driver_id = driver_id
        self._service = service
        self._store = store
        self._threshold = MovementThreshold(min_distance_m, min_interval_seconds)
        self._max_accuracy_m = max_accuracy_m
        self._online = online
        self._on_store_error = on_store_error
        self._listeners: list[FixListener] = []
        self._last_fix: DriverFix | None = None
        self._last_store_error: Exception | None = None
        self._handle: WatchHandle | None = None
        self._started = False
        self._stopped = False

    @classmethod
    def from_settings(
        cls,
        driver_id: str,
        service: LocationService,
        store: FixStore | None,
        settings: Settings,
        **kwargs,
    ) -> LocationTracker:
        tr = settings.tracking
        return cls(
            driver_id,
            service,
            store,
            min_distance_m=tr.min_distance_m,
            min_interval_seconds=tr.min_interval_seconds,
            max_accuracy_m=tr.max_accuracy_m,
            **kwargs,
        )

    @property
    def last_fix(self) -> DriverFix | None:
        """Latest local fix (read-your-own-writes; never waits on the store)."""
        return self._last_fix

    @property
    def last_store_error(self) -> Exception | None:
        return self._last_store_error

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        self._online = bool(online)

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    def add_listener(self, listener: FixListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self) -> DriverFix:
        """Take the one-shot fix and open the watch. Returns the one-shot fix."""
        if self._stopped:
            raise RuntimeError("tracker was stopped; create a new one")
        if self._started and self._last_fix is not None:
            return self._last_fix

        if not await self._service.request_permission():
            raise LocationPermissionError(
                "Location permission denied. Enable location access to share your position."
            )

        try:
            reading = await self._service.current_position()
        except (LocationPermissionError, LocationUnavailableError):
            raise
        except Exception as exc:
            raise LocationUnavailableError(f"Could not get current position: {exc}") from exc

        fix = await self._emit(reading, FixSource.ONE_SHOT)
        if self._stopped:
            return fix

        handle = await self._service.watch_position(
            self._threshold.min_distance_m,
            self._threshold.min_interval_seconds,
            self._on_reading,
        )
        if self._stopped:
            # stop() ran while the watch was being opened.
            handle.remove()
            return fix
        self._handle = handle
        self._started = True
        logger.info("Location tracking started for driver %s", self.driver_id)
        return fix

    async def _on_reading(self, reading: PositionReading) -> None:
        if self._stopped:
            return
        if (
            self._max_accuracy_m is not None
            and reading.accuracy_m is not None
            and reading.accuracy_m > self._max_accuracy_m
        ):
            logger.debug("Skipping reading with accuracy %.0fm", reading.accuracy_m)
            return
        if not self._threshold.should_emit(self._last_fix, reading):
            return
        await self._emit(reading, FixSource.WATCH)

    async def _emit(self, reading: PositionReading, source: FixSource) -> DriverFix:
        fix = DriverFix(
            driver_id=self.driver_id,
            coordinate=reading.coordinate,
            captured_at=reading.captured_at,
            source=source,
            accuracy_m=reading.accuracy_m,
        )
        if not fix.is_newer_than(self._last_fix):
            # A late one-shot fix never replaces a newer watch fix.
            return self._last_fix or fix
        self._last_fix = fix

        if self._online and self._store is not None:
            await self._replicate(fix)

        for listener in list(self._listeners):
            try:
                result = listener(fix)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Fix listener failed for driver %s", self.driver_id)
        return fix

    async def _replicate(self, fix: DriverFix) -> None:
        """Write `fix` to the shared store; a store outage is reported, never raised."""
        try:
            await self._store.write_driver_fix(fix)
        except StoreUnavailableError as exc:
            self._last_store_error = exc
            logger.warning("Could not replicate fix for driver %s: %s", self.driver_id, exc)
            if self._on_store_error is not None:
                self._on_store_error(exc)
        else:
            self._last_store_error = None

    async def stop(self) -> None:
        """Release the watch exactly once; later calls are no-ops."""
        if self._stopped:
            return
        self._stopped = True
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.remove()
        logger.info("Location tracking stopped for driver %s", self.driver_id)
