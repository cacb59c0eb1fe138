import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from deliverytrack.domain.models import Coordinate, FixSource
from deliverytrack.tracking.location import (
    LocationPermissionError,
    LocationTracker,
    LocationUnavailableError,
    MovementThreshold,
    PositionReading,
)
from deliverytrack.tracking.store import InMemoryFixStore

T0 = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
START = Coordinate(latitude=25.2, longitude=55.3)


class _FakeHandle:
    def __init__(self):
        self.removed = 0

    def remove(self):
        self.removed += 1


class FakeLocationService:
    """Device stand-in: `push()` feeds readings into the active watch callback."""

    def __init__(self, first: PositionReading | Exception | None = None, granted: bool = True):
        self.first = first or PositionReading(coordinate=START, captured_at=T0, accuracy_m=5)
        self.granted = granted
        self.callback = None
        self.handle: _FakeHandle | None = None
        self.watch_args = None

    async def request_permission(self) -> bool:
        return self.granted

    async def current_position(self) -> PositionReading:
        if isinstance(self.first, Exception):
            raise self.first
        return self.first

    async def watch_position(self, distance_threshold_m, time_threshold_seconds, callback):
        self.watch_args = (distance_threshold_m, time_threshold_seconds)
        self.callback = callback
        self.handle = _FakeHandle()
        return self.handle

    async def push(self, lat: float, lon: float, seconds: float, accuracy_m: float | None = 5):
        reading = PositionReading(
            coordinate=Coordinate(latitude=lat, longitude=lon),
            captured_at=T0 + timedelta(seconds=seconds),
            accuracy_m=accuracy_m,
        )
        await self.callback(reading)


def _tracker(service, store=None, **kwargs) -> LocationTracker:
    return LocationTracker("driver-1", service, store, min_distance_m=50, min_interval_seconds=30, **kwargs)


def test_movement_threshold_first_reading_always_emits():
    threshold = MovementThreshold(min_distance_m=50, min_interval_seconds=30)
    assert threshold.should_emit(None, PositionReading(coordinate=START, captured_at=T0))


def test_start_emits_one_shot_fix_and_opens_watch():
    service = FakeLocationService()
    tracker = _tracker(service)

    fix = asyncio.run(tracker.start())

    assert fix.source is FixSource.ONE_SHOT
    assert fix.coordinate == START
    assert tracker.last_fix == fix
    assert tracker.running
    assert service.watch_args == (50, 30)


def test_watch_respects_distance_and_time_thresholds():
    service = FakeLocationService()
    tracker = _tracker(service)
    emitted = []
    tracker.add_listener(emitted.append)

    async def run():
        await tracker.start()
        # ~11 m after 10 s: below both thresholds.
        await service.push(25.2001, 55.3, 10)
        assert len(emitted) == 1
        # ~111 m after 15 s: distance threshold crossed.
        await service.push(25.201, 55.3, 15)
        assert len(emitted) == 2
        # Same place 35 s after the last emitted fix: time threshold crossed.
        await service.push(25.201, 55.3, 50)
        assert len(emitted) == 3
        # Neither crossed again.
        await service.push(25.2011, 55.3, 55)

    asyncio.run(run())

    assert [f.source for f in emitted] == [FixSource.ONE_SHOT, FixSource.WATCH, FixSource.WATCH]
    assert tracker.last_fix.captured_at == T0 + timedelta(seconds=50)


def test_stop_twice_is_safe_and_silences_the_watch():
    service = FakeLocationService()
    tracker = _tracker(service)
    emitted = []
    tracker.add_listener(emitted.append)

    async def run():
        await tracker.start()
        await tracker.stop()
        await tracker.stop()
        await service.push(25.3, 55.4, 120)

    asyncio.run(run())

    assert service.handle.removed == 1
    assert len(emitted) == 1
    assert not tracker.running
    with pytest.raises(RuntimeError):
        asyncio.run(tracker.start())


def test_permission_denied_raises_actionable_error():
    tracker = _tracker(FakeLocationService(granted=False))

    with pytest.raises(LocationPermissionError, match="Enable location access"):
        asyncio.run(tracker.start())
    assert tracker.last_fix is None


def test_position_failure_is_wrapped():
    tracker = _tracker(FakeLocationService(first=OSError("GPS off")))

    with pytest.raises(LocationUnavailableError, match="GPS off"):
        asyncio.run(tracker.start())


def test_inaccurate_readings_are_skipped():
    service = FakeLocationService()
    tracker = _tracker(service, max_accuracy_m=50)

    async def run():
        await tracker.start()
        await service.push(25.3, 55.4, 60, accuracy_m=120)

    asyncio.run(run())
    assert tracker.last_fix.coordinate == START


def test_fixes_are_replicated_to_store_while_online():
    store = InMemoryFixStore()
    service = FakeLocationService()
    tracker = _tracker(service, store)

    async def run():
        await tracker.start()
        tracker.set_online(False)
        await service.push(25.21, 55.3, 40)
        return await store.read_driver_fix("driver-1")

    stored = asyncio.run(run())

    assert stored is not None
    assert stored.source is FixSource.ONE_SHOT
    # Local state still advances while offline.
    assert tracker.last_fix.coordinate == Coordinate(latitude=25.21, longitude=55.3)


def test_store_failure_keeps_local_fix_and_reports():
    store = InMemoryFixStore()
    store.disconnect()
    errors = []
    tracker = _tracker(FakeLocationService(), store, on_store_error=errors.append)

    fix = asyncio.run(tracker.start())

    assert tracker.last_fix == fix
    assert tracker.last_store_error is not None
    assert errors == [tracker.last_store_error]


def test_failing_listener_does_not_block_replication_or_watch():
    store = InMemoryFixStore()
    service = FakeLocationService()
    tracker = _tracker(service, store)

    def broken(fix):
        raise RuntimeError("consumer bug")

    tracker.add_listener(broken)

    async def run():
        fix = await tracker.start()
        return fix, await store.read_driver_fix("driver-1")

    fix, stored = asyncio.run(run())

    assert stored == fix
    assert tracker.running
    assert service.handle is not None


def test_fix_is_stored_before_slow_listeners_run():
    store = InMemoryFixStore()
    service = FakeLocationService()
    tracker = _tracker(service, store)
    seen_in_store = []

    async def slow(fix):
        seen_in_store.append(await store.read_driver_fix("driver-1"))
        await asyncio.sleep(0.01)

    tracker.add_listener(slow)
    fix = asyncio.run(tracker.start())

    assert seen_in_store == [fix]
