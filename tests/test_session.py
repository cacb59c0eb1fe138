import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from deliverytrack.domain.models import ActiveLeg, Coordinate, DriverFix, FixSource, Order, OrderStage
from deliverytrack.routing.address import AddressResolver
from deliverytrack.routing.engine import RouteEngine
from deliverytrack.routing.provider import RouteProvider
from deliverytrack.routing.viewport import ViewportFitter
from deliverytrack.tracking.channel import LiveLocationChannel
from deliverytrack.tracking.location import LocationPermissionError, LocationTracker, PositionReading
from deliverytrack.tracking.session import TrackingSession, targets_for_order
from deliverytrack.tracking.store import InMemoryFixStore, order_topic

T0 = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
DRIVER = Coordinate(latitude=25.15, longitude=55.25)
RESTAURANT = Coordinate(latitude=25.2, longitude=55.3)
CUSTOMER = Coordinate(latitude=25.25, longitude=55.35)


class _NoneRouter:
    async def calculate_route(self, start, end, profile):
        return None


class _Handle:
    def __init__(self):
        self.removed = 0

    def remove(self):
        self.removed += 1


class _Device:
    def __init__(self, granted: bool = True):
        self.granted = granted
        self.handle = _Handle()

    async def request_permission(self):
        return self.granted

    async def current_position(self):
        return PositionReading(coordinate=DRIVER, captured_at=T0)

    async def watch_position(self, distance_threshold_m, time_threshold_seconds, callback):
        return self.handle


def _order(status: str = "ready") -> Order:
    return Order.model_validate(
        {
            "id": "order-1",
            "status": status,
            "driver_id": "driver-1",
            "restaurant_latitude": RESTAURANT.latitude,
            "restaurant_longitude": RESTAURANT.longitude,
            "restaurant_address": "Al Wasl Rd",
            "delivery_address": '{"latitude": 25.25, "longitude": 55.35, "city": "Dubai", "country": "UAE"}',
        }
    )


def _fix(seconds: float, coordinate: Coordinate = DRIVER) -> DriverFix:
    return DriverFix(driver_id="driver-1", coordinate=coordinate, captured_at=T0 + timedelta(seconds=seconds))


def _session(order: Order, **kwargs) -> TrackingSession:
    return TrackingSession(
        order,
        resolver=AddressResolver(None),
        engine=RouteEngine(RouteProvider(_NoneRouter())),
        fitter=ViewportFitter(min_delta=0.01, default_center=RESTAURANT),
        **kwargs,
    )


def test_targets_for_order():
    restaurant, customer = targets_for_order(_order())

    assert restaurant.raw.kind == "structured"
    assert customer.raw.kind == "json"


def test_session_routes_from_stored_fix_and_follows_stage_changes():
    store = InMemoryFixStore()
    updates = []

    async def run():
        await store.write_driver_fix(_fix(1))
        session = _session(_order("ready"), store=store, on_update=lambda s, r: updates.append((s, r)))
        async with session:
            first = session.route_state
            first_region = session.viewport
            second = await session.update_stage("picked_up")
            second_region = session.viewport
        return session, first, first_region, second, second_region

    session, first, first_region, second, second_region = asyncio.run(run())

    assert first.active_leg is ActiveLeg.DRIVER_TO_RESTAURANT
    assert first.route_polyline == [DRIVER, RESTAURANT]
    assert first.is_fallback_straight_line
    assert first_region.contains(DRIVER) and first_region.contains(RESTAURANT)

    assert second.active_leg is ActiveLeg.RESTAURANT_TO_CUSTOMER
    assert second.route_polyline == [RESTAURANT, CUSTOMER]
    assert second_region.contains(CUSTOMER)
    assert session.stage is OrderStage.PICKED_UP
    assert session.customer.formatted_address == "Dubai, UAE"

    assert len(updates) == 2
    assert session.closed


def test_session_follows_live_channel():
    store = InMemoryFixStore()
    store.assign_order("driver-1", "order-1")
    updates = []

    async def run():
        channel = LiveLocationChannel(store, order_topic("order-1"), debounce_seconds=0)
        await channel.start()
        session = _session(
            _order("ready"), store=store, channel=channel, owns_channel=True, on_update=lambda s, r: updates.append(s)
        )
        await session.start()
        moved = Coordinate(latitude=25.17, longitude=55.27)
        await store.write_driver_fix(_fix(5, moved))
        for _ in range(100):
            if len(updates) >= 2:
                break
            await asyncio.sleep(0.01)
        await session.close()
        return session, channel, moved

    session, channel, moved = asyncio.run(run())

    assert updates[0].route_polyline == []
    assert updates[-1].route_polyline == [moved, RESTAURANT]
    assert session.driver_fix.source is FixSource.REMOTE
    assert channel.closed


def test_older_fixes_never_replace_newer_ones():
    async def run():
        session = _session(_order("ready"))
        await session.start()
        adopted_new = await session.on_driver_fix(_fix(10))
        adopted_old = session.offer_fix(_fix(5, RESTAURANT))
        await session.close()
        return session, adopted_new, adopted_old

    session, adopted_new, adopted_old = asyncio.run(run())

    assert adopted_new.route_polyline == [DRIVER, RESTAURANT]
    assert adopted_old is False
    assert session.driver_fix.captured_at == T0 + timedelta(seconds=10)


def test_session_with_local_tracker_replicates_and_stops_it():
    store = InMemoryFixStore()
    device = _Device()

    async def run():
        tracker = LocationTracker("driver-1", device, store)
        session = _session(_order("out_for_delivery"), tracker=tracker, store=store)
        state = await session.start()
        replicated = await store.read_driver_fix("driver-1")
        await session.close()
        await session.close()
        return state, replicated, tracker

    state, replicated, tracker = asyncio.run(run())

    assert state.route_polyline == [DRIVER, RESTAURANT]
    assert replicated is not None and replicated.source is FixSource.ONE_SHOT
    assert not tracker.running
    assert device.handle.removed == 1


def test_permission_denied_closes_session():
    async def run():
        tracker = LocationTracker("driver-1", _Device(granted=False))
        session = _session(_order("ready"), tracker=tracker)
        with pytest.raises(LocationPermissionError):
            await session.start()
        return session

    session = asyncio.run(run())
    assert session.closed


def test_update_order_retargets_address_and_driver():
    store = InMemoryFixStore()
    elsewhere = Coordinate(latitude=25.3, longitude=55.4)
    second_driver = Coordinate(latitude=25.1, longitude=55.2)

    async def run():
        await store.write_driver_fix(_fix(30))
        # The new driver's fix is older than the old driver's; it must still be adopted.
        await store.write_driver_fix(
            DriverFix(driver_id="driver-2", coordinate=second_driver, captured_at=T0 + timedelta(seconds=1))
        )
        session = _session(_order("picked_up"), store=store)
        async with session:
            changed = _order("picked_up").model_copy(
                update={"delivery_address": {"lat": 25.3, "lng": 55.4, "city": "Sharjah"}, "driver_id": "driver-2"}
            )
            state = await session.update_order(changed)
            return session, state

    session, state = asyncio.run(run())

    assert state.route_polyline == [RESTAURANT, elsewhere]
    assert session.customer.formatted_address == "Sharjah"
    assert session.driver_fix.driver_id == "driver-2"
    assert session.driver_fix.coordinate == second_driver
    assert session.viewport.contains(elsewhere)
