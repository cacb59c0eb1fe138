"""
Tracking session: everything one tracking screen (or WebSocket client) owns.

A session ties together, for one order:
- the restaurant/customer targets and their resolution,
- an optional local `LocationTracker` (driver side),
- an optional `LiveLocationChannel` subscription (customer/restaurant side),
- the `RouteEngine` and `ViewportFitter` re-evaluated on every fix or stage change.

Fixes from all sources are reconciled by `captured_at`, so a late one-shot fix or a
replayed store fix never replaces a newer one. `close()` is the only teardown path: it
stops the tracker, unsubscribes, cancels in-flight route/geocode work and makes the engine
ignore results that land afterwards.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Coroutine
from typing import Any, Awaitable, Callable

from deliverytrack.domain.models import (
    ActiveLeg,
    Coordinate,
    DeliveryTarget,
    DriverFix,
    Order,
    OrderRouteState,
    OrderStage,
    TargetKind,
    ViewportRegion,
)
from deliverytrack.routing.address import AddressResolver, build_target
from deliverytrack.routing.engine import RouteEngine
from deliverytrack.routing.viewport import ViewportFitter
from deliverytrack.tracking.channel import LiveLocationChannel, LocationSubscription
from deliverytrack.tracking.location import LocationTracker
from deliverytrack.tracking.store import FixStore, StoreUnavailableError

logger = logging.getLogger(__name__)

UpdateListener = Callable[[OrderRouteState, ViewportRegion], Awaitable[None] | None]


def targets_for_order(order: Order) -> tuple[DeliveryTarget, DeliveryTarget]:
    """Build (restaurant, customer) targets from an order snapshot."""
    restaurant = build_target(
        TargetKind.RESTAURANT,
        order.restaurant_address,
        latitude=order.restaurant_latitude,
        longitude=order.restaurant_longitude,
    )
    customer = build_target(TargetKind.CUSTOMER, order.delivery_address)
    return restaurant, customer


class TrackingSession:
    def __init__(
        self,
        order: Order,
        *,
        resolver: AddressResolver,
        engine: RouteEngine,
        fitter: ViewportFitter,
        tracker: LocationTracker | None = None,
        channel: LiveLocationChannel | None = None,
        store: FixStore | None = None,
        owns_channel: bool = False,
        on_update: UpdateListener | None = None,
    ):
        self.order_id = order.id
        self._stage = order.stage
        self._driver_id = order.driver_id or (tracker.driver_id if tracker is not None else None)
        self.restaurant, self.customer = targets_for_order(order)

        self._resolver = resolver
        self._engine = engine
        self._fitter = fitter
        self._tracker = tracker
        self._channel = channel
        self._store = store
        self._owns_channel = owns_channel
        self._on_update = on_update

        self._driver_fix: DriverFix | None = None
        self._subscription: LocationSubscription | None = None
        self._remove_listener: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._notified_seq = 0
        self._started = False
        self._closed = False

    @property
    def stage(self) -> OrderStage:
        return self._stage

    @property
    def driver_fix(self) -> DriverFix | None:
        return self._driver_fix

    @property
    def route_state(self) -> OrderRouteState | None:
        return self._engine.state

    @property
    def viewport(self) -> ViewportRegion | None:
        return self._fitter.region

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def replication_error(self) -> Exception | None:
        """Last store write failure of the local tracker, if the latest write failed."""
        return self._tracker.last_store_error if self._tracker is not None else None

    async def __aenter__(self) -> TrackingSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> OrderRouteState | None:
        """Resolve targets, acquire the driver position and compute the first route.

        Raises `LocationPermissionError` / `LocationUnavailableError` from the local tracker;
        the session is closed before the error propagates.
        """
        if self._started:
            return self.route_state
        self._started = True
        try:
            await asyncio.gather(
                self._resolver.resolve(self.restaurant),
                self._resolver.resolve(self.customer),
            )
            if self._closed:
                return None

            if self._tracker is not None:
                self._remove_listener = self._tracker.add_listener(self._on_local_fix)
                await self._tracker.start()
            else:
                await self._adopt_stored_fix()

            if self._channel is not None:
                subscription = await self._channel.subscribe(
                    replay=self._tracker is None and self._driver_fix is None
                )
                if self._closed:
                    subscription.unsubscribe()
                    return None
                self._subscription = subscription
                self._spawn(self._consume(subscription))
        except BaseException:
            await self.close()
            raise

        logger.info("Tracking session started for order %s (%s)", self.order_id, self._stage.value)
        return await self.refresh()

    def offer_fix(self, fix: DriverFix) -> bool:
        """Adopt `fix` if it is the most recent one seen. Returns whether it was adopted."""
        if self._closed or not fix.is_newer_than(self._driver_fix):
            return False
        self._driver_fix = fix
        return True

    async def on_driver_fix(self, fix: DriverFix) -> OrderRouteState | None:
        if self.offer_fix(fix):
            return await self.refresh()
        return self.route_state

    async def update_stage(self, stage: OrderStage | str) -> OrderRouteState | None:
        self._stage = OrderStage.parse(stage)
        return await self.refresh()

    async def update_order(self, order: Order) -> OrderRouteState | None:
        """Apply a newer snapshot of the same order.

        Changed addresses are re-resolved. A reassigned driver drops the previous driver's
        fix and starts from the new driver's stored fix (sessions with a local tracker keep
        their own driver).
        """
        if self._closed:
            return self.route_state
        restaurant, customer = targets_for_order(order)
        retargeted = []
        if restaurant.raw != self.restaurant.raw:
            self.restaurant = restaurant
            retargeted.append(restaurant)
        if customer.raw != self.customer.raw:
            self.customer = customer
            retargeted.append(customer)
        if retargeted:
            await asyncio.gather(*(self._resolver.resolve(t) for t in retargeted))

        if self._tracker is None and order.driver_id != self._driver_id:
            logger.info("Order %s reassigned to driver %s", self.order_id, order.driver_id)
            self._driver_id = order.driver_id
            self._driver_fix = None
            await self._adopt_stored_fix()

        self._stage = order.stage
        return await self.refresh()

    async def _adopt_stored_fix(self) -> None:
        if self._store is None or not self._driver_id:
            return
        try:
            latest = await self._store.read_driver_fix(self._driver_id)
        except StoreUnavailableError as exc:
            logger.warning("Order %s: no stored driver fix (%s)", self.order_id, exc)
            return
        if latest is not None:
            self.offer_fix(latest)

    async def refresh(self) -> OrderRouteState | None:
        if self._closed:
            return self.route_state
        driver = self._driver_fix.coordinate if self._driver_fix is not None else None
        state = await self._engine.refresh(
            self._stage,
            driver=driver,
            restaurant=self.restaurant.coordinate,
            customer=self.customer.coordinate,
        )
        if self._closed or state is None:
            return state

        region, changed = self._fitter.update(self._relevant_points(state), fallback=driver)
        if self._on_update is not None and (changed or state.sequence != self._notified_seq):
            self._notified_seq = state.sequence
            result = self._on_update(state, region)
            if inspect.isawaitable(result):
                await result
        return state

    def _relevant_points(self, state: OrderRouteState) -> list[Coordinate | None]:
        driver = self._driver_fix.coordinate if self._driver_fix is not None else None
        if state.active_leg is ActiveLeg.DRIVER_TO_RESTAURANT:
            return [driver, self.restaurant.coordinate]
        return [driver, self.restaurant.coordinate, self.customer.coordinate]

    def _on_local_fix(self, fix: DriverFix) -> None:
        if self.offer_fix(fix):
            self._spawn(self.refresh())

    async def _consume(self, subscription: LocationSubscription) -> None:
        async for fix in subscription:
            await self.on_driver_fix(fix)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._closed:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Tracking task failed for order %s", self.order_id, exc_info=exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine.close()
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._tracker is not None:
            await self._tracker.stop()
        if self._subscription is not None:
            self._subscription.unsubscribe()
        if self._channel is not None and self._owns_channel:
            await self._channel.close()

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Tracking session closed for order %s", self.order_id)
