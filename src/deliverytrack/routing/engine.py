"""
Route engine: order stage -> active leg -> route state.

The leg table is the single mapping from the canonical `OrderStage` to route endpoints:

| stage                   | leg                     | endpoints               |
|-------------------------|-------------------------|-------------------------|
| ready, out_for_delivery | driver_to_restaurant    | (driver, restaurant)    |
| picked_up               | restaurant_to_customer  | (restaurant, customer)  |
| anything else           | none                    | -                       |

`compute()` is pure apart from the provider call. `refresh()` adds a request sequence
number so a slow provider response never overwrites a newer result.
"""

from __future__ import annotations

import logging

from deliverytrack.config.settings import Settings
from deliverytrack.core.geo import distance_km
from deliverytrack.domain.models import ActiveLeg, Coordinate, OrderRouteState, OrderStage
from deliverytrack.routing.provider import RouteProvider

logger = logging.getLogger(__name__)

_LEG_BY_STAGE: dict[OrderStage, ActiveLeg] = {
    OrderStage.READY: ActiveLeg.DRIVER_TO_RESTAURANT,
    OrderStage.OUT_FOR_DELIVERY: ActiveLeg.DRIVER_TO_RESTAURANT,
    OrderStage.PICKED_UP: ActiveLeg.RESTAURANT_TO_CUSTOMER,
}


def active_leg_for(stage: OrderStage | str) -> ActiveLeg:
    return _LEG_BY_STAGE.get(OrderStage.parse(stage), ActiveLeg.NONE)


def leg_endpoints(
    leg: ActiveLeg,
    *,
    driver: Coordinate | None,
    restaurant: Coordinate | None,
    customer: Coordinate | None,
) -> tuple[Coordinate | None, Coordinate | None]:
    if leg is ActiveLeg.DRIVER_TO_RESTAURANT:
        return driver, restaurant
    if leg is ActiveLeg.RESTAURANT_TO_CUSTOMER:
        return restaurant, customer
    return None, None


class RouteEngine:
    """Selects the active leg, asks the provider for a route and falls back to a straight line."""

    def __init__(
        self,
        provider: RouteProvider,
        *,
        average_speed_kmh: float = 30.0,
        profile: str = "driving-car",
    ):
        if average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be > 0")
        self._provider = provider
        self._average_speed_kmh = float(average_speed_kmh)
        self._profile = profile
        self._issued_seq = 0
        self._applied_seq = 0
        self._state: OrderRouteState | None = None
        self._closed = False

    @classmethod
    def from_settings(cls, provider: RouteProvider, settings: Settings) -> RouteEngine:
        return cls(
            provider,
            average_speed_kmh=settings.routing.average_speed_kmh,
            profile=settings.routing.profile,
        )

    @property
    def state(self) -> OrderRouteState | None:
        """Latest applied route state (None before the first refresh)."""
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def fallback_eta_seconds(self, start: Coordinate, end: Coordinate) -> float:
        return distance_km(start, end) / self._average_speed_kmh * 3600

    async def compute(
        self,
        stage: OrderStage | str,
        *,
        driver: Coordinate | None = None,
        restaurant: Coordinate | None = None,
        customer: Coordinate | None = None,
    ) -> OrderRouteState:
        stage = OrderStage.parse(stage)
        leg = active_leg_for(stage)
        if leg is ActiveLeg.NONE:
            return OrderRouteState(stage=stage, active_leg=leg)

        start, end = leg_endpoints(leg, driver=driver, restaurant=restaurant, customer=customer)
        if start is None or end is None:
            return OrderRouteState(stage=stage, active_leg=leg, origin=start, destination=end)

        result = await self._provider.route(start, end, self._profile)
        if result is not None:
            return OrderRouteState(
                stage=stage,
                active_leg=leg,
                origin=start,
                destination=end,
                route_polyline=list(result.polyline),
                eta_seconds=result.duration_seconds,
                distance_km=result.distance_km if result.distance_km is not None else distance_km(start, end),
                is_fallback_straight_line=False,
            )

        logger.info("Using straight-line fallback for %s", leg.value)
        return OrderRouteState(
            stage=stage,
            active_leg=leg,
            origin=start,
            destination=end,
            route_polyline=[start, end],
            eta_seconds=self.fallback_eta_seconds(start, end),
            distance_km=distance_km(start, end),
            is_fallback_straight_line=True,
        )

    async def refresh(
        self,
        stage: OrderStage | str,
        *,
        driver: Coordinate | None = None,
        restaurant: Coordinate | None = None,
        customer: Coordinate | None = None,
    ) -> OrderRouteState | None:
        """Compute and apply a new state unless a newer request already landed.

        Returns the state that is current after this call.
        """
        if self._closed:
            return self._state
        self._issued_seq += 1
        seq = self._issued_seq

        computed = await self.compute(stage, driver=driver, restaurant=restaurant, customer=customer)

        if self._closed:
            return self._state
        if seq <= self._applied_seq:
            logger.debug("Discarding stale route result seq=%d (applied=%d)", seq, self._applied_seq)
            return self._state
        self._applied_seq = seq
        self._state = computed.model_copy(update={"sequence": seq})
        return self._state

    def close(self) -> None:
        """Ignore every result that completes from now on."""
        self._closed = True
