"""
API routes.

Endpoints:
- GET  `/api/health`: liveness + whether a routing provider is configured.
- PUT  `/api/orders/{order_id}`: upsert an order snapshot (pushed by the order service).
- GET  `/api/orders/{order_id}/route`: resolved targets, route state and viewport.
- GET  `/api/orders/{order_id}/history`: recent driver fixes recorded for the order.
- POST `/api/drivers/{driver_id}/fixes`: persist a fix reported by a driver device.
- GET  `/api/drivers/{driver_id}/fix`: latest replicated fix.
- POST `/api/addresses/resolve`: resolve an arbitrary address payload.
- WS   `/ws/orders/{order_id}/location`: live route/viewport updates for an order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, field_validator

from deliverytrack.config.settings import Settings, get_settings
from deliverytrack.core.cache import FileCache, record_cache_stats
from deliverytrack.core.env import resolve_project_path
from deliverytrack.core.time import parse_timestamp, utcnow
from deliverytrack.domain.models import (
    ActiveLeg,
    AddressResolution,
    Coordinate,
    DriverFix,
    FixSource,
    Order,
    OrderRouteState,
    ViewportRegion,
)
from deliverytrack.domain.orders import InMemoryOrderSource
from deliverytrack.ingestion.ors_client import OrsClient
from deliverytrack.routing.address import AddressResolver, Geocoder, parse_raw_address
from deliverytrack.routing.engine import RouteEngine, active_leg_for
from deliverytrack.routing.provider import RouteProvider, Router
from deliverytrack.routing.viewport import ViewportFitter
from deliverytrack.tracking.channel import ChannelRegistry
from deliverytrack.tracking.session import TrackingSession
from deliverytrack.tracking.store import InMemoryFixStore, StoreUnavailableError, order_topic

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class Services:
    """Process-wide collaborators shared by all requests."""

    settings: Settings
    store: InMemoryFixStore
    orders: InMemoryOrderSource
    resolver: AddressResolver
    provider: RouteProvider
    channels: ChannelRegistry
    sessions: dict[str, set[TrackingSession]] = field(default_factory=dict)

    def new_session(self, order: Order, **kwargs: Any) -> TrackingSession:
        return TrackingSession(
            order,
            resolver=self.resolver,
            engine=RouteEngine.from_settings(self.provider, self.settings),
            fitter=ViewportFitter.from_settings(self.settings),
            store=self.store,
            **kwargs,
        )

    async def shutdown(self) -> None:
        for group in list(self.sessions.values()):
            for session in list(group):
                await session.close()
        self.sessions.clear()
        await self.channels.close_all()


def build_services(
    settings: Settings,
    *,
    geocoder: Geocoder | None,
    route_client: Router | None,
    cache: FileCache | None = None,
) -> Services:
    store = InMemoryFixStore(history_limit=settings.channel.history_limit)
    return Services(
        settings=settings,
        store=store,
        orders=InMemoryOrderSource(),
        resolver=AddressResolver.from_settings(geocoder, settings, cache=cache),
        provider=RouteProvider.from_settings(route_client, settings),
        channels=ChannelRegistry(store, settings),
    )


@lru_cache
def _services() -> Services:
    settings = get_settings()
    cache = FileCache(
        resolve_project_path(settings.cache.dir),
        enabled=settings.cache.enabled,
        default_ttl_seconds=settings.cache.default_ttl_seconds,
    )
    ors = OrsClient(settings) if settings.ors.api_key else None
    if ors is None:
        logger.warning("ORS_API_KEY not set; routes use the straight-line estimate only")
    return build_services(settings, geocoder=ors, route_client=ors, cache=cache)


class OrderPayload(BaseModel):
    status: str
    driver_id: str | None = None
    restaurant_latitude: float | str | None = None
    restaurant_longitude: float | str | None = None
    restaurant_address: str | None = None
    delivery_address: Any = None


class FixPayload(BaseModel):
    latitude: float
    longitude: float
    captured_at: datetime | None = None
    accuracy_m: float | None = Field(default=None, ge=0)
    source: FixSource = FixSource.WATCH

    @field_validator("captured_at", mode="before")
    @classmethod
    def _parse_captured_at(cls, value: Any) -> Any:
        # Browser clients send `Date.now()` milliseconds; others send ISO text.
        if value is None or isinstance(value, bool):
            return value
        return parse_timestamp(value)


class AddressPayload(BaseModel):
    address: Any = None
    latitude: float | str | None = None
    longitude: float | str | None = None


class RouteResponse(BaseModel):
    order_id: str
    route: OrderRouteState
    viewport: ViewportRegion
    restaurant: AddressResolution
    customer: AddressResolution
    driver_fix: DriverFix | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "VALIDATION_ERROR", "message": str(exc)})


def _store_unavailable(exc: Exception) -> HTTPException:
    return HTTPException(status_code=503, detail={"code": "STORE_UNAVAILABLE", "message": str(exc)})


async def _require_order(services: Services, order_id: str) -> Order:
    order = await services.orders.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": f"Unknown order {order_id}"})
    return order


@router.get("/api/health")
def get_health() -> dict:
    services = _services()
    return {"status": "ok", "routing_provider": services.provider.enabled}


@router.put("/api/orders/{order_id}")
async def put_order(order_id: str, payload: OrderPayload) -> dict:
    """Upsert an order snapshot and push changes to live sessions."""
    services = _services()
    try:
        order = Order.model_validate({"id": order_id, **payload.model_dump()})
    except ValueError as e:
        raise _bad_request(e) from e

    previous = services.orders.put(order)
    _assign_driver(services.store, order, previous)

    if previous is not None and previous != order:
        for session in list(services.sessions.get(order_id, ())):
            await session.update_order(order)
    return order.model_dump(mode="json")


def _assign_driver(store: InMemoryFixStore, order: Order, previous: Order | None) -> None:
    """Route driver fixes to `order:<id>` only while the order has an active leg."""
    if previous is not None and previous.driver_id and previous.driver_id != order.driver_id:
        if store.active_order(previous.driver_id) == order.id:
            store.assign_order(previous.driver_id, None)
    if not order.driver_id:
        return
    if active_leg_for(order.stage) is not ActiveLeg.NONE:
        store.assign_order(order.driver_id, order.id)
    elif store.active_order(order.driver_id) == order.id:
        store.assign_order(order.driver_id, None)


@router.get("/api/orders/{order_id}/route", response_model=RouteResponse)
async def get_order_route(order_id: str) -> RouteResponse:
    """One-off route evaluation from the latest replicated driver fix."""
    services = _services()
    order = await _require_order(services, order_id)
    session = services.new_session(order)
    try:
        with record_cache_stats() as stats:
            state = await session.start()
    finally:
        await session.close()
    if state is None or session.viewport is None:
        raise HTTPException(status_code=500, detail={"code": "INTERNAL_ERROR", "message": "route not computed"})
    return RouteResponse(
        order_id=order_id,
        route=state,
        viewport=session.viewport,
        restaurant=session.restaurant.resolution or AddressResolution(),
        customer=session.customer.resolution or AddressResolution(),
        driver_fix=session.driver_fix,
        meta={"cache": stats.as_dict(), "routing_provider": services.provider.enabled},
    )


@router.get("/api/orders/{order_id}/history")
async def get_order_history(order_id: str, limit: int = 50) -> dict:
    services = _services()
    try:
        fixes = await services.store.order_history(order_id, limit=max(1, limit))
    except StoreUnavailableError as e:
        raise _store_unavailable(e) from e
    return {"order_id": order_id, "fixes": [f.model_dump(mode="json") for f in fixes]}


@router.post("/api/drivers/{driver_id}/fixes")
async def post_driver_fix(driver_id: str, payload: FixPayload) -> dict:
    services = _services()
    try:
        fix = DriverFix(
            driver_id=driver_id,
            coordinate=Coordinate(latitude=payload.latitude, longitude=payload.longitude),
            captured_at=payload.captured_at or utcnow(),
            source=payload.source,
            accuracy_m=payload.accuracy_m,
        )
    except ValueError as e:
        raise _bad_request(e) from e
    try:
        accepted = await services.store.write_driver_fix(fix)
    except StoreUnavailableError as e:
        raise _store_unavailable(e) from e
    return {"accepted": accepted, "fix": fix.model_dump(mode="json")}


@router.get("/api/drivers/{driver_id}/fix")
async def get_driver_fix(driver_id: str) -> dict:
    services = _services()
    try:
        fix = await services.store.read_driver_fix(driver_id)
    except StoreUnavailableError as e:
        raise _store_unavailable(e) from e
    if fix is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": f"No fix for driver {driver_id}"})
    return fix.model_dump(mode="json")


@router.post("/api/addresses/resolve", response_model=AddressResolution)
async def post_resolve_address(payload: AddressPayload) -> AddressResolution:
    services = _services()
    raw = parse_raw_address(payload.address, latitude=payload.latitude, longitude=payload.longitude)
    return await services.resolver.resolve_raw(raw)


@router.websocket("/ws/orders/{order_id}/location")
async def order_location_ws(websocket: WebSocket, order_id: str) -> None:
    """Stream route/viewport updates for an order until the client disconnects."""
    services = _services()
    await websocket.accept()
    order = await services.orders.get_order(order_id)
    if order is None:
        await websocket.close(code=4404)
        return

    updates: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    session: TrackingSession | None = None

    def on_update(state: OrderRouteState, region: ViewportRegion) -> None:
        fix = session.driver_fix if session is not None else None
        updates.put_nowait(
            {
                "type": "route",
                "route": state.model_dump(mode="json"),
                "viewport": region.model_dump(mode="json"),
                "driver_fix": fix.model_dump(mode="json") if fix is not None else None,
            }
        )

    topic = order_topic(order_id)
    channel = await services.channels.acquire(topic)
    session = services.new_session(order, channel=channel, on_update=on_update)
    services.sessions.setdefault(order_id, set()).add(session)

    async def send_updates() -> None:
        while True:
            await websocket.send_json(await updates.get())

    async def wait_disconnect() -> None:
        while True:
            await websocket.receive_text()

    sender = asyncio.create_task(send_updates())
    receiver = asyncio.create_task(wait_disconnect())
    try:
        await session.start()
        await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    except WebSocketDisconnect:
        pass
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
        await session.close()
        await services.channels.release(topic)
        group = services.sessions.get(order_id)
        if group is not None:
            group.discard(session)
            if not group:
                services.sessions.pop(order_id, None)
