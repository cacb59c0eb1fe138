"""
DeliveryTrack CLI entrypoint.

This CLI is intended for quick local checks of address resolution and route evaluation
without running the API. `--offline` skips OpenRouteService entirely (straight-line mode).
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from deliverytrack.config.settings import Settings, get_settings
from deliverytrack.core.cache import FileCache
from deliverytrack.core.env import resolve_project_path
from deliverytrack.core.logging import configure_logging
from deliverytrack.domain.models import Coordinate, Order, OrderStage
from deliverytrack.ingestion.ors_client import OrsClient
from deliverytrack.routing.address import AddressResolver, parse_raw_address
from deliverytrack.routing.engine import RouteEngine
from deliverytrack.routing.provider import RouteProvider
from deliverytrack.routing.viewport import ViewportFitter
from deliverytrack.tracking.session import targets_for_order


def _parse_lat_lon(value: str) -> Coordinate:
    """Parse `LAT,LON` into a coordinate."""
    if "," not in value:
        raise argparse.ArgumentTypeError(f"Invalid coordinate '{value}', expected LAT,LON")
    lat, lon = value.split(",", 1)
    try:
        return Coordinate(latitude=float(lat), longitude=float(lon))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid coordinate '{value}': {e}") from e


def _parse_stage(value: str) -> OrderStage:
    try:
        return OrderStage.parse(value)
    except ValueError as e:
        choices = ", ".join(s.value for s in OrderStage)
        raise argparse.ArgumentTypeError(f"{e} (expected one of: {choices})") from e


def _ors_client(settings: Settings, offline: bool) -> OrsClient | None:
    if offline or not settings.ors.api_key:
        return None
    return OrsClient(settings)


def _build_cache(settings: Settings) -> FileCache:
    return FileCache(
        resolve_project_path(settings.cache.dir),
        enabled=settings.cache.enabled,
        default_ttl_seconds=settings.cache.default_ttl_seconds,
    )


async def _route(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    ors = _ors_client(settings, args.offline)
    resolver = AddressResolver.from_settings(ors, settings, cache=_build_cache(settings))
    engine = RouteEngine.from_settings(RouteProvider.from_settings(ors, settings), settings)
    fitter = ViewportFitter.from_settings(settings)

    order = Order(
        id="cli",
        stage=args.status,
        restaurant_latitude=args.restaurant.latitude if args.restaurant else None,
        restaurant_longitude=args.restaurant.longitude if args.restaurant else None,
        restaurant_address=args.restaurant_address,
        delivery_address=args.customer_address,
    )
    restaurant, customer = targets_for_order(order)
    await asyncio.gather(resolver.resolve(restaurant), resolver.resolve(customer))

    state = await engine.compute(
        order.stage,
        driver=args.driver,
        restaurant=restaurant.coordinate,
        customer=customer.coordinate,
    )
    region = fitter.fit(
        [args.driver, restaurant.coordinate, customer.coordinate], fallback=args.driver
    )
    return {
        "route": state.model_dump(mode="json"),
        "viewport": region.model_dump(mode="json"),
        "restaurant": restaurant.resolution.model_dump(mode="json") if restaurant.resolution else None,
        "customer": customer.resolution.model_dump(mode="json") if customer.resolution else None,
    }


def _cmd_route(args: argparse.Namespace) -> int:
    """Handle the `route` subcommand."""
    settings = get_settings()
    result = asyncio.run(_route(args, settings))

    if args.json:
        print(json.dumps(result, ensure_ascii=False, indent=2))
        return 0

    route = result["route"]
    print(f"Stage: {route['stage']}  leg: {route['active_leg']}")
    print(f"ETA: {route['eta_text']}  distance: {route['distance_km']} km")
    if route["is_fallback_straight_line"]:
        print("Route: straight-line estimate (routing provider unavailable)")
    else:
        print(f"Route: {len(route['route_polyline'])} points")
    for name in ("restaurant", "customer"):
        res = result[name]
        if res is not None:
            print(f"{name.capitalize()}: {res['formatted_address']} ({res['source']})")
    if route.get("navigation_url"):
        print(f"Navigate: {route['navigation_url']}")
    return 0


def _cmd_resolve(args: argparse.Namespace) -> int:
    settings = get_settings()
    ors = _ors_client(settings, args.offline)
    resolver = AddressResolver.from_settings(ors, settings, cache=_build_cache(settings))

    value: Any = args.address
    if value.lstrip().startswith("{"):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            pass
    resolution = asyncio.run(resolver.resolve_raw(parse_raw_address(value)))

    if args.json:
        print(json.dumps(resolution.model_dump(mode="json"), ensure_ascii=False, indent=2))
        return 0
    coord = resolution.coordinate
    where = f"{coord.latitude:.6f},{coord.longitude:.6f}" if coord else "unresolved"
    print(f"{resolution.formatted_address}  [{resolution.source}] {where}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the DeliveryTrack CLI."""
    parser = argparse.ArgumentParser(prog="deliverytrack")
    parser.add_argument("--log-level", default=None, help="Override DELIVERYTRACK_LOG_LEVEL (e.g. DEBUG)")
    sub = parser.add_subparsers(dest="command", required=True)

    rt = sub.add_parser("route", help="Evaluate the active leg, ETA and viewport for an order stage.")
    rt.add_argument("--status", required=True, type=_parse_stage, help="Order stage (e.g. ready, picked_up)")
    rt.add_argument("--driver", type=_parse_lat_lon, default=None, help="Driver position LAT,LON")
    rt.add_argument("--restaurant", type=_parse_lat_lon, default=None, help="Restaurant position LAT,LON")
    rt.add_argument("--restaurant-address", default=None)
    rt.add_argument("--customer-address", default=None, help="Free text or a JSON object")
    rt.add_argument("--offline", action="store_true", help="Do not call OpenRouteService")
    rt.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    rt.set_defaults(func=_cmd_route)

    rs = sub.add_parser("resolve", help="Resolve an address to a coordinate.")
    rs.add_argument("address", help="Free text, 'lat, lng' or a JSON object")
    rs.add_argument("--offline", action="store_true", help="Do not call OpenRouteService")
    rs.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    rs.set_defaults(func=_cmd_resolve)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m deliverytrack.cli`."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    func: Any = getattr(args, "func")
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
