"""
OpenRouteService client (geocoding + directions).

This module is responsible only for:
- building ORS requests (lon,lat ordering, profile URLs, API-key auth),
- rate limiting outbound calls against the account quota,
- parsing ORS GeoJSON responses into `Coordinate` / `RouteResult`.

It raises on transport/HTTP errors and malformed payloads. Turning those into
"no result" is the job of the callers (`deliverytrack.routing.provider`,
`deliverytrack.routing.address`).
"""

from __future__ import annotations

import logging
from typing import Any

from deliverytrack.config.settings import Settings
from deliverytrack.core.http import get_json, post_json
from deliverytrack.core.rate_limit import TokenBucketRateLimiter
from deliverytrack.domain.models import Coordinate, RouteResult

logger = logging.getLogger(__name__)


class OrsError(RuntimeError):
    """ORS misconfiguration or an error object inside a 2xx response."""


def _coordinate_from_lon_lat(pair: Any) -> Coordinate:
    if not isinstance(pair, (list, tuple)) or len(pair) < 2:
        raise ValueError(f"Expected [lon, lat] pair, got {pair!r}")
    return Coordinate(latitude=float(pair[1]), longitude=float(pair[0]))


def parse_directions_geojson(payload: Any) -> RouteResult | None:
    """Parse a `/v2/directions/{profile}/geojson` response.

    Returns None when the response holds no usable route (no features, fewer than two
    polyline points). Raises ValueError on structurally invalid payloads.
    """
    if not isinstance(payload, dict):
        raise ValueError("Directions response is not a JSON object")
    if payload.get("error"):
        raise OrsError(f"ORS directions error: {payload['error']}")

    features = payload.get("features") or []
    if not features:
        return None

    feature = features[0]
    geometry = feature.get("geometry") or {}
    coords = geometry.get("coordinates") or []
    polyline = [_coordinate_from_lon_lat(c) for c in coords]
    if len(polyline) < 2:
        return None

    summary = (feature.get("properties") or {}).get("summary") or {}
    # ORS omits distance/duration for zero-length routes.
    duration = float(summary.get("duration", 0.0))
    distance = summary.get("distance")
    return RouteResult(
        polyline=polyline,
        duration_seconds=duration,
        distance_km=float(distance) if distance is not None else None,
    )


def parse_geocode_geojson(payload: Any) -> Coordinate | None:
    """Parse a `/geocode/search` response; the first feature wins."""
    if not isinstance(payload, dict):
        raise ValueError("Geocode response is not a JSON object")
    features = payload.get("features") or []
    if not features:
        return None
    geometry = features[0].get("geometry") or {}
    return _coordinate_from_lon_lat(geometry.get("coordinates"))


class OrsClient:
    """OpenRouteService API client. Implements both the Geocoder and Router interfaces."""

    def __init__(self, settings: Settings, *, rate_limiter: TokenBucketRateLimiter | None = None):
        self._settings = settings
        self._rate_limiter = rate_limiter or TokenBucketRateLimiter(
            max_per_minute=settings.ors.max_requests_per_minute
        )

    def _require_api_key(self) -> str:
        api_key = self._settings.ors.api_key
        if not api_key:
            raise OrsError("ORS API key is not configured. Set ORS_API_KEY.")
        return api_key

    def _url(self, path: str) -> str:
        return self._settings.ors.base_url.rstrip("/") + path

    async def geocode_address(self, text: str) -> Coordinate | None:
        """Geocode freeform text to a coordinate (None when ORS finds nothing)."""
        api_key = self._require_api_key()
        params: dict[str, Any] = {"api_key": api_key, "text": text, "size": 1}
        if self._settings.ors.geocode_boundary_country:
            params["boundary.country"] = self._settings.ors.geocode_boundary_country

        await self._rate_limiter.acquire()
        logger.debug("Geocoding %r", text)
        payload = await get_json(
            self._url("/geocode/search"),
            params=params,
            timeout_seconds=self._settings.app.http_timeout_seconds,
        )
        return parse_geocode_geojson(payload)

    async def calculate_route(
        self, start: Coordinate, end: Coordinate, profile: str = "driving-car"
    ) -> RouteResult | None:
        """Request a driving (or other profile) route between two points."""
        api_key = self._require_api_key()
        body = {
            "coordinates": [start.as_lon_lat(), end.as_lon_lat()],
            "instructions": False,
            "preference": "recommended",
            "units": "km",
        }

        await self._rate_limiter.acquire()
        logger.debug(
            "Routing %s from %.5f,%.5f to %.5f,%.5f",
            profile,
            start.latitude,
            start.longitude,
            end.latitude,
            end.longitude,
        )
        payload = await post_json(
            self._url(f"/v2/directions/{profile}/geojson"),
            payload=body,
            headers={"Authorization": api_key},
            timeout_seconds=self._settings.app.http_timeout_seconds,
        )
        return parse_directions_geojson(payload)
