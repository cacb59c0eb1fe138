from __future__ import annotations

from collections.abc import Sequence
from math import asin, cos, radians, sin, sqrt

from deliverytrack.domain.models import Coordinate, ViewportRegion

"""
Geospatial helpers.

We keep a tiny geometry layer here so routing and tracking can do distance, ETA and
viewport calculations without pulling in heavier GIS dependencies.
"""

EARTH_RADIUS_KM = 6371.0


def _haversine_km(a: Coordinate, b: Coordinate) -> float:
    lat1 = radians(a.latitude)
    lon1 = radians(a.longitude)
    lat2 = radians(b.latitude)
    lon2 = radians(b.longitude)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(min(1.0, sqrt(h)))


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters (unrounded; used for movement thresholds)."""
    return _haversine_km(a, b) * 1000.0


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in kilometers, rounded to one decimal place."""
    return round(_haversine_km(a, b), 1)


def estimated_travel_minutes(distance: float, average_speed_kmh: float = 30) -> int:
    """Whole minutes needed to cover `distance` km at `average_speed_kmh`."""
    if average_speed_kmh <= 0:
        raise ValueError("average_speed_kmh must be > 0")
    return int(round(distance / average_speed_kmh * 60))


def midpoint(a: Coordinate, b: Coordinate) -> Coordinate:
    return Coordinate(
        latitude=(a.latitude + b.latitude) / 2,
        longitude=(a.longitude + b.longitude) / 2,
    )


def bounding_region(
    points: Sequence[Coordinate], padding_factor: float = 1.5, min_delta: float = 0.01
) -> ViewportRegion:
    """Smallest padded region containing every point.

    Each delta is `max(span * padding_factor, min_delta)`, so a single point yields a
    region of exactly `min_delta` centered on it.
    """
    if not points:
        raise ValueError("bounding_region requires at least one point")
    if padding_factor < 1:
        raise ValueError("padding_factor must be >= 1 so every point stays visible")
    if min_delta <= 0:
        raise ValueError("min_delta must be > 0")

    lats = [p.latitude for p in points]
    lons = [p.longitude for p in points]
    min_lat, max_lat = min(lats), max(lats)
    min_lon, max_lon = min(lons), max(lons)

    return ViewportRegion(
        center=midpoint(
            Coordinate(latitude=min_lat, longitude=min_lon),
            Coordinate(latitude=max_lat, longitude=max_lon),
        ),
        latitude_delta=max((max_lat - min_lat) * padding_factor, min_delta),
        longitude_delta=max((max_lon - min_lon) * padding_factor, min_delta),
    )
