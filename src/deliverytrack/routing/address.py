"""
Address resolution for delivery targets.

Upstream order data carries addresses in several shapes. `parse_raw_address` turns each
one into a `RawAddress` variant once, at the boundary; `AddressResolver` then resolves a
`DeliveryTarget` to a coordinate plus a display string:

1. structured latitude/longitude columns -> used directly
2. JSON-encoded string -> `latitude/longitude`, then `lat/lng`, then `coordinates.{...}`
3. freeform string -> geocoder, then an embedded `lat:<f>,lng:<f>` pattern
4. nested object -> same extraction as (2)

Resolution never raises. An unresolved target has `coordinate=None` and downstream code
skips the affected leg.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Protocol

from deliverytrack.config.settings import Settings
from deliverytrack.core.cache import FileCache
from deliverytrack.domain.models import (
    ADDRESS_NOT_AVAILABLE,
    AddressResolution,
    Coordinate,
    DeliveryTarget,
    FreeformAddress,
    JsonEncodedAddress,
    NestedAddress,
    StructuredAddress,
    TargetKind,
)

logger = logging.getLogger(__name__)

_LAT_LNG_PATTERN = re.compile(
    r"lat:\s*(-?\d+(?:\.\d+)?)\s*,\s*lng:\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE
)

# Display order; each entry lists accepted aliases.
_ADDRESS_PARTS: tuple[tuple[str, ...], ...] = (
    ("address_line1", "line1"),
    ("address_line2", "line2"),
    ("city",),
    ("state",),
    ("postal_code", "postal"),
    ("country",),
)

AnyRawAddress = StructuredAddress | JsonEncodedAddress | FreeformAddress | NestedAddress


class Geocoder(Protocol):
    async def geocode_address(self, text: str) -> Coordinate | None: ...


def _to_coordinate(lat: Any, lon: Any) -> Coordinate | None:
    if lat is None or lon is None or isinstance(lat, bool) or isinstance(lon, bool):
        return None
    try:
        return Coordinate(latitude=float(lat), longitude=float(lon))
    except (TypeError, ValueError):
        return None


def extract_coordinate(data: Mapping[str, Any]) -> Coordinate | None:
    """Find a coordinate in a decoded address object (first matching key pair wins)."""
    for lat_key, lon_key in (("latitude", "longitude"), ("lat", "lng")):
        found = _to_coordinate(data.get(lat_key), data.get(lon_key))
        if found is not None:
            return found
    nested = data.get("coordinates")
    if isinstance(nested, Mapping):
        return _to_coordinate(nested.get("latitude"), nested.get("longitude"))
    return None


def format_address(data: Mapping[str, Any]) -> str:
    """Join the non-empty address parts with ", "."""
    parts: list[str] = []
    for aliases in _ADDRESS_PARTS:
        for key in aliases:
            value = data.get(key)
            if value is not None and str(value).strip():
                parts.append(str(value).strip())
                break
    return ", ".join(parts) if parts else ADDRESS_NOT_AVAILABLE


def extract_pattern_coordinate(text: str) -> Coordinate | None:
    """Last-resort `lat:<f>,lng:<f>` extraction from a freeform string."""
    match = _LAT_LNG_PATTERN.search(text)
    if not match:
        return None
    return _to_coordinate(match.group(1), match.group(2))


def _decode_json_object(text: str) -> dict[str, Any] | None:
    try:
        decoded = json.loads(text)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


def parse_raw_address(
    value: Any, *, latitude: Any = None, longitude: Any = None
) -> AnyRawAddress:
    """Classify upstream address data into a `RawAddress` variant."""
    structured = _to_coordinate(latitude, longitude)
    if structured is not None:
        return StructuredAddress(
            latitude=structured.latitude,
            longitude=structured.longitude,
            text=value if isinstance(value, str) and value.strip() else None,
        )
    if isinstance(value, str):
        decoded = _decode_json_object(value)
        if decoded is not None:
            return JsonEncodedAddress(text=value, data=decoded)
        return FreeformAddress(text=value)
    if isinstance(value, Mapping):
        return NestedAddress(data=dict(value))
    if value is None:
        return FreeformAddress(text="")
    return FreeformAddress(text=str(value))


def build_target(
    kind: TargetKind, value: Any, *, latitude: Any = None, longitude: Any = None
) -> DeliveryTarget:
    return DeliveryTarget(kind=kind, raw=parse_raw_address(value, latitude=latitude, longitude=longitude))


class AddressResolver:
    """Resolves delivery targets; geocoding failures degrade to "unresolved"."""

    def __init__(
        self,
        geocoder: Geocoder | None,
        *,
        cache: FileCache | None = None,
        timeout_seconds: float = 8.0,
        cache_ttl_seconds: int | None = None,
    ):
        self._geocoder = geocoder
        self._cache = cache
        self._timeout_seconds = float(timeout_seconds)
        self._cache_ttl_seconds = cache_ttl_seconds

    @classmethod
    def from_settings(
        cls, geocoder: Geocoder | None, settings: Settings, cache: FileCache | None = None
    ) -> AddressResolver:
        return cls(
            geocoder,
            cache=cache,
            timeout_seconds=settings.geocoding.request_timeout_seconds,
            cache_ttl_seconds=settings.geocoding.cache_ttl_seconds,
        )

    async def resolve(self, target: DeliveryTarget) -> AddressResolution:
        """Resolve `target` once; later calls return the cached resolution."""
        if target.resolution is not None:
            return target.resolution
        resolution = await self.resolve_raw(target.raw)
        target.resolution = resolution
        if resolution.coordinate is None:
            logger.info("Unresolved %s address: %s", target.kind.value, resolution.formatted_address)
        return resolution

    async def resolve_raw(self, raw: AnyRawAddress) -> AddressResolution:
        if isinstance(raw, StructuredAddress):
            formatted = ADDRESS_NOT_AVAILABLE
            if raw.text:
                decoded = _decode_json_object(raw.text)
                formatted = format_address(decoded) if decoded is not None else raw.text
            return AddressResolution(
                coordinate=Coordinate(latitude=raw.latitude, longitude=raw.longitude),
                formatted_address=formatted,
                source="structured",
            )

        if isinstance(raw, (JsonEncodedAddress, NestedAddress)):
            formatted = format_address(raw.data)
            found = extract_coordinate(raw.data)
            if found is not None:
                source = "json" if isinstance(raw, JsonEncodedAddress) else "nested"
                return AddressResolution(coordinate=found, formatted_address=formatted, source=source)
            if formatted != ADDRESS_NOT_AVAILABLE:
                geocoded = await self._geocode(formatted)
                if geocoded is not None:
                    return AddressResolution(coordinate=geocoded, formatted_address=formatted, source="geocoded")
            return AddressResolution(formatted_address=formatted, source="unresolved")

        text = raw.text.strip()
        if not text:
            return AddressResolution(formatted_address=ADDRESS_NOT_AVAILABLE, source="unresolved")
        geocoded = await self._geocode(text)
        if geocoded is not None:
            return AddressResolution(coordinate=geocoded, formatted_address=raw.text, source="geocoded")
        found = extract_pattern_coordinate(text)
        if found is not None:
            return AddressResolution(coordinate=found, formatted_address=raw.text, source="pattern")
        return AddressResolution(formatted_address=raw.text, source="unresolved")

    async def _geocode(self, text: str) -> Coordinate | None:
        if self._geocoder is None:
            return None
        geocoder = self._geocoder

        async def fetch() -> dict[str, float] | None:
            found = await asyncio.wait_for(geocoder.geocode_address(text), timeout=self._timeout_seconds)
            return found.model_dump() if found is not None else None

        try:
            if self._cache is not None:
                payload = await self._cache.get_or_fetch(
                    "geocode",
                    text.strip().lower(),
                    fetch,
                    ttl_seconds=self._cache_ttl_seconds,
                    stale_if_error=True,
                )
            else:
                payload = await fetch()
        except asyncio.TimeoutError:
            logger.warning("Geocoding timed out after %.1fs: %r", self._timeout_seconds, text)
            return None
        except Exception as exc:
            logger.warning("Geocoding failed for %r: %s", text, exc)
            return None

        if not isinstance(payload, dict):
            return None
        try:
            return Coordinate.model_validate(payload)
        except ValueError:
            return None
