"""
Domain models (Pydantic).

These types represent the stable "contract" between layers:
- geometry values (`Coordinate`, `ViewportRegion`)
- upstream inputs (`Order`, `RawAddress` variants, `DriverFix`)
- derived outputs (`AddressResolution`, `RouteResult`, `OrderRouteState`)

Keeping these models in one place helps:
- validation (a non-finite or out-of-range coordinate never enters the engine),
- typed refactors,
- consistent JSON output across CLI/API/WebSocket.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from deliverytrack.core.time import ensure_utc

ADDRESS_NOT_AVAILABLE = "Address not available"


class Coordinate(BaseModel):
    """A geographic point in decimal degrees. Absence is `None`, never `(0, 0)`."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)

    def as_lon_lat(self) -> list[float]:
        """GeoJSON / ORS ordering."""
        return [self.longitude, self.latitude]


class OrderStage(str, Enum):
    """The one order-lifecycle vocabulary every consumer reads leg selection from."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str | OrderStage) -> OrderStage:
        if isinstance(value, OrderStage):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown order status: {value!r}") from None


class ActiveLeg(str, Enum):
    DRIVER_TO_RESTAURANT = "driver_to_restaurant"
    RESTAURANT_TO_CUSTOMER = "restaurant_to_customer"
    NONE = "none"


class TargetKind(str, Enum):
    RESTAURANT = "restaurant"
    CUSTOMER = "customer"


class FixSource(str, Enum):
    ONE_SHOT = "one_shot"
    WATCH = "watch"
    REMOTE = "remote"


class StructuredAddress(BaseModel):
    """Numeric latitude/longitude columns (e.g. the restaurant row)."""

    kind: Literal["structured"] = "structured"
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    text: str | None = None


class JsonEncodedAddress(BaseModel):
    """A delivery address stored as a JSON string; `data` is the decoded object."""

    kind: Literal["json"] = "json"
    text: str
    data: dict[str, Any]


class FreeformAddress(BaseModel):
    kind: Literal["freeform"] = "freeform"
    text: str


class NestedAddress(BaseModel):
    """An already-structured address object (possibly with a `coordinates` sub-object)."""

    kind: Literal["nested"] = "nested"
    data: dict[str, Any]


RawAddress = Annotated[
    Union[StructuredAddress, JsonEncodedAddress, FreeformAddress, NestedAddress],
    Field(discriminator="kind"),
]


class AddressResolution(BaseModel):
    """Outcome of resolving one delivery target."""

    model_config = ConfigDict(frozen=True)

    coordinate: Coordinate | None = None
    formatted_address: str = ADDRESS_NOT_AVAILABLE
    source: Literal["structured", "json", "nested", "geocoded", "pattern", "unresolved"] = "unresolved"

    @property
    def resolved(self) -> bool:
        return self.coordinate is not None


@dataclass
class DeliveryTarget:
    """A restaurant or customer endpoint; its resolution is cached once computed."""

    kind: TargetKind
    raw: StructuredAddress | JsonEncodedAddress | FreeformAddress | NestedAddress
    resolution: AddressResolution | None = None

    @property
    def coordinate(self) -> Coordinate | None:
        return self.resolution.coordinate if self.resolution is not None else None

    @property
    def formatted_address(self) -> str | None:
        return self.resolution.formatted_address if self.resolution is not None else None


class DriverFix(BaseModel):
    """One timestamped driver position. Replaced, never mutated."""

    model_config = ConfigDict(frozen=True)

    driver_id: str
    coordinate: Coordinate
    captured_at: datetime
    source: FixSource = FixSource.WATCH
    accuracy_m: float | None = Field(default=None, ge=0)

    @field_validator("captured_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_newer_than(self, other: DriverFix | None) -> bool:
        return other is None or self.captured_at > other.captured_at


class ViewportRegion(BaseModel):
    """Map region expressed as center + full-span deltas (degrees)."""

    model_config = ConfigDict(frozen=True)

    center: Coordinate
    latitude_delta: float = Field(..., gt=0)
    longitude_delta: float = Field(..., gt=0)

    def contains(self, point: Coordinate) -> bool:
        return (
            abs(point.latitude - self.center.latitude) <= self.latitude_delta / 2
            and abs(point.longitude - self.center.longitude) <= self.longitude_delta / 2
        )


class RouteResult(BaseModel):
    """A provider route: ordered polyline plus totals."""

    model_config = ConfigDict(frozen=True)

    polyline: list[Coordinate]
    duration_seconds: float = Field(..., ge=0)
    distance_km: float | None = Field(default=None, ge=0)


class OrderRouteState(BaseModel):
    """Derived, never persisted. Recomputed on every fix or status change."""

    stage: OrderStage
    active_leg: ActiveLeg = ActiveLeg.NONE
    origin: Coordinate | None = None
    destination: Coordinate | None = None
    route_polyline: list[Coordinate] = Field(default_factory=list)
    eta_seconds: float | None = None
    distance_km: float | None = None
    is_fallback_straight_line: bool = False
    sequence: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def eta_text(self) -> str:
        if self.eta_seconds is None:
            return "calculating"
        return f"{math.ceil(self.eta_seconds / 60)} min"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def navigation_url(self) -> str | None:
        """Turn-by-turn deep link for the active leg."""
        if self.origin is None or self.destination is None:
            return None
        query = urlencode(
            {
                "api": 1,
                "origin": f"{self.origin.latitude},{self.origin.longitude}",
                "destination": f"{self.destination.latitude},{self.destination.longitude}",
                "travelmode": "driving",
            }
        )
        return f"https://www.google.com/maps/dir/?{query}"


class Order(BaseModel):
    """Read-only order snapshot from the order data source."""

    id: str
    stage: OrderStage = Field(..., validation_alias="status")
    driver_id: str | None = None
    restaurant_latitude: float | str | None = None
    restaurant_longitude: float | str | None = None
    restaurant_address: str | None = None
    delivery_address: Any = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("stage", mode="before")
    @classmethod
    def _parse_stage(cls, value: Any) -> OrderStage:
        return OrderStage.parse(value)
