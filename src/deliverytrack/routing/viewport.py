"""
Viewport fitting for the tracking map.

The region is recomputed whenever the set of relevant points changes: a driver fix
moves, or a restaurant/customer coordinate resolves for the first time.
"""

from __future__ import annotations

from collections.abc import Iterable

from deliverytrack.config.settings import Settings
from deliverytrack.core.geo import bounding_region
from deliverytrack.domain.models import Coordinate, ViewportRegion


class ViewportFitter:
    def __init__(
        self,
        *,
        padding_factor: float = 1.5,
        min_delta: float = 0.01,
        default_delta: float = 0.05,
        default_center: Coordinate | None = None,
    ):
        self._padding_factor = float(padding_factor)
        self._min_delta = float(min_delta)
        self._default_delta = float(default_delta)
        self._default_center = default_center
        self._last_key: tuple[tuple[Coordinate, ...], Coordinate | None] | None = None
        self._region: ViewportRegion | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ViewportFitter:
        vp = settings.viewport
        return cls(
            padding_factor=vp.padding_factor,
            min_delta=vp.min_delta,
            default_delta=vp.default_delta,
            default_center=Coordinate(
                latitude=vp.default_center.latitude, longitude=vp.default_center.longitude
            ),
        )

    @property
    def region(self) -> ViewportRegion | None:
        return self._region

    def fit(
        self, points: Iterable[Coordinate | None], fallback: Coordinate | None = None
    ) -> ViewportRegion:
        """Region containing every known point; missing (None) points are skipped.

        With no points, a wide region centered on `fallback` (e.g. the last driver fix)
        or the configured default center is returned.
        """
        known = [p for p in points if p is not None]
        if known:
            return bounding_region(known, padding_factor=self._padding_factor, min_delta=self._min_delta)

        center = fallback or self._default_center
        if center is None:
            raise ValueError("No points, no fallback and no default center to fit a viewport")
        delta = max(self._default_delta, self._min_delta)
        return ViewportRegion(center=center, latitude_delta=delta, longitude_delta=delta)

    def update(
        self, points: Iterable[Coordinate | None], fallback: Coordinate | None = None
    ) -> tuple[ViewportRegion, bool]:
        """Recompute only when the point set changed. Returns (region, changed)."""
        known = tuple(p for p in points if p is not None)
        key = (known, None if known else fallback)
        if self._region is not None and key == self._last_key:
            return self._region, False
        self._region = self.fit(known, fallback=fallback)
        self._last_key = key
        return self._region, True
