"""
Routing provider boundary.

`RouteProvider` wraps any `Router` (the ORS client in production, stubs in tests) and
guarantees callers a plain `RouteResult | None`:
- transport errors, non-2xx responses and malformed payloads become None,
- calls that exceed the deadline become None,
- no retries happen here; the engine recomputes on the next fix/status trigger.

A provider built without a router (no ORS key, `--offline`) always returns None, which
puts the engine in straight-line mode.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from deliverytrack.config.settings import Settings
from deliverytrack.domain.models import Coordinate, RouteResult

logger = logging.getLogger(__name__)


class Router(Protocol):
    async def calculate_route(
        self, start: Coordinate, end: Coordinate, profile: str
    ) -> RouteResult | None: ...


class RouteProvider:
    """Failure-tolerant facade over a `Router`."""

    def __init__(self, router: Router | None, *, timeout_seconds: float = 10.0):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._router = router
        self._timeout_seconds = float(timeout_seconds)

    @classmethod
    def from_settings(cls, router: Router | None, settings: Settings) -> RouteProvider:
        return cls(router, timeout_seconds=settings.routing.request_timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self._router is not None

    async def route(
        self, start: Coordinate, end: Coordinate, profile: str = "driving-car"
    ) -> RouteResult | None:
        if self._router is None:
            return None
        try:
            result = await asyncio.wait_for(
                self._router.calculate_route(start, end, profile),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Routing timed out after %.1fs (%s)", self._timeout_seconds, profile)
            return None
        except Exception as exc:
            logger.warning("Routing failed (%s): %s", profile, exc)
            return None

        if result is None or len(result.polyline) < 2:
            logger.info("Routing returned no usable route (%s)", profile)
            return None
        return result
