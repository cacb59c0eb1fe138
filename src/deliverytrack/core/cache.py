"""
On-disk JSON cache for geocoding lookups.

Each (namespace, key) pair maps to one JSON envelope file
`<base_dir>/<namespace>/<sha256>.json` holding the value, its write time and TTL.

The address resolver uses it to:
- avoid re-geocoding the same freeform address on every order view,
- stay within the ORS free-tier quota,
- keep resolving known addresses while the geocoder is down (stale-if-error).
"""

from __future__ import annotations

import contextvars
import json
import time
from contextlib import contextmanager
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator


@dataclass(frozen=True)
class CacheEntry:
    created_at_unix: int
    ttl_seconds: int
    value: Any

    def is_fresh(self, now: int, ttl_seconds: int | None = None) -> bool:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        return now - self.created_at_unix <= ttl


@dataclass
class CacheStats:
    """Cache counters for one request/command (see `record_cache_stats`)."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    sets: int = 0
    stale_fallbacks: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expired": self.expired,
            "sets": self.sets,
            "stale_fallbacks": self.stale_fallbacks,
        }


_current_stats: contextvars.ContextVar[CacheStats | None] = contextvars.ContextVar(
    "deliverytrack_cache_stats", default=None
)


@contextmanager
def record_cache_stats() -> Iterator[CacheStats]:
    """Collect cache counters for everything awaited inside the block."""
    stats = CacheStats()
    token = _current_stats.set(stats)
    try:
        yield stats
    finally:
        _current_stats.reset(token)


def _count(field: str) -> None:
    stats = _current_stats.get()
    if stats is not None:
        setattr(stats, field, getattr(stats, field) + 1)


class FileCache:
    def __init__(self, base_dir: Path, enabled: bool = True, default_ttl_seconds: int = 86400):
        self._base_dir = Path(base_dir)
        self._enabled = enabled
        self._default_ttl_seconds = int(default_ttl_seconds)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _path(self, namespace: str, key: str) -> Path:
        digest = sha256(f"{namespace}:{key}".encode("utf-8")).hexdigest()
        return self._base_dir / namespace / f"{digest}.json"

    def _load(self, namespace: str, key: str) -> CacheEntry | None:
        if not self._enabled:
            return None
        path = self._path(namespace, key)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return CacheEntry(int(raw["created_at_unix"]), int(raw["ttl_seconds"]), raw["value"])
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError):
            # Corrupt or half-written envelope: treat as a miss, the next set() replaces it.
            return None

    def get(self, namespace: str, key: str, ttl_seconds: int | None = None) -> Any | None:
        """Fresh value or None. `ttl_seconds` overrides the TTL stored with the entry."""
        entry = self._load(namespace, key)
        if entry is None:
            _count("misses")
            return None
        if not entry.is_fresh(int(time.time()), ttl_seconds):
            _count("misses")
            _count("expired")
            return None
        _count("hits")
        return entry.value

    def get_stale(self, namespace: str, key: str) -> Any | None:
        """Value regardless of age (None if never stored)."""
        entry = self._load(namespace, key)
        return entry.value if entry is not None else None

    def set(self, namespace: str, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a JSON-serializable value; the file is replaced atomically."""
        if not self._enabled:
            return
        path = self._path(namespace, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        envelope = {
            "created_at_unix": int(time.time()),
            "ttl_seconds": int(ttl_seconds if ttl_seconds is not None else self._default_ttl_seconds),
            "value": value,
        }
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(envelope, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
        _count("sets")

    async def get_or_fetch(
        self,
        namespace: str,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl_seconds: int | None = None,
        *,
        stale_if_error: bool = False,
    ) -> Any | None:
        """Return the cached value, or await `fetcher()` and store what it returns.

        A `None` result is returned as-is and never cached, so a failed lookup is retried
        on the next call. With `stale_if_error`, an expired value is served when
        `fetcher()` raises and one exists on disk; otherwise the error propagates.
        """
        cached = self.get(namespace, key, ttl_seconds=ttl_seconds)
        if cached is not None:
            return cached
        try:
            value = await fetcher()
        except Exception:
            stale = self.get_stale(namespace, key) if stale_if_error else None
            if stale is None:
                raise
            _count("stale_fallbacks")
            return stale
        if value is not None:
            self.set(namespace, key, value, ttl_seconds=ttl_seconds)
        return value
