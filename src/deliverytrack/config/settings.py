# src/deliverytrack/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/deliverytrack/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `ORS_API_KEY`, `DELIVERYTRACK_LOG_LEVEL`)
- an external YAML file via `DELIVERYTRACK_CONFIG_PATH`

Design rule:
- Tuning knobs (thresholds, debounce windows, viewport padding) live in YAML, not in the engine.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from deliverytrack.core.env import load_dotenv_if_present


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `deliverytrack.config`."""
    text = resources.files("deliverytrack.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "DeliveryTrack"
    http_timeout_seconds: float = 15
    log_level: str = "INFO"


class CacheSettings(BaseModel):
    enabled: bool = True
    dir: str = ".cache/deliverytrack"
    default_ttl_seconds: int = 60 * 60 * 24


class OrsSettings(BaseModel):
    """OpenRouteService endpoints and quota."""

    base_url: str = "https://api.openrouteservice.org"
    api_key: str | None = None
    geocode_boundary_country: str | None = "AE"
    max_requests_per_minute: float = Field(40, gt=0)


class GeocodingSettings(BaseModel):
    request_timeout_seconds: float = Field(8.0, gt=0)
    cache_ttl_seconds: int = 60 * 60 * 24 * 30


class RoutingSettings(BaseModel):
    profile: str = "driving-car"
    average_speed_kmh: float = Field(30.0, gt=0)
    request_timeout_seconds: float = Field(10.0, gt=0)


class CoordinateSettings(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class ViewportSettings(BaseModel):
    padding_factor: float = Field(1.5, ge=1)
    min_delta: float = Field(0.01, gt=0)
    default_delta: float = Field(0.05, gt=0)
    default_center: CoordinateSettings = Field(
        default_factory=lambda: CoordinateSettings(latitude=25.2048, longitude=55.2708)
    )


class TrackingSettings(BaseModel):
    min_distance_m: float = Field(50.0, ge=0)
    min_interval_seconds: float = Field(30.0, ge=0)
    max_accuracy_m: float | None = Field(50.0, gt=0)


class ChannelSettings(BaseModel):
    debounce_seconds: float = Field(1.0, ge=0)
    max_wait_seconds: float = Field(5.0, ge=0)
    reconnect_delay_seconds: float = Field(2.0, ge=0)
    history_limit: int = Field(50, ge=1)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    ors: OrsSettings = Field(default_factory=OrsSettings)
    geocoding: GeocodingSettings = Field(default_factory=GeocodingSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    viewport: ViewportSettings = Field(default_factory=ViewportSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)
    channel: ChannelSettings = Field(default_factory=ChannelSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small to avoid exposing unsafe overrides.
    """
    load_dotenv_if_present()
    data = dict(data)
    cache_dir = os.getenv("DELIVERYTRACK_CACHE_DIR")
    if cache_dir:
        data.setdefault("cache", {})["dir"] = cache_dir

    log_level = os.getenv("DELIVERYTRACK_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    ors_key = os.getenv("ORS_API_KEY")
    if ors_key:
        data.setdefault("ors", {})["api_key"] = ors_key

    ors_url = os.getenv("ORS_BASE_URL")
    if ors_url:
        data.setdefault("ors", {})["base_url"] = ors_url

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("DELIVERYTRACK_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
