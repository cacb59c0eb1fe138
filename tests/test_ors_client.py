import asyncio

import pytest

from deliverytrack.config.settings import get_settings
from deliverytrack.domain.models import Coordinate
from deliverytrack.ingestion.ors_client import (
    OrsClient,
    OrsError,
    parse_directions_geojson,
    parse_geocode_geojson,
)

RESTAURANT = Coordinate(latitude=25.2, longitude=55.3)
CUSTOMER = Coordinate(latitude=25.25, longitude=55.35)


def _settings(api_key: str | None = "test-key"):
    settings = get_settings()
    ors = settings.ors.model_copy(
        update={"api_key": api_key, "base_url": "https://ors.example.test/", "geocode_boundary_country": "AE"}
    )
    return settings.model_copy(update={"ors": ors})


def _directions_payload():
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "geometry": {"type": "LineString", "coordinates": [[55.3, 25.2], [55.32, 25.22], [55.35, 25.25]]},
                "properties": {"summary": {"distance": 7.4, "duration": 612.5}},
            }
        ],
    }


def test_parse_directions_geojson_flips_lon_lat():
    route = parse_directions_geojson(_directions_payload())

    assert route is not None
    assert route.polyline[0] == RESTAURANT
    assert route.polyline[-1] == CUSTOMER
    assert route.duration_seconds == 612.5
    assert route.distance_km == 7.4


def test_parse_directions_geojson_without_usable_route():
    assert parse_directions_geojson({"features": []}) is None
    one_point = {"features": [{"geometry": {"coordinates": [[55.3, 25.2]]}, "properties": {}}]}
    assert parse_directions_geojson(one_point) is None


def test_parse_directions_geojson_rejects_errors_and_garbage():
    with pytest.raises(OrsError):
        parse_directions_geojson({"error": {"code": 2010, "message": "Could not find routable point"}})
    with pytest.raises(ValueError):
        parse_directions_geojson(["not", "an", "object"])
    with pytest.raises(ValueError):
        parse_directions_geojson({"features": [{"geometry": {"coordinates": [[55.3], [55.35, 25.25]]}}]})


def test_parse_geocode_geojson_first_feature_wins():
    payload = {
        "features": [
            {"geometry": {"coordinates": [55.2744, 25.1972]}},
            {"geometry": {"coordinates": [55.0, 25.0]}},
        ]
    }
    assert parse_geocode_geojson(payload) == Coordinate(latitude=25.1972, longitude=55.2744)
    assert parse_geocode_geojson({"features": []}) is None


def test_calculate_route_posts_lon_lat_body(monkeypatch):
    seen = {}

    async def fake_post_json(url, *, payload, headers=None, timeout_seconds=15):
        seen.update(url=url, payload=payload, headers=headers)
        return _directions_payload()

    monkeypatch.setattr("deliverytrack.ingestion.ors_client.post_json", fake_post_json)

    client = OrsClient(_settings())
    route = asyncio.run(client.calculate_route(RESTAURANT, CUSTOMER, "driving-car"))

    assert route is not None and len(route.polyline) == 3
    assert seen["url"] == "https://ors.example.test/v2/directions/driving-car/geojson"
    assert seen["payload"]["coordinates"] == [[55.3, 25.2], [55.35, 25.25]]
    assert seen["headers"] == {"Authorization": "test-key"}


def test_geocode_address_sends_country_boundary(monkeypatch):
    seen = {}

    async def fake_get_json(url, *, params=None, headers=None, timeout_seconds=15):
        seen.update(url=url, params=params)
        return {"features": [{"geometry": {"coordinates": [55.2744, 25.1972]}}]}

    monkeypatch.setattr("deliverytrack.ingestion.ors_client.get_json", fake_get_json)

    client = OrsClient(_settings())
    found = asyncio.run(client.geocode_address("Dubai Mall"))

    assert found == Coordinate(latitude=25.1972, longitude=55.2744)
    assert seen["url"] == "https://ors.example.test/geocode/search"
    assert seen["params"]["text"] == "Dubai Mall"
    assert seen["params"]["size"] == 1
    assert seen["params"]["boundary.country"] == "AE"
    assert seen["params"]["api_key"] == "test-key"


def test_missing_api_key_raises_before_any_request(monkeypatch):
    async def fail(*_a, **_k):
        raise AssertionError("no request expected")

    monkeypatch.setattr("deliverytrack.ingestion.ors_client.get_json", fail)
    monkeypatch.setattr("deliverytrack.ingestion.ors_client.post_json", fail)

    client = OrsClient(_settings(api_key=None))
    with pytest.raises(OrsError, match="ORS_API_KEY"):
        asyncio.run(client.geocode_address("Dubai Mall"))
    with pytest.raises(OrsError):
        asyncio.run(client.calculate_route(RESTAURANT, CUSTOMER))
