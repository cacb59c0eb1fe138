import asyncio

from deliverytrack.core.cache import FileCache
from deliverytrack.domain.models import (
    ADDRESS_NOT_AVAILABLE,
    Coordinate,
    FreeformAddress,
    JsonEncodedAddress,
    NestedAddress,
    StructuredAddress,
    TargetKind,
)
from deliverytrack.routing.address import AddressResolver, build_target, parse_raw_address


class _StubGeocoder:
    def __init__(self, result=None, exc: Exception | None = None, delay: float = 0.0):
        self.result = result
        self.exc = exc
        self.delay = delay
        self.calls: list[str] = []

    async def geocode_address(self, text: str):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result


def _resolve(resolver: AddressResolver, value, **kwargs):
    return asyncio.run(resolver.resolve_raw(parse_raw_address(value, **kwargs)))


def test_parse_raw_address_classifies_shapes():
    assert isinstance(parse_raw_address("Main St", latitude="25.1", longitude=55.2), StructuredAddress)
    assert isinstance(parse_raw_address('{"city": "Dubai"}'), JsonEncodedAddress)
    assert isinstance(parse_raw_address("Villa 12, Jumeirah"), FreeformAddress)
    assert isinstance(parse_raw_address({"city": "Dubai"}), NestedAddress)
    # A JSON array is not an address object.
    assert isinstance(parse_raw_address("[1, 2]"), FreeformAddress)
    assert parse_raw_address(None) == FreeformAddress(text="")


def test_json_string_with_coordinates_resolves_without_geocoding():
    geocoder = _StubGeocoder()
    resolver = AddressResolver(geocoder)

    res = _resolve(resolver, '{"latitude":25.2,"longitude":55.3,"city":"Dubai","country":"UAE"}')

    assert res.coordinate == Coordinate(latitude=25.2, longitude=55.3)
    assert res.formatted_address == "Dubai, UAE"
    assert res.source == "json"
    assert geocoder.calls == []


def test_pattern_fallback_when_geocoding_fails():
    resolver = AddressResolver(_StubGeocoder(exc=RuntimeError("ORS down")))

    res = _resolve(resolver, "lat:25.2,lng:55.3")

    assert res.coordinate == Coordinate(latitude=25.2, longitude=55.3)
    assert res.source == "pattern"
    assert res.formatted_address == "lat:25.2,lng:55.3"


def test_pattern_fallback_when_geocoding_times_out():
    resolver = AddressResolver(_StubGeocoder(delay=1.0), timeout_seconds=0.01)

    res = _resolve(resolver, "Pickup near LAT: 25.25, LNG: -55.35")

    assert res.coordinate == Coordinate(latitude=25.25, longitude=-55.35)
    assert res.source == "pattern"


def test_freeform_text_is_geocoded():
    found = Coordinate(latitude=25.1972, longitude=55.2744)
    geocoder = _StubGeocoder(result=found)
    resolver = AddressResolver(geocoder)

    res = _resolve(resolver, "  Dubai Mall  ")

    assert res.coordinate == found
    assert res.source == "geocoded"
    assert geocoder.calls == ["Dubai Mall"]


def test_structured_columns_win_over_text():
    resolver = AddressResolver(_StubGeocoder(exc=AssertionError("must not geocode")))

    res = _resolve(resolver, "Al Wasl Rd", latitude="25.21", longitude="55.26")

    assert res.coordinate == Coordinate(latitude=25.21, longitude=55.26)
    assert res.formatted_address == "Al Wasl Rd"
    assert res.source == "structured"


def test_structured_columns_with_json_text_are_formatted():
    resolver = AddressResolver(None)

    res = _resolve(resolver, '{"address_line1": "Shop 4", "city": "Dubai"}', latitude=25.2, longitude=55.3)

    assert res.formatted_address == "Shop 4, Dubai"


def test_nested_coordinates_object():
    resolver = AddressResolver(None)
    value = {
        "address_line1": "1 Sheikh Zayed Rd",
        "city": "Dubai",
        "coordinates": {"latitude": 25.0, "longitude": 55.1},
    }

    res = _resolve(resolver, value)

    assert res.coordinate == Coordinate(latitude=25.0, longitude=55.1)
    assert res.formatted_address == "1 Sheikh Zayed Rd, Dubai"
    assert res.source == "nested"


def test_lat_lng_keys_and_part_aliases():
    resolver = AddressResolver(None)

    res = _resolve(resolver, '{"lat": "25.3", "lng": "55.4", "line1": "Tower B", "postal": "00000"}')

    assert res.coordinate == Coordinate(latitude=25.3, longitude=55.4)
    assert res.formatted_address == "Tower B, 00000"


def test_json_without_coordinates_geocodes_formatted_text():
    found = Coordinate(latitude=25.1, longitude=55.2)
    geocoder = _StubGeocoder(result=found)
    resolver = AddressResolver(geocoder)

    res = _resolve(resolver, '{"address_line1": "Villa 3", "city": "Dubai", "country": "UAE"}')

    assert res.coordinate == found
    assert res.source == "geocoded"
    assert geocoder.calls == ["Villa 3, Dubai, UAE"]


def test_unresolvable_addresses():
    resolver = AddressResolver(_StubGeocoder(result=None))

    empty = _resolve(resolver, None)
    assert empty.coordinate is None
    assert empty.formatted_address == ADDRESS_NOT_AVAILABLE
    assert empty.source == "unresolved"

    text = _resolve(resolver, "somewhere downtown")
    assert text.coordinate is None
    assert text.formatted_address == "somewhere downtown"
    assert not text.resolved

    no_parts = _resolve(resolver, "{}")
    assert no_parts.coordinate is None
    assert no_parts.formatted_address == ADDRESS_NOT_AVAILABLE


def test_resolution_is_cached_on_the_target():
    geocoder = _StubGeocoder(result=Coordinate(latitude=25.1, longitude=55.2))
    resolver = AddressResolver(geocoder)
    target = build_target(TargetKind.CUSTOMER, "Business Bay")

    async def run():
        first = await resolver.resolve(target)
        second = await resolver.resolve(target)
        return first, second

    first, second = asyncio.run(run())

    assert first is second
    assert target.coordinate == Coordinate(latitude=25.1, longitude=55.2)
    assert len(geocoder.calls) == 1


def test_geocode_results_are_cached_on_disk(tmp_path):
    geocoder = _StubGeocoder(result=Coordinate(latitude=25.1, longitude=55.2))
    cache = FileCache(tmp_path, enabled=True)
    resolver = AddressResolver(geocoder, cache=cache)

    a = _resolve(resolver, "Dubai Mall")
    b = _resolve(resolver, "dubai mall ")

    assert a.coordinate == b.coordinate == Coordinate(latitude=25.1, longitude=55.2)
    assert geocoder.calls == ["Dubai Mall"]
