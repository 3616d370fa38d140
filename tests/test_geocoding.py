import httpx
import pytest
import respx

from geosearch.models.dto import Coordinate
from geosearch.services.geocoding import Geocoder, extract_postal_code

URL = "https://geo.test/geocode/json"


def make_geocoder(**kwargs) -> Geocoder:
    defaults = dict(api_key="test-key", url=URL, region="India", timeout=1, max_retries=1, initial_backoff=0)
    defaults.update(kwargs)
    return Geocoder(**defaults)


@pytest.mark.asyncio
@respx.mock
async def test_postal_code_to_coordinate_and_memo():
    route = respx.get(URL).respond(
        200,
        json={"status": "OK", "results": [{"geometry": {"location": {"lat": 12.97, "lng": 77.59}}}]},
    )
    geocoder = make_geocoder()

    first = await geocoder.postal_code_to_coordinate("560001")
    second = await geocoder.postal_code_to_coordinate("560001")

    assert first == Coordinate(latitude=12.97, longitude=77.59)
    assert second == first
    assert route.call_count == 1
    request = route.calls[0].request
    assert request.url.params["address"] == "560001,India"
    assert request.url.params["key"] == "test-key"


@pytest.mark.asyncio
@respx.mock
async def test_zero_results_is_not_memoized():
    route = respx.get(URL).respond(200, json={"status": "ZERO_RESULTS", "results": []})
    geocoder = make_geocoder()

    assert await geocoder.postal_code_to_coordinate("000000") is None
    assert await geocoder.postal_code_to_coordinate("000000") is None
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_server_error_returns_none():
    respx.get(URL).respond(500)
    assert await make_geocoder().postal_code_to_coordinate("560001") is None


@pytest.mark.asyncio
@respx.mock
async def test_timeout_is_retried_then_gives_up():
    route = respx.get(URL).mock(side_effect=httpx.ConnectTimeout("slow"))
    geocoder = make_geocoder(max_retries=2)

    assert await geocoder.postal_code_to_coordinate("560001") is None
    assert route.call_count == 3


@pytest.mark.asyncio
@respx.mock
async def test_unusable_location_returns_none():
    respx.get(URL).respond(200, json={"status": "OK", "results": [{"geometry": {"location": {"lat": "x"}}}]})
    assert await make_geocoder().postal_code_to_coordinate("560001") is None


@pytest.mark.asyncio
async def test_without_api_key_nothing_is_requested():
    geocoder = make_geocoder(api_key="")
    assert await geocoder.postal_code_to_coordinate("560001") is None
    assert await geocoder.coordinate_to_address(Coordinate(latitude=1, longitude=1)) is None


@pytest.mark.asyncio
@respx.mock
async def test_coordinate_to_address():
    route = respx.get(URL).respond(
        200,
        json={
            "status": "OK",
            "results": [
                {
                    "formatted_address": "MG Road, Bengaluru, Karnataka 560001, India",
                    "place_id": "abc123",
                    "address_components": [
                        {"long_name": "Bengaluru", "types": ["locality"]},
                        {"long_name": "560001", "types": ["postal_code"]},
                    ],
                }
            ],
        },
    )
    geocoder = make_geocoder()

    lookup = await geocoder.coordinate_to_address(Coordinate(latitude=12.9716, longitude=77.5946))

    assert lookup.postal_code == "560001"
    assert lookup.place_id == "abc123"
    assert lookup.formatted_address.startswith("MG Road")
    assert route.calls[0].request.url.params["latlng"] == "12.9716,77.5946"

    await geocoder.coordinate_to_address(Coordinate(latitude=12.9716, longitude=77.5946))
    assert route.call_count == 1
    assert geocoder.clear_cache() == 1


@pytest.mark.asyncio
async def test_coordinate_to_address_invalid_coordinate():
    assert await make_geocoder().coordinate_to_address(Coordinate(latitude=100, longitude=0)) is None


def test_extract_postal_code():
    assert extract_postal_code([{"long_name": "x", "types": ["route"]}]) is None
    assert extract_postal_code(None) is None


@pytest.mark.asyncio
@respx.mock
@pytest.mark.parametrize(
    "payload",
    [
        {"status": "OK", "results": [{"geometry": None}]},
        {"status": "OK", "results": [{"geometry": "somewhere"}]},
        {"status": "OK", "results": [{"geometry": {"location": None}}]},
        {"status": "OK", "results": ["not-a-result"]},
        {"status": "OK", "results": "not-a-list"},
        [{"status": "OK"}],
    ],
)
async def test_malformed_payload_returns_none(payload):
    respx.get(URL).respond(200, json=payload)
    assert await make_geocoder().postal_code_to_coordinate("560001") is None


@pytest.mark.asyncio
@respx.mock
async def test_coordinate_to_address_tolerates_malformed_components():
    respx.get(URL).respond(
        200,
        json={
            "status": "OK",
            "results": [{"formatted_address": None, "place_id": 42, "address_components": ["postal_code", None]}],
        },
    )

    lookup = await make_geocoder().coordinate_to_address(Coordinate(latitude=12.9716, longitude=77.5946))

    assert lookup.formatted_address == ""
    assert lookup.postal_code is None
    assert lookup.place_id is None


def test_extract_postal_code_skips_non_dict_components():
    components = ["postal_code", {"long_name": 560001, "types": ["postal_code"]}]
    assert extract_postal_code(components) == "560001"
    assert extract_postal_code({"types": ["postal_code"]}) is None
