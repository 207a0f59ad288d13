import asyncio
from datetime import date

import httpx
import pytest

from core.cache import RouteSearchCache
from core.exceptions import FlightSearchError
from core.retry import RetryConfig
from tools.airline_api import CachedFlightSearch, HttpFlightSearchProvider, MockFlightSearchProvider

NO_WAIT = RetryConfig(retries=2, base_delay=0, jitter=False)

FLIGHTS_PAYLOAD = {
    "search_id": "srch-1",
    "flights": [
        {"flight_number": "F1234", "departure_time": "09:40", "arrival_time": "11:20",
         "duration_min": 100, "price": 420.0, "currency": "SAR", "seats_available": 5},
        {"flight_number": "F5678", "departure_time": "17:30"},
    ],
}


def http_provider(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpFlightSearchProvider("https://search.test/", api_key="secret", retry_config=NO_WAIT, client=client, **kwargs)


@pytest.mark.asyncio
async def test_mock_provider_is_deterministic_per_route_and_date():
    provider = MockFlightSearchProvider()

    first = await provider.search("RUH", "JED", "2025-12-25", 1)
    second = await provider.search("RUH", "JED", date(2025, 12, 25), 1)
    other_day = await provider.search("RUH", "JED", "2025-12-26", 1)

    assert [f.flight_number for f in first.flights] == [f.flight_number for f in second.flights]
    assert first.search_id != second.search_id
    assert len(first.flights) == 3
    assert [f.flight_number for f in first.flights] != [f.flight_number for f in other_day.flights]
    assert provider.calls == 3


@pytest.mark.asyncio
async def test_http_provider_parses_and_skips_bad_flights():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json=FLIGHTS_PAYLOAD)

    result = await http_provider(handler).search("ruh", "jed", "2025-12-25", 2)

    assert seen["path"] == "/flights/search"
    assert seen["params"] == {"origin": "RUH", "destination": "JED", "date": "2025-12-25", "adults": "2"}
    assert seen["auth"] == "Bearer secret"
    assert result.search_id == "srch-1"
    assert [f.flight_number for f in result.flights] == ["F1234"]
    assert result.passengers == 2


@pytest.mark.asyncio
async def test_http_provider_retries_server_errors():
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=FLIGHTS_PAYLOAD)

    result = await http_provider(handler).search("RUH", "JED", "2025-12-25", 1)

    assert calls == 2
    assert result.search_id == "srch-1"


@pytest.mark.asyncio
async def test_http_provider_wraps_failures():
    provider = http_provider(lambda request: httpx.Response(400, json={"error": "bad date"}))
    with pytest.raises(FlightSearchError):
        await provider.search("RUH", "JED", "2025-12-25", 1)

    provider = http_provider(lambda request: httpx.Response(200, json={"error": "no inventory"}))
    with pytest.raises(FlightSearchError):
        await provider.search("RUH", "JED", "2025-12-25", 1)


@pytest.mark.asyncio
async def test_http_provider_open_circuit_rejects_fast():
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(500)

    provider = http_provider(handler)
    for _ in range(5):
        with pytest.raises(FlightSearchError):
            await provider.search("RUH", "JED", "2025-12-25", 1)
    before = calls

    with pytest.raises(FlightSearchError, match="temporarily unavailable"):
        await provider.search("RUH", "JED", "2025-12-25", 1)
    assert calls == before


class CountingProvider(MockFlightSearchProvider):
    async def search(self, origin, destination, date, passenger_count):
        await asyncio.sleep(0.05)
        return await super().search(origin, destination, date, passenger_count)


@pytest.mark.asyncio
async def test_cached_search_single_flight():
    provider = CountingProvider()
    search = CachedFlightSearch(provider, RouteSearchCache())

    results = await asyncio.gather(*(search.search("RUH", "JED", "2025-12-25") for _ in range(20)))

    assert provider.calls == 1
    assert len({r.search_id for r in results}) == 1
    assert search.get_search_result(results[0].search_id) is results[0]


@pytest.mark.asyncio
async def test_cached_search_keys_include_passengers():
    provider = MockFlightSearchProvider()
    search = CachedFlightSearch(provider, RouteSearchCache())

    await search.search("RUH", "JED", "2025-12-25", passengers=1)
    await search.search("RUH", "JED", date(2025, 12, 25), passengers=1)
    await search.search("RUH", "JED", "2025-12-25", passengers=2)

    assert provider.calls == 2


@pytest.mark.asyncio
async def test_cached_search_normalizes_codes_before_fetching():
    provider = MockFlightSearchProvider()
    search = CachedFlightSearch(provider, RouteSearchCache())

    lower = await search.search(" ruh", "jed ", "2025-12-25")
    upper = await search.search("RUH", "JED", "2025-12-25")

    assert lower is upper
    assert (lower.origin, lower.destination) == ("RUH", "JED")
    direct = await MockFlightSearchProvider().search("RUH", "JED", "2025-12-25", 1)
    assert [f.flight_number for f in lower.flights] == [f.flight_number for f in direct.flights]
