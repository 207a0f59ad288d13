# NOTE:
# request_id is NOT manually injected into logger extra fields here.
# It is automatically added by the global JSON logging formatter
# via core.request_context.get_request_id().
import logging
import random
import time
import uuid
from datetime import date as date_type, timedelta, datetime
from typing import Any, Dict, List, Optional, Protocol, Union

import httpx
from pydantic import ValidationError

from agents.models import FlightOption, SearchResult
from core.cache import RouteSearchCache, route_search_key
from core.circuit_breaker import CircuitBreakerOpenError, get_circuit_breaker
from core.exceptions import FlightSearchError
from core.http_client import get_client
from core.metrics import TOOL_LATENCY, TOOL_REQUESTS, TOOL_RETRIES
from core.retry import RetryConfig, retry_async

logger = logging.getLogger("airline_api")

DateLike = Union[str, date_type]


def _as_date(value: DateLike) -> date_type:
    return value if isinstance(value, date_type) else date_type.fromisoformat(value)


class FlightSearchProvider(Protocol):
    async def search(self, origin: str, destination: str, date: DateLike, passenger_count: int) -> SearchResult: ...


# ----------------------------------------------------------------------
# Deterministic provider (local development and tests)
# ----------------------------------------------------------------------
class MockFlightSearchProvider:
    """Same route and date always give the same schedule; every call gets a new search id."""

    DEPARTURE_SLOTS = ("06:15", "09:40", "13:05", "17:30", "21:50")

    def __init__(self, flights_per_search: int = 3, currency: str = "SAR"):
        self.flights_per_search = flights_per_search
        self.currency = currency
        self.calls = 0

    async def search(self, origin: str, destination: str, date: DateLike, passenger_count: int) -> SearchResult:
        self.calls += 1
        travel_date = _as_date(date)
        rng = random.Random(f"{origin}-{destination}-{travel_date.isoformat()}")
        duration = rng.randint(60, 210)

        flights = []
        for slot in sorted(rng.sample(self.DEPARTURE_SLOTS, k=min(self.flights_per_search, len(self.DEPARTURE_SLOTS)))):
            departure = datetime.combine(travel_date, datetime.strptime(slot, "%H:%M").time())
            arrival = departure + timedelta(minutes=duration)
            flights.append(FlightOption(
                flight_number=f"F{rng.randint(1000, 9999)}",
                departure_time=departure.strftime("%H:%M"),
                arrival_time=arrival.strftime("%H:%M"),
                duration_min=duration,
                price=float(rng.randrange(250, 1500, 5)),
                currency=self.currency,
                seats_available=rng.randint(1, 9),
            ))

        return SearchResult(
            search_id=uuid.uuid4().hex[:12],
            origin=origin,
            destination=destination,
            date=travel_date,
            passengers=passenger_count,
            flights=flights,
        )


# ----------------------------------------------------------------------
# HTTP provider
# ----------------------------------------------------------------------
class HttpFlightSearchProvider:
    """
    Calls ``GET {base_url}/flights/search`` on the inventory service.

    Retries network errors, 429 and 5xx; the whole retried call runs under the
    ``flight_search`` circuit breaker. Anything that still fails surfaces as
    ``FlightSearchError``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(
            retries=3,
            base_delay=1.0,
            max_backoff=8.0,
            on_retry=lambda attempt, delay, exc: TOOL_RETRIES.labels(tool="flight_search").inc(),
        )
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "HttpFlightSearchProvider":
        return cls(settings.flight_search_base_url, settings.flight_search_api_key, settings.flight_search_timeout)

    async def search(self, origin: str, destination: str, date: DateLike, passenger_count: int) -> SearchResult:
        travel_date = _as_date(date)
        params = {
            "origin": origin.upper(),
            "destination": destination.upper(),
            "date": travel_date.isoformat(),
            "adults": passenger_count,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        breaker = get_circuit_breaker("flight_search")
        start = time.monotonic()

        async def _request() -> Dict[str, Any]:
            client = self._client or get_client()
            response = await client.get(
                f"{self.base_url}/flights/search", params=params, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()

        logger.info("Flight search started", extra=params)
        try:
            data = await breaker.call(lambda: retry_async(_request, config=self.retry_config))
            result = self._parse(data, origin, destination, travel_date, passenger_count)
        except CircuitBreakerOpenError as e:
            TOOL_REQUESTS.labels(tool="flight_search", status="rejected").inc()
            raise FlightSearchError("Flight search temporarily unavailable") from e
        except (httpx.HTTPError, ValueError) as e:
            TOOL_REQUESTS.labels(tool="flight_search", status="error").inc()
            logger.error("Flight search failed", extra={"error_type": type(e).__name__, "error": str(e)})
            raise FlightSearchError(f"Search failed for {origin}->{destination} on {travel_date}") from e
        finally:
            TOOL_LATENCY.labels(tool="flight_search").observe(time.monotonic() - start)

        TOOL_REQUESTS.labels(tool="flight_search", status="success").inc()
        logger.info("Flight search succeeded", extra={
            "search_id": result.search_id,
            "results_count": len(result.flights),
        })
        return result

    def _parse(self, data: Any, origin: str, destination: str, travel_date: date_type, passengers: int) -> SearchResult:
        if not isinstance(data, dict):
            raise ValueError("search response is not an object")
        if "error" in data:
            raise ValueError(f"search API error: {data['error']}")

        flights: List[FlightOption] = []
        for raw in data.get("flights") or []:
            try:
                flights.append(FlightOption.model_validate(raw))
            except ValidationError as e:
                logger.warning("Flight parsing skipped", extra={"error": str(e)})

        return SearchResult(
            search_id=str(data.get("search_id") or uuid.uuid4().hex[:12]),
            origin=origin,
            destination=destination,
            date=travel_date,
            passengers=passengers,
            flights=flights,
        )


# ----------------------------------------------------------------------
# Cached search tool
# ----------------------------------------------------------------------
class CachedFlightSearch:
    """Flight search behind the route-search cache (one fetch per key per TTL window)."""

    def __init__(self, provider: FlightSearchProvider, cache: RouteSearchCache):
        self.provider = provider
        self.cache = cache

    async def search(self, origin: str, destination: str, date: DateLike, passengers: int = 1) -> SearchResult:
        travel_date = _as_date(date)
        origin, destination = origin.strip().upper(), destination.strip().upper()
        key = route_search_key(origin, destination, travel_date, adults=passengers)
        return await self.cache.get_or_fetch(
            key, lambda: self.provider.search(origin, destination, travel_date, passengers)
        )

    def get_search_result(self, search_id: Optional[str]) -> Optional[SearchResult]:
        return self.cache.get_search_result(search_id)
