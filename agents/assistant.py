# agents/assistant.py
"""
Composition root: wires reference data, the model gateway, the resolution
pipeline, the cached flight search and the orchestrator together, and exposes
the operations the conversational front end calls.
"""
import logging
from datetime import date
from typing import Any, Callable, Dict, Optional, Union

from agents.booking_agent import FlightBookingAgent
from agents.database import SqlReferenceDataStore
from agents.entity_extraction import EntityResolutionPipeline, ResolutionResult
from agents.fuzzy_matcher import FuzzyMatcher
from agents.llm_router import LanguageModelGateway, build_gateway
from agents.models import AgentResult, ConversationContext, ResolvedSearchParams, SearchResult
from agents.orchestrator import IntentShortcutOrchestrator
from agents.reference_data import (
    AirportsDataStore,
    InMemoryReferenceDataStore,
    ReferenceDataIndex,
    ReferenceDataService,
    ReferenceDataStore,
)
from core.cache import RouteSearchCache
from core.config import Settings, get_settings
from core.http_client import close_client
from core.logging_config import setup_logging
from core.request_context import set_request_id
from tools.airline_api import (
    CachedFlightSearch,
    FlightSearchProvider,
    HttpFlightSearchProvider,
    MockFlightSearchProvider,
)

logger = logging.getLogger(__name__)


class BookingAssistant:
    def __init__(
        self,
        reference: ReferenceDataService,
        gateway: LanguageModelGateway,
        pipeline: EntityResolutionPipeline,
        search: CachedFlightSearch,
        orchestrator: IntentShortcutOrchestrator,
    ):
        self.reference = reference
        self.gateway = gateway
        self.pipeline = pipeline
        self.search = search
        self.orchestrator = orchestrator

    async def resolve(self, user_input: str, context: Optional[ConversationContext] = None) -> ResolutionResult:
        """Resolved | Incomplete | Invalid for one utterance; no search, no reply text."""
        return await self.pipeline.resolve(user_input, context)

    async def extract_and_validate(
        self, user_input: str, context: Optional[ConversationContext] = None
    ) -> ResolvedSearchParams:
        """Like ``resolve`` but raises EntityExtractionError / RouteValidationError."""
        return await self.pipeline.extract_and_validate(user_input, context)

    async def handle_turn(
        self,
        user_input: str,
        context: Optional[ConversationContext] = None,
        request_id: Optional[str] = None,
    ) -> AgentResult:
        request_id = set_request_id(request_id)
        logger.info("Turn received", extra={"event": "turn_received", "request_id": request_id})
        return await self.orchestrator.handle(user_input, context)

    async def cached_search(
        self, origin: str, destination: str, date: Union[str, date], passengers: int = 1
    ) -> SearchResult:
        return await self.search.search(origin, destination, date, passengers)

    async def reload_reference_data(self, store: Optional[ReferenceDataStore] = None) -> ReferenceDataIndex:
        return await self.reference.reload(store)

    async def health(self) -> Dict[str, Any]:
        index = self.reference.index
        return {
            "reference_data": {
                "status": "ok" if index else "empty",
                "aliases": index.alias_count,
                "routes": index.route_count,
            },
            "llm": await self.gateway.health(),
            "cache": self.search.cache.stats(),
        }

    async def close(self) -> None:
        await self.gateway.close()
        await close_client()


# ----------------------------------------------------------------------
# Factory
# ----------------------------------------------------------------------
def _default_store(settings: Settings) -> ReferenceDataStore:
    if settings.database_url:
        return SqlReferenceDataStore.from_url(settings.database_url)
    if settings.reference_airport_codes:
        return AirportsDataStore(settings.reference_airport_codes)
    return InMemoryReferenceDataStore()


def _default_search_provider(settings: Settings) -> FlightSearchProvider:
    if settings.flight_search_base_url:
        return HttpFlightSearchProvider.from_settings(settings)
    logger.warning("FLIGHT_SEARCH_BASE_URL not set, using mock flight search")
    return MockFlightSearchProvider()


def build_assistant(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[LanguageModelGateway] = None,
    store: Optional[ReferenceDataStore] = None,
    search_provider: Optional[FlightSearchProvider] = None,
    cache: Optional[RouteSearchCache] = None,
    today: Callable[[], date] = date.today,
    configure_logging: bool = False,
) -> BookingAssistant:
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.log_level, settings.log_json)

    reference = ReferenceDataService(store or _default_store(settings))
    reference.load()

    gateway = gateway or build_gateway(settings)
    matcher = FuzzyMatcher(reference, threshold=settings.fuzzy_match_threshold)
    pipeline = EntityResolutionPipeline(reference, matcher, gateway, today=today)
    search = CachedFlightSearch(
        search_provider or _default_search_provider(settings),
        cache or RouteSearchCache.from_settings(settings),
    )
    agent = FlightBookingAgent(pipeline, search)
    orchestrator = IntentShortcutOrchestrator(agent, reference, search)
    return BookingAssistant(reference, gateway, pipeline, search, orchestrator)
