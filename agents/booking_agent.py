# agents/booking_agent.py
import logging
import re
from typing import Optional

from pydantic import BaseModel

from agents.agent_graph import AgentGraph, AgentGraphBuilder
from agents.entity_extraction import EntityResolutionPipeline
from agents.models import (
    AgentResult,
    ChatUiType,
    ConversationContext,
    PendingBookingContext,
    ResolvedSearchParams,
    SearchResult,
)
from tools.airline_api import CachedFlightSearch

logger = logging.getLogger(__name__)

_ARABIC_RE = re.compile(r"[\u0600-\u06FF]")

FOUND_FLIGHTS = {
    "en": "Found {count} flights for you. Which one works?",
    "ar": "تمام! لقيت لك {count} رحلات. أي وحدة تبي؟",
}
NO_FLIGHTS = {
    "en": "I couldn't find any flights for that route and date. Please try another date.",
    "ar": "ما لقيت رحلات لهذا المسار والتاريخ. جرب تاريخ ثاني.",
}


def detect_language(text: str) -> str:
    return "ar" if _ARABIC_RE.search(text or "") else "en"


class TurnState(BaseModel):
    user_input: str
    context: ConversationContext
    params: Optional[ResolvedSearchParams] = None
    search_result: Optional[SearchResult] = None
    result: Optional[AgentResult] = None


class FlightBookingAgent:
    """extract -> search -> respond, run as an AgentGraph over TurnState."""

    def __init__(self, pipeline: EntityResolutionPipeline, search: CachedFlightSearch):
        self.pipeline = pipeline
        self.search = search
        self.graph: AgentGraph[TurnState] = (
            AgentGraphBuilder[TurnState]("flight_booking")
            .add_node("extract", self._extract)
            .add_node("search", self._search)
            .add_node("respond", self._respond)
            .build()
        )

    async def run(self, user_input: str, context: Optional[ConversationContext] = None) -> AgentResult:
        state = await self.graph.execute(
            TurnState(user_input=user_input, context=context or ConversationContext())
        )
        return state.result

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    async def _extract(self, state: TurnState):
        params = await self.pipeline.extract_and_validate(state.user_input, state.context)
        return {"params": params}

    async def _search(self, state: TurnState):
        p = state.params
        result = await self.search.search(p.origin, p.destination, p.date, p.passengers)
        return {"search_result": result}

    def _respond(self, state: TurnState):
        p = state.params
        search = state.search_result
        lang = detect_language(state.user_input)

        if not search.flights:
            # keep the route, ask for another date
            return {"result": AgentResult(
                response=NO_FLIGHTS[lang],
                pending_context=PendingBookingContext(
                    origin=p.origin, destination=p.destination, passengers=p.passengers
                ),
            )}

        return {"result": AgentResult(
            response=FOUND_FLIGHTS[lang].format(count=len(search.flights)),
            ui_type=ChatUiType.FLIGHT_LIST,
            ui_data={
                "search_id": search.search_id,
                "origin": p.origin,
                "destination": p.destination,
                "date": p.date.isoformat(),
                "passengers": p.passengers,
                "flights": [f.model_dump() for f in search.flights],
            },
            pending_context=PendingBookingContext(
                origin=p.origin,
                destination=p.destination,
                date=p.date.isoformat(),
                passengers=p.passengers,
                search_id=search.search_id,
            ),
        )}
