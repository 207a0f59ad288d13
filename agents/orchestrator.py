# agents/orchestrator.py
"""
First stop for every user turn.

Cheap keyword checks answer the trivial moves (decline, picking a flight
from the last search, confirming it, asking for destination ideas) without a
model call; everything else goes through the booking graph. This is the only
place errors become user-visible text: the caller always gets an
AgentResult.
"""
import logging
import re
import secrets
import string
from typing import Callable, List, Optional

from agents.booking_agent import FlightBookingAgent
from agents.models import (
    AgentResult,
    BookingFlowStep,
    ChatUiType,
    ConversationContext,
    PendingBookingContext,
)
from agents.reference_data import ReferenceDataService
from core.exceptions import EntityExtractionError, RouteValidationError
from core.metrics import TURN_OUTCOMES
from tools.airline_api import CachedFlightSearch

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------
# Heuristics
# ----------------------------------------------------------------------
DECLINE_RE = re.compile(r"^\s*(no|nope|nah|cancel|never\s*mind)\b", re.IGNORECASE)
FLIGHT_PICK_RE = re.compile(r"\b(?:take|select|choose|want|book)\s+(?:flight\s+)?([a-z]{1,2}\d{2,4})\b", re.IGNORECASE)
FLIGHT_NUMBER_RE = re.compile(r"\b([a-z]\d{3,4})\b", re.IGNORECASE)
RECOMMEND_RE = re.compile(
    r"\b(recommend|suggest|where (?:should|can) i (?:go|fly)|anywhere|any destinations?|which destinations?)\b",
    re.IGNORECASE,
)
CONFIRMATION_WORDS = {"yes", "ok", "okay", "confirm", "book", "book it", "sure", "please", "proceed", "continue"}

DECLINE_RESPONSE = "Okay, let me know if you need anything else."
ASK_ORIGIN = "Where will you be flying from?"
MISUNDERSTOOD_RESPONSE = (
    "I'm sorry, I couldn't understand your request clearly. Could you please specify "
    "where you're flying from, where you're going, and when?"
)
GENERIC_APOLOGY = "I apologize, but I am currently experiencing technical difficulties. Please try again later."
SEARCH_EXPIRED = (
    "Sorry, those search results have expired. Tell me your route and date again and I'll look up fresh flights."
)


def is_confirmation(text: str) -> bool:
    cleaned = re.sub(r"[^a-z ]", "", text.lower()).strip()
    cleaned = re.sub(r"\s+", " ", cleaned)
    if not cleaned:
        return False
    return (
        cleaned in CONFIRMATION_WORDS
        or cleaned.startswith("yes")
        or "book it" in cleaned
        or "confirm" in cleaned
        or "proceed" in cleaned
    )


def extract_flight_number(text: str) -> Optional[str]:
    match = FLIGHT_PICK_RE.search(text) or FLIGHT_NUMBER_RE.search(text)
    return match.group(1).upper() if match else None


def generate_pnr(length: int = 6) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _join(names: List[str]) -> str:
    if len(names) <= 1:
        return "".join(names)
    return ", ".join(names[:-1]) + " and " + names[-1]


class IntentShortcutOrchestrator:
    def __init__(
        self,
        agent: FlightBookingAgent,
        reference: ReferenceDataService,
        search: CachedFlightSearch,
        pnr_factory: Callable[[], str] = generate_pnr,
    ):
        self.agent = agent
        self.reference = reference
        self.search = search
        self.pnr_factory = pnr_factory

    async def handle(self, user_input: str, context: Optional[ConversationContext] = None) -> AgentResult:
        context = context or ConversationContext()
        text = (user_input or "").strip()

        if DECLINE_RE.search(text):
            TURN_OUTCOMES.labels(path="decline").inc()
            return AgentResult(response=DECLINE_RESPONSE, pending_context=PendingBookingContext())

        if context.last_search_id:
            flight_number = extract_flight_number(text)
            if flight_number:
                TURN_OUTCOMES.labels(path="flight_pick").inc()
                return self._select_flight(flight_number, context)

        if context.last_flight_number and is_confirmation(text):
            TURN_OUTCOMES.labels(path="confirmation").inc()
            return self._confirm_booking(context)

        if RECOMMEND_RE.search(text):
            TURN_OUTCOMES.labels(path="recommendation").inc()
            return self._recommend(context)

        return await self._delegate(text, context)

    # ------------------------------------------------------------------
    # Shortcuts
    # ------------------------------------------------------------------
    def _carry(self, context: ConversationContext, **changes) -> PendingBookingContext:
        fields = dict(
            origin=context.pending_origin,
            destination=context.pending_destination,
            date=context.pending_date,
            passengers=context.pending_passengers,
            search_id=context.last_search_id,
            selected_flight=context.last_flight_number,
            booking_step=context.booking_step,
        )
        fields.update(changes)
        return PendingBookingContext(**fields)

    def _search_expired(self, context: ConversationContext) -> AgentResult:
        logger.info("Search result no longer cached", extra={"event": "search_expired", "search_id": context.last_search_id})
        return AgentResult(
            response=SEARCH_EXPIRED,
            pending_context=self._carry(
                context, search_id=None, selected_flight=None, booking_step=BookingFlowStep.NONE
            ),
        )

    def _select_flight(self, flight_number: str, context: ConversationContext) -> AgentResult:
        search = self.search.get_search_result(context.last_search_id)
        if search is None:
            return self._search_expired(context)
        flight = search.find_flight(flight_number)

        if flight is None:
            available = [f.flight_number for f in search.flights]
            return AgentResult(
                response=f"I couldn't find flight {flight_number} in your last search. "
                         f"Please choose one of: {', '.join(available)}.",
                suggestions=available,
                pending_context=self._carry(context),
            )

        details = f" It departs at {flight.departure_time} and costs {flight.price:g} {flight.currency} per passenger."
        return AgentResult(
            response=f"Great choice! You selected flight {flight_number}.{details} Shall I book it?",
            ui_type=ChatUiType.FLIGHT_SELECTED,
            ui_data={"flight_number": flight_number, "search_id": context.last_search_id},
            suggestions=["Yes, book it", "No"],
            pending_context=self._carry(
                context, selected_flight=flight_number, booking_step=BookingFlowStep.FLIGHT_SELECTED
            ),
        )

    def _confirm_booking(self, context: ConversationContext) -> AgentResult:
        flight_number = context.last_flight_number
        passengers = context.pending_passengers or 1
        search = self.search.get_search_result(context.last_search_id)
        flight = search.find_flight(flight_number) if search else None
        if flight is None:
            return self._search_expired(context)

        pnr = self.pnr_factory()
        index = self.reference.index
        total = flight.price * passengers
        lines = [
            "✅ Booking confirmed!",
            f"Booking Reference: {pnr}",
            f"Flight: {flight_number}",
            f"Route: {index.city_name(search.origin)} → {index.city_name(search.destination)} on {search.date.isoformat()}",
            f"Total: {total:g} {flight.currency} for {passengers} passenger(s)",
        ]
        ui_data = {
            "pnr": pnr,
            "flight_number": flight_number,
            "passengers": passengers,
            "search_id": search.search_id,
            "total": total,
            "currency": flight.currency,
        }

        logger.info("Booking confirmed", extra={"event": "booking_confirmed", "pnr": pnr, "flight_number": flight_number})
        return AgentResult(
            response="\n".join(lines),
            ui_type=ChatUiType.BOOKING_CONFIRMED,
            ui_data=ui_data,
            pending_context=PendingBookingContext(booking_step=BookingFlowStep.BOOKING_COMPLETE),
        )

    def _recommend(self, context: ConversationContext) -> AgentResult:
        index = self.reference.index
        raw_origin = context.pending_origin or context.user_origin_airport
        origin = index.code_for_alias(raw_origin) if raw_origin else None
        if origin is None:
            return AgentResult(response=ASK_ORIGIN, pending_context=self._carry(context))

        names = [index.city_name(code) for code in index.destinations_from(origin)]
        origin_name = index.city_name(origin)
        if not names:
            return AgentResult(
                response=f"I don't have any destinations from {origin_name} at the moment.",
                pending_context=self._carry(context, origin=origin),
            )
        return AgentResult(
            response=f"From {origin_name} you can fly to {_join(names)}. Where would you like to go?",
            ui_type=ChatUiType.DESTINATION_SUGGESTIONS,
            ui_data={"origin": origin, "destinations": index.destinations_from(origin)},
            suggestions=names,
            pending_context=self._carry(context, origin=origin),
        )

    # ------------------------------------------------------------------
    # Full graph + error mapping
    # ------------------------------------------------------------------
    async def _delegate(self, text: str, context: ConversationContext) -> AgentResult:
        try:
            result = await self.agent.run(text, context)
        except EntityExtractionError as e:
            if e.resumable:
                TURN_OUTCOMES.labels(path="clarification").inc()
                return AgentResult(response=e.message, pending_context=e.pending_context)
            TURN_OUTCOMES.labels(path="apology").inc()
            if e.entity:
                return AgentResult(
                    response=f'Sorry, I couldn\'t find an airport for "{e.entity}". '
                             "Could you give me the city name or its airport code?",
                )
            return AgentResult(response=MISUNDERSTOOD_RESPONSE)
        except RouteValidationError as e:
            TURN_OUTCOMES.labels(path="apology").inc()
            return self._route_apology(e)
        except Exception:
            TURN_OUTCOMES.labels(path="error").inc()
            logger.exception("Unhandled error while processing turn", extra={"event": "turn_failed"})
            return AgentResult(response=GENERIC_APOLOGY)

        TURN_OUTCOMES.labels(path="graph").inc()
        return result

    def _route_apology(self, e: RouteValidationError) -> AgentResult:
        index = self.reference.index
        if not (e.origin and e.destination):
            return AgentResult(response="Sorry, we don't fly that route. Please try a different destination.")

        origin_name = index.city_name(e.origin)
        response = f"Sorry, we don't fly from {origin_name} to {index.city_name(e.destination)}."
        names = [index.city_name(code) for code in index.destinations_from(e.origin)]
        if names:
            response += f" From {origin_name} you can fly to {_join(names)}."
        return AgentResult(
            response=response,
            ui_type=ChatUiType.DESTINATION_SUGGESTIONS if names else None,
            suggestions=names,
            pending_context=PendingBookingContext(origin=e.origin),
        )
