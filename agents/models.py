# agents/models.py
"""
Pydantic models shared by the resolution pipeline, the agent graph and the
orchestrator.
"""
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        if not v or v.lower() in {"null", "none", "unknown"}:
            return None
    return v


def _positive_int_or_none(v):
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, str):
        v = v.strip()
        if not v.isdigit():
            return None
    try:
        v = int(v)
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None


class ChatUiType(str, Enum):
    FLIGHT_LIST = "FLIGHT_LIST"
    FLIGHT_SELECTED = "FLIGHT_SELECTED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    DESTINATION_SUGGESTIONS = "DESTINATION_SUGGESTIONS"


class BookingFlowStep(str, Enum):
    NONE = "NONE"
    FLIGHT_SELECTED = "FLIGHT_SELECTED"
    BOOKING_COMPLETE = "BOOKING_COMPLETE"


# ----------------------------------------------------------------------
# Conversation state
# ----------------------------------------------------------------------
class PendingBookingContext(BaseModel):
    """
    Carry-forward payload for the next turn.

    Every field is copied from extraction, prior context or a search result;
    nothing here is ever guessed.
    """
    model_config = ConfigDict(frozen=True)

    origin: Optional[str] = None
    destination: Optional[str] = None
    date: Optional[str] = None
    passengers: Optional[int] = None
    search_id: Optional[str] = None
    selected_flight: Optional[str] = None
    booking_step: BookingFlowStep = BookingFlowStep.NONE

    def is_empty(self) -> bool:
        return all(
            getattr(self, f) is None
            for f in ("origin", "destination", "date", "passengers", "search_id", "selected_flight")
        )


class ConversationContext(BaseModel):
    """Immutable snapshot of what earlier turns established."""
    model_config = ConfigDict(frozen=True)

    pending_origin: Optional[str] = None
    pending_destination: Optional[str] = None
    pending_date: Optional[str] = None
    pending_passengers: Optional[int] = None
    last_search_id: Optional[str] = None
    last_flight_number: Optional[str] = None
    user_origin_airport: Optional[str] = None
    booking_step: BookingFlowStep = BookingFlowStep.NONE

    def advance(self, pending: Optional[PendingBookingContext]) -> "ConversationContext":
        """
        Context for the next turn. ``None`` keeps this context; an empty
        pending context ends the conversation but keeps the default origin.
        """
        if pending is None:
            return self
        return ConversationContext(
            pending_origin=pending.origin,
            pending_destination=pending.destination,
            pending_date=pending.date,
            pending_passengers=pending.passengers,
            last_search_id=pending.search_id,
            last_flight_number=pending.selected_flight,
            user_origin_airport=self.user_origin_airport,
            booking_step=pending.booking_step,
        )


class ExtractedEntities(BaseModel):
    """Raw fields the language model found in the current utterance only."""
    origin: Optional[str] = None
    destination: Optional[str] = None
    date: Optional[str] = None
    passengers: Optional[int] = None

    @field_validator("origin", "destination", "date", mode="before")
    @classmethod
    def strip_blank(cls, v):
        v = _blank_to_none(v)
        return None if v is None else str(v)

    @field_validator("passengers", mode="before")
    @classmethod
    def coerce_passengers(cls, v):
        return _positive_int_or_none(v)


class ResolvedSearchParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    origin: str = Field(pattern=r"^[A-Z]{3}$")
    destination: str = Field(pattern=r"^[A-Z]{3}$")
    date: date
    passengers: int = Field(default=1, ge=1)


# ----------------------------------------------------------------------
# Search results
# ----------------------------------------------------------------------
class FlightOption(BaseModel):
    flight_number: str
    departure_time: str
    arrival_time: str
    duration_min: int
    price: float
    currency: str = "SAR"
    seats_available: int = 9


class SearchResult(BaseModel):
    search_id: str
    origin: str
    destination: str
    date: date
    passengers: int = 1
    flights: List[FlightOption] = Field(default_factory=list)
    searched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def find_flight(self, flight_number: str) -> Optional[FlightOption]:
        wanted = flight_number.strip().upper()
        return next((f for f in self.flights if f.flight_number.upper() == wanted), None)

    def lowest_fare(self) -> Optional[FlightOption]:
        return min(self.flights, key=lambda f: f.price, default=None)


# ----------------------------------------------------------------------
# Turn output
# ----------------------------------------------------------------------
class AgentResult(BaseModel):
    response: str
    ui_type: Optional[ChatUiType] = None
    ui_data: Optional[Dict[str, Any]] = None
    pending_context: Optional[PendingBookingContext] = None
    suggestions: List[str] = Field(default_factory=list)
