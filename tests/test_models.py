from datetime import date

import pytest
from pydantic import ValidationError

from agents.models import (
    BookingFlowStep,
    ConversationContext,
    ExtractedEntities,
    FlightOption,
    PendingBookingContext,
    ResolvedSearchParams,
    SearchResult,
)


def test_advance_none_keeps_context():
    context = ConversationContext(pending_origin="RUH", user_origin_airport="JED")
    assert context.advance(None) is context


def test_advance_replaces_pending_but_keeps_default_origin():
    context = ConversationContext(pending_origin="RUH", pending_date="2025-12-25", user_origin_airport="JED")

    nxt = context.advance(PendingBookingContext(destination="DXB", search_id="s1"))

    assert nxt.pending_origin is None
    assert nxt.pending_destination == "DXB"
    assert nxt.last_search_id == "s1"
    assert nxt.user_origin_airport == "JED"
    assert nxt.booking_step == BookingFlowStep.NONE


def test_contexts_are_immutable():
    context = ConversationContext()
    with pytest.raises(ValidationError):
        context.pending_origin = "RUH"


@pytest.mark.parametrize("raw, expected", [(2, 2), ("3", 3), ("two", None), (0, None), (True, None), (None, None)])
def test_passenger_coercion(raw, expected):
    assert ExtractedEntities(passengers=raw).passengers == expected


def test_resolved_params_validation():
    assert ResolvedSearchParams(origin="RUH", destination="JED", date=date(2025, 12, 25)).passengers == 1
    with pytest.raises(ValidationError):
        ResolvedSearchParams(origin="Riyadh", destination="JED", date=date(2025, 12, 25))
    with pytest.raises(ValidationError):
        ResolvedSearchParams(origin="RUH", destination="JED", date=date(2025, 12, 25), passengers=0)


def test_search_result_helpers():
    flights = [
        FlightOption(flight_number="F1001", departure_time="06:15", arrival_time="07:45", duration_min=90, price=600),
        FlightOption(flight_number="F1002", departure_time="13:05", arrival_time="14:35", duration_min=90, price=450),
    ]
    result = SearchResult(search_id="s1", origin="RUH", destination="JED", date=date(2025, 12, 25), flights=flights)

    assert result.find_flight("f1002").price == 450
    assert result.find_flight("F9999") is None
    assert result.lowest_fare().flight_number == "F1002"
    assert result.searched_at.tzinfo is not None
    assert SearchResult(search_id="s2", origin="RUH", destination="JED", date=date(2025, 12, 25)).lowest_fare() is None
