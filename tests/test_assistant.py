import pytest

from agents.assistant import build_assistant
from agents.entity_extraction import Incomplete, Resolved
from agents.models import ChatUiType, ConversationContext
from agents.reference_data import SEED_AIRPORTS, SEED_ALIASES, Airport, InMemoryReferenceDataStore
from conftest import TEST_ROUTES, TODAY, FakeGateway
from core.config import Settings
from core.request_context import get_request_id
from tools.airline_api import MockFlightSearchProvider


def extraction(origin=None, destination=None, date=None, passengers=None):
    return {"origin": origin, "destination": destination, "date": date, "passengers": passengers}


@pytest.fixture
def make_assistant(store):
    def _make(gateway, provider=None, reference_store=None):
        return build_assistant(
            Settings(),
            gateway=gateway,
            store=reference_store or store,
            search_provider=provider or MockFlightSearchProvider(),
            today=lambda: TODAY,
        )
    return _make


@pytest.mark.asyncio
async def test_search_select_and_confirm_conversation(make_assistant):
    gateway = FakeGateway([
        extraction(origin="Riyad"),
        extraction(destination="Jedda", date="tomorrow"),
    ])
    assistant = make_assistant(gateway)
    context = ConversationContext()

    first = await assistant.handle_turn("I want to fly from Riyad", context)
    assert first.pending_context.origin == "RUH"
    context = context.advance(first.pending_context)

    second = await assistant.handle_turn("to Jedda tomorrow", context)
    assert second.ui_type == ChatUiType.FLIGHT_LIST
    assert second.ui_data["date"] == "2025-12-02"
    context = context.advance(second.pending_context)

    flight_number = second.ui_data["flights"][-1]["flight_number"]
    third = await assistant.handle_turn(f"take {flight_number}", context)
    assert third.ui_type == ChatUiType.FLIGHT_SELECTED

    context = context.advance(third.pending_context)
    fourth = await assistant.handle_turn("confirm", context)
    assert fourth.ui_type == ChatUiType.BOOKING_CONFIRMED
    assert len(fourth.ui_data["pnr"]) == 6


@pytest.mark.asyncio
async def test_handle_turn_binds_request_id(make_assistant):
    assistant = make_assistant(FakeGateway([extraction()]))
    await assistant.handle_turn("hi", request_id="req-42")
    assert get_request_id() == "req-42"


@pytest.mark.asyncio
async def test_resolve_and_extract_and_validate(make_assistant):
    gateway = FakeGateway([
        extraction("Riyadh", "Dubai", "2025-12-25"),
        extraction(origin="Riyadh"),
        extraction("Riyadh", "Dammam", "2025-12-25", 4),
    ])
    assistant = make_assistant(gateway)

    assert isinstance(await assistant.resolve("Riyadh to Dubai on the 25th"), Resolved)
    assert isinstance(await assistant.resolve("from Riyadh"), Incomplete)
    params = await assistant.extract_and_validate("4 of us Riyadh to Dammam on the 25th")
    assert (params.origin, params.destination, params.passengers) == ("RUH", "DMM", 4)


@pytest.mark.asyncio
async def test_cached_search_shares_results(make_assistant):
    provider = MockFlightSearchProvider()
    assistant = make_assistant(FakeGateway(), provider=provider)

    first = await assistant.cached_search("RUH", "JED", "2025-12-25")
    second = await assistant.cached_search("ruh", "jed", "2025-12-25")

    assert first is second
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_reload_reference_data(make_assistant):
    store = InMemoryReferenceDataStore(SEED_AIRPORTS, SEED_ALIASES, TEST_ROUTES)
    assistant = make_assistant(FakeGateway(), reference_store=store)
    assert not assistant.reference.index.is_valid_route("RUH", "CAI")

    index = await assistant.reload_reference_data(InMemoryReferenceDataStore(
        SEED_AIRPORTS + (Airport("AUH", "Abu Dhabi"),),
        SEED_ALIASES,
        TEST_ROUTES + (("RUH", "CAI"), ("RUH", "AUH")),
    ))

    assert index.is_valid_route("RUH", "CAI")
    assert index.code_for_alias("abu dhabi") == "AUH"


@pytest.mark.asyncio
async def test_health_reports_components(make_assistant):
    assistant = make_assistant(FakeGateway())
    await assistant.cached_search("RUH", "JED", "2025-12-25")

    health = await assistant.health()

    assert health["reference_data"]["status"] == "ok"
    assert health["reference_data"]["routes"] == len(TEST_ROUTES)
    assert health["llm"] == {"fake": "closed"}
    assert health["cache"]["route_search"]["size"] == 1
    assert health["cache"]["search_result"]["size"] == 1

    await assistant.close()
