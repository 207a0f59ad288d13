# tests/conftest.py
import json
import re
from datetime import date

import pytest

from agents.fuzzy_matcher import FuzzyMatcher
from agents.entity_extraction import EntityResolutionPipeline
from agents.reference_data import (
    SEED_AIRPORTS,
    SEED_ALIASES,
    InMemoryReferenceDataStore,
    ReferenceDataService,
)
from core.circuit_breaker import reset_circuit_breakers

TODAY = date(2025, 12, 1)

# Smaller network than the default seeds: RUH-CAI is deliberately not served
TEST_ROUTES = (
    ("RUH", "JED"), ("JED", "RUH"),
    ("RUH", "DMM"), ("DMM", "RUH"),
    ("RUH", "DXB"), ("DXB", "RUH"),
)


class FakeGateway:
    """
    Stands in for LanguageModelGateway.

    Extraction prompts are answered from ``extractions`` in order (dicts are
    sent as JSON, strings verbatim, exceptions raised). Disambiguation prompts
    are answered from ``codes`` keyed by the raw place name.
    """

    def __init__(self, extractions=None, codes=None):
        self.extractions = list(extractions or [])
        self.codes = dict(codes or {})
        self.prompts = []
        self.disambiguations = []

    async def generate(self, prompt, system=None):
        self.prompts.append(prompt)
        if prompt.startswith("Identify the 3-letter IATA"):
            raw = re.search(r'for: "(.*?)"', prompt).group(1)
            self.disambiguations.append(raw)
            answer = self.codes.get(raw, "UNKNOWN")
            if isinstance(answer, Exception):
                raise answer
            return answer

        reply = self.extractions.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)

    async def health(self):
        return {"fake": "closed"}

    async def close(self):
        pass


@pytest.fixture(autouse=True)
def fresh_circuit_breakers():
    """
    Breakers live in a module-level registry; start every test with none.
    """
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@pytest.fixture
def store():
    return InMemoryReferenceDataStore(SEED_AIRPORTS, SEED_ALIASES, TEST_ROUTES)


@pytest.fixture
def reference(store):
    service = ReferenceDataService(store)
    service.load()
    return service


@pytest.fixture
def matcher(reference):
    return FuzzyMatcher(reference)


@pytest.fixture
def make_pipeline(reference, matcher):
    def _make(gateway):
        return EntityResolutionPipeline(reference, matcher, gateway, today=lambda: TODAY)
    return _make
