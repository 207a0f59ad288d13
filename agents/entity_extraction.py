# agents/entity_extraction.py
"""
Turns one user utterance (plus what earlier turns established) into
validated search parameters.

    1. ask the language model for origin / destination / date / passengers,
       telling it which fields the conversation already has
    2. merge: this turn beats the pending context, which beats the user's
       default origin
    3. stop with ``Incomplete`` while origin, destination or date is missing
    4. resolve each place: direct alias -> fuzzy alias -> model disambiguation
       (the model's answer only counts if it is a known code)
    5. check the route is served

``resolve`` returns ``Resolved | Incomplete | Invalid``; callers decide what
to say. ``extract_and_validate`` raises the domain errors instead.
"""
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Tuple, Union

import dateutil.parser
from pydantic import ValidationError

from agents.fuzzy_matcher import FuzzyMatcher
from agents.models import ConversationContext, ExtractedEntities, PendingBookingContext, ResolvedSearchParams
from agents.reference_data import ReferenceDataIndex, ReferenceDataService
from core.exceptions import EntityExtractionError, LLMError, RouteValidationError
from core.metrics import RESOLUTION_OUTCOMES, RESOLUTION_STAGE

logger = logging.getLogger(__name__)

FIELD_ORDER = ("origin", "destination", "date")

QUESTIONS = {
    "origin": "Where will you be flying from?",
    "destination": "Where would you like to fly to?",
    "date": "What date would you like to travel?",
}

EXTRACTION_SYSTEM_PROMPT = "You extract flight search details from chat messages. Reply with a single JSON object and nothing else."


# ----------------------------------------------------------------------
# Result type
# ----------------------------------------------------------------------
class InvalidReason(str, Enum):
    UNPARSEABLE = "unparseable"
    UNRESOLVED_PLACE = "unresolved_place"
    INVALID_ROUTE = "invalid_route"


@dataclass(frozen=True)
class Resolved:
    params: ResolvedSearchParams


@dataclass(frozen=True)
class Incomplete:
    partial: PendingBookingContext
    missing_fields: Tuple[str, ...]


@dataclass(frozen=True)
class Invalid:
    reason: InvalidReason
    message: str
    entity: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None


ResolutionResult = Union[Resolved, Incomplete, Invalid]


# ----------------------------------------------------------------------
# Prompt helpers
# ----------------------------------------------------------------------
def _describe(value: str, index: Optional[ReferenceDataIndex]) -> str:
    if index is not None and len(value) == 3 and index.is_known_code(value):
        return f"{index.city_name(value)} ({value.upper()})"
    return value


def build_context_hint(context: Optional[ConversationContext], index: Optional[ReferenceDataIndex] = None) -> str:
    if context is None:
        return ""
    known = {
        "origin": context.pending_origin,
        "destination": context.pending_destination,
        "date": context.pending_date,
    }
    if not any(known.values()):
        return ""

    have = [f"{field} = {_describe(value, index)}" for field, value in known.items() if value]
    missing = [field for field, value in known.items() if not value]
    lines = ["Already known from earlier in the conversation: " + "; ".join(have) + "."]
    if missing:
        lines.append("Still missing: " + ", ".join(missing) + ".")
        lines.append("The new message most likely supplies only the missing piece(s); use null for fields it does not mention.")
    return "\n".join(lines)


def build_extraction_prompt(
    user_input: str,
    today: date,
    context: Optional[ConversationContext] = None,
    index: Optional[ReferenceDataIndex] = None,
) -> str:
    hint = build_context_hint(context, index)
    tomorrow = today + timedelta(days=1)
    next_week = today + timedelta(days=7)
    parts = [f"Today's date is {today.isoformat()} ({today.strftime('%A')})."]
    if hint:
        parts.append(hint)
    parts.append(
        f'Extract origin, destination, date (YYYY-MM-DD), and passengers count from: "{user_input}".\n'
        f'Date rules: "today", "now" or "ASAP" = {today.isoformat()}; "tomorrow" = {tomorrow.isoformat()}; '
        f'"next week" = {next_week.isoformat()}; "in N days" = {today.isoformat()} plus N days.\n'
        "Keep place names as the user wrote them. Use null for anything not mentioned; never guess.\n"
        'Return JSON: {"origin": string|null, "destination": string|null, "date": "YYYY-MM-DD"|null, "passengers": number|null}'
    )
    return "\n".join(parts)


def build_disambiguation_prompt(raw: str) -> str:
    return (
        f'Identify the 3-letter IATA airport code for: "{raw}". '
        'Return ONLY the 3-letter code. If unknown, return "UNKNOWN".'
    )


_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def parse_extraction(raw: str) -> ExtractedEntities:
    """Strip code fences and parse the model's JSON. Raises ValueError."""
    text = _FENCE_RE.sub("", raw or "").strip()
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("no JSON object in model output")
    data = json.loads(text[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("model output is not a JSON object")
    try:
        return ExtractedEntities.model_validate(data)
    except ValidationError as e:
        raise ValueError(str(e)) from e


_IN_N_DAYS_RE = re.compile(r"^in\s+(\d{1,3})\s+days?$")


def normalize_date(text: Optional[str], today: date) -> Optional[str]:
    """ISO date for ``text``, resolving relative phrases against ``today``; None if unparseable."""
    if not text:
        return None
    value = text.strip().lower()
    if value in {"today", "now", "asap", "tonight"}:
        return today.isoformat()
    if value == "day after tomorrow":
        return (today + timedelta(days=2)).isoformat()
    if value == "tomorrow":
        return (today + timedelta(days=1)).isoformat()
    if value == "next week":
        return (today + timedelta(days=7)).isoformat()
    match = _IN_N_DAYS_RE.match(value)
    if match:
        return (today + timedelta(days=int(match.group(1)))).isoformat()

    try:
        return date.fromisoformat(value).isoformat()
    except ValueError:
        pass
    try:
        default = datetime(today.year, today.month, today.day)
        return dateutil.parser.parse(value, default=default).date().isoformat()
    except (ValueError, OverflowError):
        return None


def clarification_message(incomplete: Incomplete, index: Optional[ReferenceDataIndex] = None) -> str:
    """Restate what is known, then ask one question per missing field."""
    partial = incomplete.partial
    understood = ""
    if partial.origin:
        understood += f" from {_display_place(partial.origin, index)}"
    if partial.destination:
        understood += f" to {_display_place(partial.destination, index)}"
    if partial.date:
        understood += f" on {partial.date}"

    sentences = []
    if understood:
        sentences.append(f"I understood you want to fly{understood}.")
    sentences.extend(QUESTIONS[field] for field in FIELD_ORDER if field in incomplete.missing_fields)
    return " ".join(sentences)


def _display_place(value: str, index: Optional[ReferenceDataIndex]) -> str:
    if index is not None and index.is_known_code(value):
        return index.city_name(value)
    return value


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------
class EntityResolutionPipeline:
    def __init__(
        self,
        reference: ReferenceDataService,
        matcher: FuzzyMatcher,
        gateway,
        today: Callable[[], date] = date.today,
    ):
        self._reference = reference
        self._matcher = matcher
        self._gateway = gateway
        self._today = today

    @property
    def index(self) -> ReferenceDataIndex:
        return self._reference.index

    async def resolve(self, user_input: str, context: Optional[ConversationContext] = None) -> ResolutionResult:
        """
        Raises only infrastructure errors (``LLMError`` when extraction itself
        cannot reach any model); every conversational outcome is returned.
        """
        result = await self._resolve(user_input, context)
        outcome = type(result).__name__.lower()
        RESOLUTION_OUTCOMES.labels(outcome=outcome).inc()
        logger.info("Entity resolution finished", extra={
            "event": "entity_resolution",
            "outcome": outcome,
            "reason": getattr(result, "reason", None),
            "missing": list(getattr(result, "missing_fields", ())),
        })
        return result

    async def extract_and_validate(
        self, user_input: str, context: Optional[ConversationContext] = None
    ) -> ResolvedSearchParams:
        result = await self.resolve(user_input, context)
        if isinstance(result, Resolved):
            return result.params
        if isinstance(result, Incomplete):
            raise EntityExtractionError(clarification_message(result, self.index), pending_context=result.partial)
        if result.reason == InvalidReason.INVALID_ROUTE:
            raise RouteValidationError(result.message, origin=result.origin, destination=result.destination)
        raise EntityExtractionError(result.message, entity=result.entity)

    async def _resolve(self, user_input: str, context: Optional[ConversationContext]) -> ResolutionResult:
        context = context or ConversationContext()
        today = self._today()
        index = self.index

        # 1. extraction
        prompt = build_extraction_prompt(user_input, today, context, index)
        raw = await self._gateway.generate(prompt, system=EXTRACTION_SYSTEM_PROMPT)
        try:
            extracted = parse_extraction(raw)
        except ValueError as e:
            logger.warning("Failed to parse LLM output", extra={
                "event": "extraction_parse_failed",
                "error": str(e),
                "raw": (raw or "")[:500],
            })
            return Invalid(InvalidReason.UNPARSEABLE, "Failed to parse LLM output")

        # 2. merge, current turn first
        origin = extracted.origin or context.pending_origin or context.user_origin_airport
        destination = extracted.destination or context.pending_destination
        travel_date = normalize_date(extracted.date, today) or normalize_date(context.pending_date, today)
        passengers = extracted.passengers or context.pending_passengers

        # 3. missing fields
        merged = {"origin": origin, "destination": destination, "date": travel_date}
        missing = tuple(field for field in FIELD_ORDER if not merged[field])
        if missing:
            partial = PendingBookingContext(
                origin=self._resolve_cheaply(origin) if origin else None,
                destination=self._resolve_cheaply(destination) if destination else None,
                date=travel_date,
                passengers=passengers,
            )
            return Incomplete(partial, missing)

        # 4. place resolution
        origin_code = await self.resolve_place(origin)
        if origin_code is None:
            return Invalid(InvalidReason.UNRESOLVED_PLACE, f"Could not resolve city: {origin}", entity=origin)
        destination_code = await self.resolve_place(destination)
        if destination_code is None:
            return Invalid(InvalidReason.UNRESOLVED_PLACE, f"Could not resolve city: {destination}", entity=destination)

        # 5. route
        if not index.is_valid_route(origin_code, destination_code):
            return Invalid(
                InvalidReason.INVALID_ROUTE,
                f"No service from {origin_code} to {destination_code}",
                origin=origin_code,
                destination=destination_code,
            )

        return Resolved(ResolvedSearchParams(
            origin=origin_code,
            destination=destination_code,
            date=date.fromisoformat(travel_date),
            passengers=passengers or 1,
        ))

    def _resolve_cheaply(self, raw: str) -> str:
        """Direct or fuzzy code for a partially known request; the raw text otherwise."""
        return self.index.code_for_alias(raw) or self._matcher.find_closest_match(raw) or raw

    async def resolve_place(self, raw: str) -> Optional[str]:
        """Direct alias, then fuzzy alias, then model disambiguation checked against known codes."""
        index = self.index

        code = index.code_for_alias(raw)
        if code:
            RESOLUTION_STAGE.labels(stage="direct").inc()
            return code

        code = self._matcher.find_closest_match(raw)
        if code:
            RESOLUTION_STAGE.labels(stage="fuzzy").inc()
            logger.info("Place resolved by fuzzy match", extra={"event": "place_fuzzy", "raw": raw, "code": code})
            return code

        try:
            answer = await self._gateway.generate(build_disambiguation_prompt(raw))
        except LLMError as e:
            logger.warning("Disambiguation model call failed", extra={
                "event": "place_llm_failed",
                "raw": raw,
                "error": str(e),
            })
            answer = ""

        candidate = (answer or "").strip().upper()[:3]
        if index.is_known_code(candidate):
            RESOLUTION_STAGE.labels(stage="llm").inc()
            logger.info("Place resolved by model", extra={"event": "place_llm", "raw": raw, "code": candidate})
            return candidate

        RESOLUTION_STAGE.labels(stage="unresolved").inc()
        logger.info("Place could not be resolved", extra={"event": "place_unresolved", "raw": raw, "answer": candidate})
        return None
