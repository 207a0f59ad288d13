# agents/reference_data.py
"""
Airport reference data: codes, localized aliases and served routes.

A ``ReferenceDataIndex`` is built in one go from a ``ReferenceDataStore`` and
never changes afterwards, so any number of coroutines can read it without
locking. ``ReferenceDataService`` owns the current index and replaces it
wholesale on reload; a failed load keeps whatever index was active (empty at
startup), so lookups fail closed instead of resolving against partial data.
"""
import asyncio
import logging
from dataclasses import dataclass
from itertools import permutations
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, NamedTuple, Optional, Protocol, Sequence, Set, Tuple

from core.metrics import REFERENCE_DATA_LOADS, REFERENCE_DATA_SIZE

logger = logging.getLogger(__name__)


def normalize_alias(text: Optional[str]) -> str:
    return (text or "").strip().lower()


class Airport(NamedTuple):
    code: str
    name_en: Optional[str] = None
    name_ar: Optional[str] = None


# ----------------------------------------------------------------------
# Store contract + in-memory seed data
# ----------------------------------------------------------------------
class ReferenceDataStore(Protocol):
    def load_airports(self) -> Iterable[Airport]: ...

    def load_aliases(self) -> Iterable[Tuple[str, str]]: ...

    def load_routes(self) -> Iterable[Tuple[str, str]]: ...


SEED_AIRPORTS: Tuple[Airport, ...] = (
    Airport("RUH", "Riyadh", "الرياض"),
    Airport("JED", "Jeddah", "جدة"),
    Airport("DMM", "Dammam", "الدمام"),
    Airport("DXB", "Dubai", "دبي"),
    Airport("CAI", "Cairo", "القاهرة"),
)

SEED_ALIASES: Tuple[Tuple[str, str], ...] = (
    ("riyadh", "RUH"), ("ruh", "RUH"), ("الرياض", "RUH"), ("raydh", "RUH"), ("reyaadh", "RUH"),
    ("jed", "JED"), ("jeddah", "JED"), ("جدة", "JED"), ("jiddah", "JED"),
    ("dammam", "DMM"), ("dhahran", "DMM"), ("الدمام", "DMM"), ("dmm", "DMM"),
    ("dubai", "DXB"), ("dxb", "DXB"), ("دبي", "DXB"),
    ("cairo", "CAI"), ("cai", "CAI"), ("القاهرة", "CAI"),
)

SEED_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("RUH", "JED"), ("JED", "RUH"),
    ("RUH", "DMM"), ("DMM", "RUH"),
    ("RUH", "DXB"), ("DXB", "RUH"),
    ("RUH", "CAI"), ("CAI", "RUH"),
    ("JED", "DMM"), ("DMM", "JED"),
    ("JED", "CAI"), ("CAI", "JED"),
)


@dataclass(frozen=True)
class InMemoryReferenceDataStore:
    airports: Sequence[Airport] = SEED_AIRPORTS
    aliases: Sequence[Tuple[str, str]] = SEED_ALIASES
    routes: Sequence[Tuple[str, str]] = SEED_ROUTES

    def load_airports(self) -> Iterable[Airport]:
        return self.airports

    def load_aliases(self) -> Iterable[Tuple[str, str]]:
        return self.aliases

    def load_routes(self) -> Iterable[Tuple[str, str]]:
        return self.routes


class AirportsDataStore:
    """
    Builds airport names from the ``airportsdata`` IATA dataset for a fixed
    list of codes. The dataset has no network information, so routes are
    either given explicitly or every ordered pair of the configured codes.
    """

    def __init__(self, codes: Sequence[str], routes: Optional[Iterable[Tuple[str, str]]] = None):
        import airportsdata

        self._dataset = airportsdata.load("IATA")
        self.codes = [c.strip().upper() for c in codes if c.strip()]
        self._routes = list(routes) if routes is not None else list(permutations(self.codes, 2))

    def load_airports(self) -> Iterable[Airport]:
        for code in self.codes:
            entry = self._dataset.get(code)
            if entry is None:
                logger.warning("Unknown IATA code in reference list", extra={"code": code})
                continue
            yield Airport(code, entry.get("city") or entry.get("name"))

    def load_aliases(self) -> Iterable[Tuple[str, str]]:
        for code in self.codes:
            entry = self._dataset.get(code)
            if entry and entry.get("name"):
                yield entry["name"], code

    def load_routes(self) -> Iterable[Tuple[str, str]]:
        return self._routes


# ----------------------------------------------------------------------
# Immutable index
# ----------------------------------------------------------------------
class ReferenceDataIndex:
    """Read-only alias, code and route lookups."""

    def __init__(
        self,
        alias_to_code: Mapping[str, str],
        code_to_aliases: Mapping[str, Tuple[str, ...]],
        routes: FrozenSet[Tuple[str, str]],
    ):
        self._alias_to_code = MappingProxyType(dict(alias_to_code))
        self._code_to_aliases = MappingProxyType(dict(code_to_aliases))
        self._routes = routes
        self._aliases = frozenset(self._alias_to_code)

    @classmethod
    def empty(cls) -> "ReferenceDataIndex":
        return cls({}, {}, frozenset())

    @classmethod
    def build(
        cls,
        airports: Iterable[Airport],
        aliases: Iterable[Tuple[str, str]] = (),
        routes: Iterable[Tuple[str, str]] = (),
    ) -> "ReferenceDataIndex":
        """Airports first (code and both names as aliases), then explicit aliases, then routes."""
        alias_to_code: Dict[str, str] = {}
        code_to_aliases: Dict[str, List[str]] = {}

        def add(alias: Optional[str], code: str) -> None:
            key = normalize_alias(alias)
            if not key:
                return
            alias_to_code[key] = code
            bucket = code_to_aliases.setdefault(code, [])
            if key not in bucket:
                bucket.append(key)

        for airport in airports:
            code = airport.code.strip().upper()
            add(code, code)
            add(airport.name_en, code)
            add(airport.name_ar, code)

        for alias, code in aliases:
            add(alias, code.strip().upper())

        route_set: Set[Tuple[str, str]] = {
            (o.strip().upper(), d.strip().upper()) for o, d in routes
        }

        return cls(
            alias_to_code,
            {code: tuple(values) for code, values in code_to_aliases.items()},
            frozenset(route_set),
        )

    @classmethod
    def from_store(cls, store: ReferenceDataStore) -> "ReferenceDataIndex":
        return cls.build(store.load_airports(), store.load_aliases(), store.load_routes())

    # --- lookups ---------------------------------------------------------

    def code_for_alias(self, text: Optional[str]) -> Optional[str]:
        return self._alias_to_code.get(normalize_alias(text))

    def all_aliases(self) -> FrozenSet[str]:
        return self._aliases

    def aliases_for(self, code: str) -> Tuple[str, ...]:
        return self._code_to_aliases.get(code.strip().upper(), ())

    def is_known_code(self, code: Optional[str]) -> bool:
        return bool(code) and code.strip().upper() in self._code_to_aliases

    def codes(self) -> FrozenSet[str]:
        return frozenset(self._code_to_aliases)

    def is_valid_route(self, origin: str, destination: str) -> bool:
        return (origin.strip().upper(), destination.strip().upper()) in self._routes

    def destinations_from(self, origin: str) -> List[str]:
        origin = origin.strip().upper()
        return sorted(d for o, d in self._routes if o == origin)

    def city_name(self, code: str) -> str:
        """First alias longer than a code, else any non-code alias, else the code."""
        code = code.strip().upper()
        aliases = self._code_to_aliases.get(code, ())
        lowered = code.lower()
        for alias in aliases:
            if alias != lowered and len(alias) > 3:
                return alias.title()
        for alias in aliases:
            if alias != lowered:
                return alias
        return code

    @property
    def alias_count(self) -> int:
        return len(self._alias_to_code)

    @property
    def route_count(self) -> int:
        return len(self._routes)

    def __bool__(self) -> bool:
        return bool(self._alias_to_code)


# ----------------------------------------------------------------------
# Owner of the active index
# ----------------------------------------------------------------------
class ReferenceDataService:
    def __init__(self, store: ReferenceDataStore, index: Optional[ReferenceDataIndex] = None):
        self._store = store
        self._index = index or ReferenceDataIndex.empty()

    @property
    def index(self) -> ReferenceDataIndex:
        return self._index

    def load(self, store: Optional[ReferenceDataStore] = None) -> ReferenceDataIndex:
        """
        Build a fresh index and swap it in. Never raises.

        Passing ``store`` switches the source for this and every later load.
        """
        if store is not None:
            self._store = store
        try:
            index = ReferenceDataIndex.from_store(self._store)
        except Exception:
            REFERENCE_DATA_LOADS.labels(status="error").inc()
            logger.exception(
                "Failed to load reference data; keeping previous index",
                extra={"event": "reference_data_load_failed", "aliases": self._index.alias_count},
            )
            return self._index

        self._index = index
        REFERENCE_DATA_LOADS.labels(status="success").inc()
        REFERENCE_DATA_SIZE.labels(kind="aliases").set(index.alias_count)
        REFERENCE_DATA_SIZE.labels(kind="codes").set(len(index.codes()))
        REFERENCE_DATA_SIZE.labels(kind="routes").set(index.route_count)
        logger.info(
            "Loaded %d aliases and %d routes",
            index.alias_count,
            index.route_count,
            extra={"event": "reference_data_loaded"},
        )
        return index

    async def reload(self, store: Optional[ReferenceDataStore] = None) -> ReferenceDataIndex:
        return await asyncio.to_thread(self.load, store)
