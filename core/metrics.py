# core/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# ----------------------------
# LLM Gateway
# ----------------------------

LLM_REQUESTS = Counter(
    "llm_requests_total",
    "Total LLM requests",
    ["provider", "status"]  # success, error, skipped
)

LLM_LATENCY = Histogram(
    "llm_request_latency_seconds",
    "LLM request latency",
    ["provider"]
)

LLM_GATEWAY_FAILURES = Counter(
    "llm_gateway_failures_total",
    "Requests where every provider in the chain failed"
)

# ----------------------------
# Entity Resolution
# ----------------------------

RESOLUTION_STAGE = Counter(
    "place_resolution_total",
    "Place name resolutions by the stage that settled them",
    ["stage"]  # direct, fuzzy, llm, unresolved
)

RESOLUTION_OUTCOMES = Counter(
    "entity_resolution_outcomes_total",
    "Outcome of resolving one user utterance",
    ["outcome"]  # resolved, incomplete, invalid
)

TURN_OUTCOMES = Counter(
    "conversation_turns_total",
    "Conversation turns by the path that answered them",
    ["path"]  # decline, flight_pick, confirmation, recommendation, graph, clarification, apology, error
)

# ----------------------------
# Route-search cache
# ----------------------------

CACHE_LOOKUPS = Counter(
    "cache_lookups_total",
    "Cache lookups",
    ["cache", "result"]  # hit, miss, joined
)

CACHE_FETCHES = Counter(
    "cache_fetches_total",
    "Fetches started on cache miss",
    ["cache", "status"]  # success, error
)

CACHE_FETCH_LATENCY = Histogram(
    "cache_fetch_latency_seconds",
    "Latency of the fetch behind a cache miss",
    ["cache"]
)

# ----------------------------
# Tools
# ----------------------------

TOOL_REQUESTS = Counter(
    "tool_requests_total",
    "Total tool API requests",
    ["tool", "status"]
)

TOOL_LATENCY = Histogram(
    "tool_request_latency_seconds",
    "Tool request latency",
    ["tool"]
)

TOOL_RETRIES = Counter(
    "tool_retries_total",
    "Total tool API retries",
    ["tool"]
)

# ----------------------------
# Reference data / breakers
# ----------------------------

REFERENCE_DATA_SIZE = Gauge(
    "reference_data_entries",
    "Entries in the active reference data index",
    ["kind"]  # aliases, codes, routes
)

REFERENCE_DATA_LOADS = Counter(
    "reference_data_loads_total",
    "Reference data (re)loads",
    ["status"]
)

CIRCUIT_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed,1=open,2=half_open)",
    ["service"]
)


# ----------------------------
# Helper Functions
# ----------------------------

def increment_llm_success(provider: str) -> None:
    LLM_REQUESTS.labels(provider=provider, status="success").inc()


def increment_llm_failure(provider: str) -> None:
    LLM_REQUESTS.labels(provider=provider, status="error").inc()


def increment_llm_skipped(provider: str) -> None:
    """Provider skipped because its circuit is open."""
    LLM_REQUESTS.labels(provider=provider, status="skipped").inc()
