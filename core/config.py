# core/config.py
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


# ----------------------------------------------------------------------
# Env helpers (malformed values fall back to the default)
# ----------------------------------------------------------------------
def _str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else raw.strip()


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _csv(name: str, default: str) -> Tuple[str, ...]:
    return tuple(p.strip().lower() for p in _str(name, default).split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    # LLM providers, tried in this order
    llm_provider_chain: Tuple[str, ...] = ("openai", "ollama")
    openai_api_key: str = ""
    openai_base_url: str = ""
    cloud_llm_model: str = "gpt-4o-mini"
    cloud_llm_timeout: float = 30.0
    cloud_llm_temperature: float = 0.0
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1"
    local_llm_timeout: float = 30.0

    # Resolution
    fuzzy_match_threshold: int = 2

    # Caches (seconds / entries)
    search_cache_ttl: float = 300.0
    reference_cache_ttl: float = 86400.0
    search_cache_max_size: int = 5000
    reference_cache_max_size: int = 1000
    cache_lock_shards: int = 64

    # Backing services; empty means use the in-process defaults
    database_url: str = ""
    reference_airport_codes: Tuple[str, ...] = field(default_factory=tuple)
    flight_search_base_url: str = ""
    flight_search_api_key: str = ""
    flight_search_timeout: float = 15.0

    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            llm_provider_chain=_csv("LLM_PROVIDER_CHAIN", "openai,ollama"),
            openai_api_key=_str("OPENAI_API_KEY"),
            openai_base_url=_str("OPENAI_BASE_URL"),
            cloud_llm_model=_str("CLOUD_LLM_MODEL", "gpt-4o-mini"),
            cloud_llm_timeout=_float("CLOUD_LLM_TIMEOUT", 30.0),
            cloud_llm_temperature=_float("CLOUD_LLM_TEMPERATURE", 0.0),
            ollama_base_url=_str("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=_str("OLLAMA_MODEL", "llama3.1"),
            local_llm_timeout=_float("LOCAL_LLM_TIMEOUT", 30.0),
            fuzzy_match_threshold=_int("FUZZY_MATCH_THRESHOLD", 2),
            search_cache_ttl=_float("SEARCH_CACHE_TTL", 300.0),
            reference_cache_ttl=_float("REFERENCE_CACHE_TTL", 86400.0),
            search_cache_max_size=_int("SEARCH_CACHE_MAX_SIZE", 5000),
            reference_cache_max_size=_int("REFERENCE_CACHE_MAX_SIZE", 1000),
            cache_lock_shards=_int("CACHE_LOCK_SHARDS", 64),
            database_url=_str("DATABASE_URL"),
            reference_airport_codes=tuple(c.upper() for c in _csv("REFERENCE_AIRPORT_CODES", "")),
            flight_search_base_url=_str("FLIGHT_SEARCH_BASE_URL"),
            flight_search_api_key=_str("FLIGHT_SEARCH_API_KEY"),
            flight_search_timeout=_float("FLIGHT_SEARCH_TIMEOUT", 15.0),
            log_level=_str("LOG_LEVEL", "INFO"),
            log_json=_bool("LOG_JSON", True),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
