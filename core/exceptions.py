# core/exceptions.py
"""
Centralized exception definitions for the flight assistant.

Domain errors (entity extraction, route validation) are the only ones the
conversation layer turns into user-facing questions or apologies. Everything
else is infrastructure failure and is reduced to a generic reply by the
orchestrator.
"""
from typing import List, Optional, Tuple


# ============================================================
# Base Exceptions
# ============================================================

class FlightAssistantError(Exception):
    """
    Root base exception for the entire application.
    All custom exceptions should inherit from this.
    """
    pass


class LLMError(FlightAssistantError):
    """
    Base exception for all LLM-related failures
    (cloud or local).
    """
    pass


class ToolError(FlightAssistantError):
    """
    Base exception for external tool/API failures
    (flight search, reference data store).
    """
    pass


# ============================================================
# Provider-Specific
# ============================================================

class ProviderError(LLMError):
    """
    Raised when the underlying provider (OpenAI, Ollama)
    returns a malformed or invalid response.
    """
    pass


class AllBackendsFailed(LLMError):
    """
    Raised when every provider in the chain failed.

    ``errors`` keeps one (provider_name, exception) pair per attempted
    provider, in the order they were tried.
    """

    def __init__(self, errors: List[Tuple[str, BaseException]]):
        self.errors = list(errors)
        if self.errors:
            detail = "; ".join(f"{name}: {type(exc).__name__}: {exc}" for name, exc in self.errors)
        else:
            detail = "no providers configured"
        super().__init__(f"All LLM backends failed ({detail})")


class FlightSearchError(ToolError):
    """Raised when the flight search provider fails after retries."""
    pass


# ============================================================
# Conversation / Resolution
# ============================================================

class EntityExtractionError(FlightAssistantError):
    """
    Extraction or place resolution failed.

    Resumable when ``pending_context`` is set: fields are merely missing and
    the next turn can fill them in. Terminal otherwise (unparseable model
    output, or a place name no stage could resolve; ``entity`` then names it).
    """

    def __init__(self, message: str, pending_context=None, entity: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.pending_context = pending_context
        self.entity = entity

    @property
    def resumable(self) -> bool:
        return self.pending_context is not None


class RouteValidationError(FlightAssistantError):
    """Both codes resolved but the pair is not a served route."""

    def __init__(self, message: str, origin: Optional[str] = None, destination: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.origin = origin
        self.destination = destination
