import logging
import time
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Type

from agents.cloud_llm import OpenAIProvider
from agents.ollama_client import OllamaProvider
from core.circuit_breaker import AsyncCircuitBreaker, CircuitBreakerOpenError, get_circuit_breaker
from core.exceptions import AllBackendsFailed
from core.metrics import (
    LLM_GATEWAY_FAILURES,
    LLM_LATENCY,
    increment_llm_failure,
    increment_llm_skipped,
    increment_llm_success,
)
from core.request_context import get_request_id
from core.retry import RetryConfig, retry_async

# Module logger
logger = logging.getLogger(__name__)


class LLMProvider(Protocol):
    name: str
    retry_exceptions: Tuple[Type[BaseException], ...]

    async def generate(self, prompt: str, system: Optional[str] = None) -> str: ...


DEFAULT_RETRY = RetryConfig(retries=2, base_delay=0.5, max_backoff=4.0)


class LanguageModelGateway:
    """
    Ordered chain of text-generation providers.

    Each provider is tried in turn, with its own retries and circuit breaker;
    the first answer wins. When every provider fails, ``AllBackendsFailed``
    carries one error per provider so the caller can see the whole story.
    """

    def __init__(
        self,
        providers: Sequence[LLMProvider],
        retry_config: Optional[RetryConfig] = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
    ):
        self.retry_config = retry_config or DEFAULT_RETRY
        self._chain: List[Tuple[LLMProvider, AsyncCircuitBreaker]] = [
            (
                provider,
                get_circuit_breaker(
                    f"llm_{provider.name}",
                    failure_threshold=failure_threshold,
                    recovery_timeout=recovery_timeout,
                ),
            )
            for provider in providers
        ]

    @property
    def provider_names(self) -> List[str]:
        return [provider.name for provider, _ in self._chain]

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        request_id = get_request_id()
        errors: List[Tuple[str, BaseException]] = []

        for idx, (provider, breaker) in enumerate(self._chain):
            start = time.monotonic()

            async def attempt(provider=provider):
                return await provider.generate(prompt, system=system)

            try:
                text = await breaker.call(
                    lambda: retry_async(
                        attempt,
                        config=self.retry_config,
                        request_id=request_id,
                        retry_exceptions=provider.retry_exceptions,
                    )
                )
            except CircuitBreakerOpenError as e:
                increment_llm_skipped(provider.name)
                logger.warning("Skipping provider with open circuit", extra={
                    "event": "llm_provider_skipped",
                    "provider": provider.name,
                })
                errors.append((provider.name, e))
                continue
            except Exception as e:
                increment_llm_failure(provider.name)
                logger.warning("LLM provider failed, trying next", extra={
                    "event": "llm_provider_failed",
                    "provider": provider.name,
                    "error_type": type(e).__name__,
                    "error": str(e),
                })
                errors.append((provider.name, e))
                continue
            finally:
                LLM_LATENCY.labels(provider=provider.name).observe(time.monotonic() - start)

            increment_llm_success(provider.name)
            logger.info("LLM backend success", extra={
                "event": "llm_success",
                "provider": provider.name,
                "escalated": idx > 0,
                "latency_sec": round(time.monotonic() - start, 3),
            })
            return text

        LLM_GATEWAY_FAILURES.inc()
        logger.error("All LLM backends failed", extra={
            "event": "llm_all_failed",
            "providers": [name for name, _ in errors],
        })
        raise AllBackendsFailed(errors)

    async def health(self) -> Dict[str, str]:
        return {provider.name: breaker.state for provider, breaker in self._chain}

    async def close(self) -> None:
        for provider, _ in self._chain:
            close = getattr(provider, "close", None)
            if close is not None:
                await close()


# ----------------------------------------------------------------------
# Construction from settings
# ----------------------------------------------------------------------
_PROVIDER_FACTORIES = {
    "openai": OpenAIProvider.from_settings,
    "ollama": OllamaProvider.from_settings,
}


def build_gateway(settings) -> LanguageModelGateway:
    """Instantiate the configured chain, skipping providers that cannot start."""
    providers: List[LLMProvider] = []
    for name in settings.llm_provider_chain:
        factory = _PROVIDER_FACTORIES.get(name)
        if factory is None:
            logger.warning("Unknown LLM provider %s in chain", name)
            continue
        try:
            providers.append(factory(settings))
            logger.info("Initialised LLM provider", extra={"provider": name})
        except RuntimeError as e:
            logger.warning("Skipping provider %s due to initialisation error: %s", name, e)

    if not providers:
        # Keep starting up; every generate() will raise AllBackendsFailed
        logger.error("No LLM providers could be initialised. Check API keys and LLM_PROVIDER_CHAIN.")
    return LanguageModelGateway(providers)
