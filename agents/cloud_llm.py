# NOTE:
# Retries, circuit breaking and metrics for this provider are applied by
# LanguageModelGateway (agents/llm_router.py), once per logical request.
# This module only talks to the OpenAI-compatible API and normalizes the reply.
import asyncio
import logging
import time
from typing import Optional

from openai import APIConnectionError, AsyncOpenAI, RateLimitError

from core.exceptions import ProviderError
from core.request_context import get_request_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 256


class CloudLLMError(ProviderError):
    """Malformed or empty completion from the cloud provider."""
    pass


class OpenAIProvider:
    """Chat-completions provider for OpenAI or any OpenAI-compatible endpoint."""

    name = "openai"
    retry_exceptions = (RateLimitError, APIConnectionError, asyncio.TimeoutError)

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        temperature: float = 0.0,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None and not api_key:
            raise RuntimeError("OPENAI_API_KEY missing")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url or None)

    @classmethod
    def from_settings(cls, settings) -> "OpenAIProvider":
        return cls(
            api_key=settings.openai_api_key,
            model=settings.cloud_llm_model,
            base_url=settings.openai_base_url,
            timeout=settings.cloud_llm_timeout,
            temperature=settings.cloud_llm_temperature,
        )

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        start = time.monotonic()
        response = await asyncio.wait_for(
            self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ),
            timeout=self.timeout,
        )

        if not getattr(response, "choices", None):
            raise CloudLLMError("Malformed response: missing choices")
        message = getattr(response.choices[0], "message", None)
        content = getattr(message, "content", None)
        if not content:
            raise CloudLLMError("Empty completion")

        usage = getattr(response, "usage", None)
        logger.info("Cloud LLM success", extra={
            "request_id": get_request_id(),
            "provider": self.name,
            "model": self.model,
            "latency_sec": round(time.monotonic() - start, 3),
            "total_tokens": getattr(usage, "total_tokens", None),
        })
        return content

    async def close(self) -> None:
        await self._client.close()
        logger.info("Cloud provider client closed", extra={"provider": self.name})
