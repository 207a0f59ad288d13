# NOTE:
# Local fallback provider. Non-streaming only: extraction and
# disambiguation prompts need the whole JSON / code before parsing.
import json
import logging
import time
from typing import Optional

import httpx

from core.exceptions import ProviderError
from core.http_client import get_client
from core.request_context import get_request_id

logger = logging.getLogger(__name__)

# Truncate bodies in logs
MAX_LOG_BODY = 2000


class OllamaError(ProviderError):
    """Ollama-specific error."""
    pass


class RateLimitError(OllamaError):
    """Raised when Ollama returns 429 Too Many Requests."""
    def __init__(self, retry_after: Optional[str] = None):
        super().__init__("Rate limited (429)")
        self.retry_after = retry_after


class OllamaProvider:
    name = "ollama"
    retry_exceptions = (httpx.TimeoutException, httpx.ConnectError, RateLimitError)

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1",
        timeout: float = 30.0,
        temperature: float = 0.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not model:
            raise RuntimeError("OLLAMA_MODEL not configured")
        try:
            httpx.URL(base_url)
        except Exception as e:
            raise RuntimeError(f"Invalid OLLAMA_BASE_URL: {base_url}") from e
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "OllamaProvider":
        return cls(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            timeout=settings.local_llm_timeout,
        )

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        if not prompt:
            raise ValueError("Prompt cannot be empty")

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "options": {"temperature": self.temperature},
            "stream": False,
        }

        request_id = get_request_id()
        headers = {"X-Request-ID": request_id} if request_id else {}
        client = self._client or get_client()
        start = time.monotonic()

        response = await client.post(
            f"{self.base_url}/api/chat",
            json=payload,
            headers=headers,
            timeout=httpx.Timeout(connect=5.0, read=self.timeout, write=10.0, pool=5.0),
        )
        body_text = response.text

        if response.status_code == 404:
            if "model" in body_text.lower():
                raise OllamaError(f"Model not found: {self.model}")
            raise OllamaError(f"HTTP 404: {body_text[:MAX_LOG_BODY]}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning("Ollama rate limited", extra={"status": 429, "retry_after": retry_after, "model": self.model})
            raise RateLimitError(retry_after=retry_after)

        if response.status_code >= 400:
            logger.error("Ollama HTTP error", extra={
                "status": response.status_code,
                "body": body_text[:MAX_LOG_BODY],
                "model": self.model,
            })
            # 5xx are retried by the gateway's retry filter
            response.raise_for_status()

        try:
            data = json.loads(body_text)
        except json.JSONDecodeError as e:
            raise OllamaError(f"Invalid JSON from Ollama: {e}") from e

        content = (data.get("message") or {}).get("content")
        if not content:
            raise OllamaError("Malformed response: missing message.content")

        logger.info("Ollama request succeeded", extra={
            "model": self.model,
            "latency_sec": round(time.monotonic() - start, 3),
        })
        return content

    async def health_check(self) -> bool:
        """Reachable and the configured model is pulled."""
        client = self._client or get_client()
        try:
            response = await client.get(f"{self.base_url}/api/tags", timeout=httpx.Timeout(5.0, connect=2.0))
            response.raise_for_status()
            models = response.json().get("models", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Ollama health check failed", extra={"error": str(e)})
            return False

        names = {m.get("name") or m.get("model") for m in models if isinstance(m, dict)}
        prefix = self.model.split(":")[0]
        return any(name and name.startswith(prefix) for name in names)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
