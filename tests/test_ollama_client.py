import json

import httpx
import pytest

from agents.ollama_client import OllamaError, OllamaProvider, RateLimitError


def provider_with(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaProvider(base_url="http://ollama.test", model="llama3.1", client=client)


@pytest.mark.asyncio
async def test_generate_posts_chat_request():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "RUH"}})

    provider = provider_with(handler)
    assert await provider.generate("code for riyadh?", system="answer briefly") == "RUH"

    assert seen["url"] == "http://ollama.test/api/chat"
    assert seen["body"]["stream"] is False
    assert seen["body"]["messages"][0] == {"role": "system", "content": "answer briefly"}
    await provider.close()


@pytest.mark.asyncio
async def test_missing_model_is_reported():
    provider = provider_with(lambda request: httpx.Response(404, text='{"error":"model \'llama3.1\' not found"}'))
    with pytest.raises(OllamaError, match="Model not found"):
        await provider.generate("hi")


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after():
    provider = provider_with(lambda request: httpx.Response(429, headers={"Retry-After": "3"}))
    with pytest.raises(RateLimitError) as exc:
        await provider.generate("hi")
    assert exc.value.retry_after == "3"


@pytest.mark.asyncio
async def test_server_error_raises_http_status_error():
    provider = provider_with(lambda request: httpx.Response(503, text="overloaded"))
    with pytest.raises(httpx.HTTPStatusError):
        await provider.generate("hi")


@pytest.mark.asyncio
async def test_malformed_body():
    provider = provider_with(lambda request: httpx.Response(200, json={"done": True}))
    with pytest.raises(OllamaError, match="message.content"):
        await provider.generate("hi")


@pytest.mark.asyncio
async def test_health_check_matches_model_prefix():
    provider = provider_with(lambda request: httpx.Response(200, json={"models": [{"name": "llama3.1:8b"}]}))
    assert await provider.health_check()

    provider = provider_with(lambda request: httpx.Response(200, json={"models": [{"name": "mistral:7b"}]}))
    assert not await provider.health_check()
