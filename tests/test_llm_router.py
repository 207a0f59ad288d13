import types

import pytest

from agents.llm_router import LanguageModelGateway, build_gateway
from core.exceptions import AllBackendsFailed, ProviderError
from core.retry import RetryConfig

NO_WAIT = RetryConfig(retries=2, base_delay=0, jitter=False)


class TransientError(Exception):
    pass


class FakeProvider:
    retry_exceptions = (TransientError,)

    def __init__(self, name, replies):
        self.name = name
        self.replies = list(replies)
        self.calls = 0
        self.closed = False

    async def generate(self, prompt, system=None):
        self.calls += 1
        reply = self.replies.pop(0) if self.replies else ProviderError(f"{self.name} exhausted")
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_first_provider_answers():
    primary = FakeProvider("primary", ["hello"])
    fallback = FakeProvider("fallback", ["unused"])
    gateway = LanguageModelGateway([primary, fallback], retry_config=NO_WAIT)

    assert await gateway.generate("hi") == "hello"
    assert fallback.calls == 0


@pytest.mark.asyncio
async def test_transient_error_is_retried_on_same_provider():
    primary = FakeProvider("primary", [TransientError("blip"), "hello"])
    gateway = LanguageModelGateway([primary], retry_config=NO_WAIT)

    assert await gateway.generate("hi") == "hello"
    assert primary.calls == 2


@pytest.mark.asyncio
async def test_falls_back_in_order():
    primary = FakeProvider("primary", [ProviderError("bad json")])
    fallback = FakeProvider("fallback", ["from fallback"])
    gateway = LanguageModelGateway([primary, fallback], retry_config=NO_WAIT)

    assert await gateway.generate("hi") == "from fallback"
    assert primary.calls == 1


@pytest.mark.asyncio
async def test_all_failures_are_aggregated():
    primary = FakeProvider("primary", [ProviderError("bad json")])
    fallback = FakeProvider("fallback", [RuntimeError("boom")])
    gateway = LanguageModelGateway([primary, fallback], retry_config=NO_WAIT)

    with pytest.raises(AllBackendsFailed) as exc:
        await gateway.generate("hi")

    assert [name for name, _ in exc.value.errors] == ["primary", "fallback"]
    assert "primary: ProviderError: bad json" in str(exc.value)
    assert "fallback: RuntimeError: boom" in str(exc.value)


@pytest.mark.asyncio
async def test_empty_chain_fails():
    with pytest.raises(AllBackendsFailed, match="no providers configured"):
        await LanguageModelGateway([]).generate("hi")


@pytest.mark.asyncio
async def test_open_circuit_skips_provider():
    primary = FakeProvider("primary", [ProviderError("down")] * 5)
    fallback = FakeProvider("fallback", ["ok"] * 5)
    gateway = LanguageModelGateway([primary, fallback], retry_config=NO_WAIT, failure_threshold=2)

    for _ in range(3):
        assert await gateway.generate("hi") == "ok"

    # third request never reached the primary
    assert primary.calls == 2
    health = await gateway.health()
    assert health == {"primary": "open", "fallback": "closed"}


@pytest.mark.asyncio
async def test_close_closes_every_provider():
    providers = [FakeProvider("a", []), FakeProvider("b", [])]
    await LanguageModelGateway(providers).close()
    assert all(p.closed for p in providers)


def test_build_gateway_skips_unconfigured_providers():
    settings = types.SimpleNamespace(
        llm_provider_chain=("openai", "mystery", "ollama"),
        openai_api_key="",
        openai_base_url=None,
        cloud_llm_model="gpt-4o-mini",
        cloud_llm_timeout=30,
        cloud_llm_temperature=0.0,
        ollama_base_url="http://localhost:11434",
        ollama_model="llama3.1",
        local_llm_timeout=30,
    )

    gateway = build_gateway(settings)

    assert gateway.provider_names == ["ollama"]
