# tests/test_cloud_provider.py
import types

import pytest

from agents.cloud_llm import CloudLLMError, OpenAIProvider


class FakeCompletions:
    def __init__(self, response=None, raise_on_call=None):
        self._response = response
        self._raise = raise_on_call
        self.calls = []

    async def create(self, model, messages, temperature, max_tokens):
        self.calls.append({"model": model, "messages": messages})
        if self._raise:
            raise self._raise
        class Choice:
            def __init__(self, text):
                self.message = types.SimpleNamespace(content=text)
        class Resp:
            def __init__(self, text):
                self.choices = [Choice(text)] if text is not None else []
                self.usage = types.SimpleNamespace(prompt_tokens=1, completion_tokens=1, total_tokens=2)
        return Resp(self._response)


class FakeClient:
    def __init__(self, completions):
        self.chat = types.SimpleNamespace(completions=completions)
        self.closed = False

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_generate_sends_system_and_user_messages():
    completions = FakeCompletions(response='{"origin": "Riyadh"}')
    provider = OpenAIProvider(api_key=None, model="gpt-test", client=FakeClient(completions))

    text = await provider.generate("extract this", system="be terse")

    assert text == '{"origin": "Riyadh"}'
    call = completions.calls[0]
    assert call["model"] == "gpt-test"
    assert [m["role"] for m in call["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_missing_choices_is_provider_error():
    provider = OpenAIProvider(api_key=None, client=FakeClient(FakeCompletions(response=None)))
    with pytest.raises(CloudLLMError):
        await provider.generate("hi")


@pytest.mark.asyncio
async def test_empty_completion_is_provider_error():
    provider = OpenAIProvider(api_key=None, client=FakeClient(FakeCompletions(response="")))
    with pytest.raises(CloudLLMError):
        await provider.generate("hi")


def test_missing_api_key_refuses_to_start():
    with pytest.raises(RuntimeError):
        OpenAIProvider(api_key="")


@pytest.mark.asyncio
async def test_close_closes_client():
    client = FakeClient(FakeCompletions(response="ok"))
    provider = OpenAIProvider(api_key=None, client=client)
    await provider.close()
    assert client.closed
