import asyncio
from types import SimpleNamespace

import pytest

from config import config
from conftest import FakeResponse, FakeSession
from errors import ProviderError
from llm_client import (
    DEFAULT_MODELS,
    POLISH_SYSTEM_PROMPT,
    QUERY_INDUCTION_PROMPT,
    AnthropicAdapter,
    GeminiAdapter,
    LlmProvider,
    OpenAICompatibleAdapter,
    create_adapter,
    induce_search_query,
    polish_prompt,
    summarize,
)
from models import NewsItem


class FakeOpenAIClient:
    """Mimics AsyncOpenAI's chat.completions.create."""

    def __init__(self, content):
        self.calls = []
        client = self

        class _Completions:
            async def create(self, **kwargs):
                client.calls.append(kwargs)
                message = SimpleNamespace(content=content)
                return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])

        self.chat = SimpleNamespace(completions=_Completions())


class FakeAnthropicClient:
    """Mimics AsyncAnthropic's messages.create."""

    def __init__(self, blocks):
        self.calls = []
        client = self

        class _Messages:
            async def create(self, **kwargs):
                client.calls.append(kwargs)
                return SimpleNamespace(content=blocks)

        self.messages = _Messages()


ITEMS = [
    NewsItem(title="Chip shortage eases", url="https://example.com/chips", summary="Supply is recovering."),
    NewsItem(title="New rover lands", url="https://example.com/rover"),
]


def test_provider_parse_and_default_models():
    assert LlmProvider.parse(" OpenAI ") is LlmProvider.OPENAI
    with pytest.raises(ProviderError, match="Unsupported LLM provider: mistral"):
        LlmProvider.parse("mistral")
    assert create_adapter("deepseek", "key", client_override=FakeOpenAIClient("x")).model == DEFAULT_MODELS[LlmProvider.DEEPSEEK]
    assert create_adapter("openai", "key", "gpt-custom", client_override=FakeOpenAIClient("x")).model == "gpt-custom"


def test_create_adapter_picks_backend():
    assert isinstance(create_adapter("gemini", "key"), GeminiAdapter)
    assert isinstance(create_adapter("anthropic", "key", client_override=FakeAnthropicClient([])), AnthropicAdapter)
    adapter = create_adapter("deepseek", "key", client_override=FakeOpenAIClient("x"))
    assert isinstance(adapter, OpenAICompatibleAdapter)
    assert adapter.provider is LlmProvider.DEEPSEEK


@pytest.mark.asyncio
async def test_summarize_with_openai_compatible_client():
    client = FakeOpenAIClient("Today in tech: chips and rovers.")
    summary = await summarize(ITEMS, "Summarize briefly.", "openai", "key", client_override=client)
    assert summary == "Today in tech: chips and rovers."
    messages = client.calls[0]["messages"]
    assert messages[0] == {"role": "system", "content": "Summarize briefly."}
    assert messages[1]["content"] == (
        "News items:\n"
        "- Chip shortage eases\n  Supply is recovering.\n  https://example.com/chips\n"
        "- New rover lands\n  \n  https://example.com/rover"
    )


@pytest.mark.asyncio
async def test_missing_summary_text_raises():
    with pytest.raises(ProviderError, match="response missing summary"):
        await summarize(ITEMS, "Summarize.", "openai", "key", client_override=FakeOpenAIClient(None))


@pytest.mark.asyncio
async def test_anthropic_summary_and_query_induction():
    client = FakeAnthropicClient([SimpleNamespace(type="text", text='"rover landing news"')])
    query = await induce_search_query("Space news digest", "anthropic", "key", client_override=client)
    assert query == "rover landing news"
    call = client.calls[0]
    assert call["system"] == QUERY_INDUCTION_PROMPT
    assert call["max_tokens"] == 256
    assert call["messages"] == [{"role": "user", "content": "Prompt:\nSpace news digest"}]


@pytest.mark.asyncio
async def test_anthropic_without_text_block_raises():
    client = FakeAnthropicClient([SimpleNamespace(type="tool_use", id="x")])
    with pytest.raises(ProviderError, match="Anthropic response missing summary"):
        await summarize(ITEMS, "Summarize.", "anthropic", "key", client_override=client)


@pytest.mark.asyncio
async def test_polish_prompt_strips_whitespace():
    client = FakeOpenAIClient("  A clearer prompt.\n")
    assert await polish_prompt("make it good", "openai", "key", client_override=client) == "A clearer prompt."
    assert client.calls[0]["messages"][0]["content"] == POLISH_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_gemini_rest_call_and_error():
    ok = FakeResponse(payload={"candidates": [{"content": {"parts": [{"text": "Gemini summary"}]}}]})
    failing = FakeResponse(status=429, body="quota exceeded")
    session = FakeSession(ok, failing)
    adapter = create_adapter("gemini", "g-key", session=session)

    assert await summarize(ITEMS, "Summarize.", "gemini", "g-key", adapter=adapter) == "Gemini summary"
    request = session.requests[0]
    assert request["params"] == {"key": "g-key"}
    assert "gemini-2.0-flash:generateContent" in request["url"]
    assert request["json"]["contents"][0]["parts"][0]["text"].startswith("Summarize.\n\nNews items:\n")

    with pytest.raises(ProviderError, match=r"Gemini API failed \(429\): quota exceeded"):
        await summarize(ITEMS, "Summarize.", "gemini", "g-key", adapter=adapter)


@pytest.mark.asyncio
async def test_gemini_timeout_and_garbled_body_raise_provider_error(monkeypatch):
    monkeypatch.setattr(config, "PROVIDER_HTTP_TIMEOUT", 7)
    session = FakeSession(
        FakeResponse(error=asyncio.TimeoutError()),
        FakeResponse(body="<html>gateway</html>"),
        FakeResponse(payload=["not", "an", "object"]),
    )
    adapter = create_adapter("gemini", "g-key", session=session)

    with pytest.raises(ProviderError, match=r"Gemini API timed out after 7s"):
        await summarize(ITEMS, "Summarize.", "gemini", "g-key", adapter=adapter)
    with pytest.raises(ProviderError, match="Gemini API returned an unreadable response"):
        await summarize(ITEMS, "Summarize.", "gemini", "g-key", adapter=adapter)
    with pytest.raises(ProviderError, match="Gemini response missing summary"):
        await summarize(ITEMS, "Summarize.", "gemini", "g-key", adapter=adapter)
