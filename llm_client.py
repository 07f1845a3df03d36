#!/usr/bin/env python3
"""Summarization provider adapters.

One adapter per supported AI backend, all exposing `complete(system_prompt,
user_message)`. `summarize`, `polish_prompt` and `induce_search_query` build
the request text and pick the adapter for the configured provider. Failures
raise `ProviderError`; there are no retries.
"""
from __future__ import annotations

from asyncio import TimeoutError
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from aiohttp import ClientSession, ClientError, ClientTimeout
from anthropic import AsyncAnthropic, APIError as AnthropicAPIError, APIStatusError as AnthropicStatusError
from openai import AsyncOpenAI, APIError as OpenAIAPIError, APIStatusError as OpenAIStatusError

from config import config, get_logger, mask_secret
from errors import ProviderError
from telemetry import trace_span

logger = get_logger("llm_client")


class LlmProvider(str, Enum):
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"

    @classmethod
    def parse(cls, value: Any) -> "LlmProvider":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ProviderError(f"Unsupported LLM provider: {value}") from None


DEFAULT_MODELS: Dict[LlmProvider, str] = {
    LlmProvider.GEMINI: "gemini-2.0-flash",
    LlmProvider.DEEPSEEK: "deepseek-chat",
    LlmProvider.OPENAI: "gpt-4o-mini",
    LlmProvider.ANTHROPIC: "claude-sonnet-4-5-20250929",
}

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com"
GEMINI_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

DEFAULT_MAX_TOKENS = 4096
QUERY_MAX_TOKENS = 256

POLISH_SYSTEM_PROMPT = (
    "You are a prompt engineer. Rewrite the following prompt to be clearer, more specific, and more "
    "effective for instructing an AI to summarize news items. Return ONLY the improved prompt text, nothing else."
)

QUERY_INDUCTION_PROMPT = (
    "You are a search query generator. Given a news digest prompt, produce a concise web search query "
    "(max 5-8 words) that would find the most relevant recent news articles. "
    "Return ONLY the search query text, nothing else."
)


def build_items_text(items: Iterable[Any]) -> str:
    """One block per item: title, summary and URL on indented lines."""
    return "\n".join(
        f"- {item.title}\n  {item.summary or ''}\n  {item.url}" for item in items
    )


class ProviderAdapter:
    """Base class: one chat/completion call per `complete()`."""

    provider: LlmProvider
    label = "LLM"

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or DEFAULT_MODELS[self.provider]

    async def complete(self, system_prompt: str, user_message: str, *,
                       max_tokens: int = DEFAULT_MAX_TOKENS, subject: str = "text") -> str:
        raise NotImplementedError

    def _require_text(self, text: Any, subject: str) -> str:
        if not isinstance(text, str) or not text:
            raise ProviderError(f"{self.label} response missing {subject}", details={"provider": self.provider.value})
        return text


class GeminiAdapter(ProviderAdapter):
    """Google Gemini over its REST `generateContent` endpoint (no system role; prompts are joined)."""

    provider = LlmProvider.GEMINI
    label = "Gemini"

    def __init__(self, api_key: str, model: Optional[str] = None, session: Optional[ClientSession] = None):
        super().__init__(api_key, model)
        self._session = session

    async def complete(self, system_prompt: str, user_message: str, *,
                       max_tokens: int = DEFAULT_MAX_TOKENS, subject: str = "text") -> str:
        body = {"contents": [{"parts": [{"text": f"{system_prompt}\n\n{user_message}"}]}]}
        url = GEMINI_URL_TEMPLATE.format(model=self.model)
        timeout = ClientTimeout(total=config.PROVIDER_HTTP_TIMEOUT)
        try:
            if self._session is not None:
                data = await self._post(self._session, url, body, timeout)
            else:
                async with ClientSession() as session:
                    data = await self._post(session, url, body, timeout)
        except TimeoutError as e:
            raise ProviderError(f"Gemini API timed out after {config.PROVIDER_HTTP_TIMEOUT}s",
                                details={"provider": self.provider.value}) from e
        except ClientError as e:
            raise ProviderError(f"Gemini API request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Gemini API returned an unreadable response: {e}",
                                details={"provider": self.provider.value}) from e
        return self._require_text(_gemini_text(data), subject)

    async def _post(self, session: ClientSession, url: str, body: Dict[str, Any], timeout: ClientTimeout) -> Dict[str, Any]:
        async with session.post(url, params={"key": self.api_key}, json=body, timeout=timeout) as response:
            if response.status < 200 or response.status >= 300:
                error_body = await response.text()
                raise ProviderError(f"Gemini API failed ({response.status}): {error_body}",
                                    details={"status": response.status})
            return await response.json(content_type=None)


def _gemini_text(data: Any) -> Any:
    """Dig `candidates[0].content.parts[0].text` out of a response, or None."""
    if not isinstance(data, dict):
        return None
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return None
    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
        return None
    return parts[0].get("text")


def _status_error_body(error: Any) -> str:
    response = getattr(error, "response", None)
    text = getattr(response, "text", None)
    if isinstance(text, str) and text:
        return text
    return getattr(error, "message", None) or str(error)


class OpenAICompatibleAdapter(ProviderAdapter):
    """OpenAI and DeepSeek through the `openai` SDK (DeepSeek via its base URL)."""

    def __init__(self, provider: LlmProvider, api_key: str, model: Optional[str] = None,
                 client_override: Optional[Any] = None):
        self.provider = provider
        super().__init__(api_key, model)
        base_url = DEEPSEEK_BASE_URL if provider is LlmProvider.DEEPSEEK else OPENAI_BASE_URL
        self.client = client_override or AsyncOpenAI(
            api_key=api_key, base_url=base_url, max_retries=0, timeout=config.PROVIDER_HTTP_TIMEOUT
        )

    async def complete(self, system_prompt: str, user_message: str, *,
                       max_tokens: int = DEFAULT_MAX_TOKENS, subject: str = "text") -> str:
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
            )
        except OpenAIStatusError as e:
            raise ProviderError(f"LLM API failed ({e.status_code}): {_status_error_body(e)}",
                                details={"status": e.status_code}) from e
        except OpenAIAPIError as e:
            raise ProviderError(f"LLM API request failed: {e}") from e
        choices = getattr(resp, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        return self._require_text(getattr(message, "content", None), subject)


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API through the `anthropic` SDK."""

    provider = LlmProvider.ANTHROPIC
    label = "Anthropic"

    def __init__(self, api_key: str, model: Optional[str] = None, client_override: Optional[Any] = None):
        super().__init__(api_key, model)
        self.client = client_override or AsyncAnthropic(
            api_key=api_key, max_retries=0, timeout=config.PROVIDER_HTTP_TIMEOUT
        )

    async def complete(self, system_prompt: str, user_message: str, *,
                       max_tokens: int = DEFAULT_MAX_TOKENS, subject: str = "text") -> str:
        try:
            resp = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
        except AnthropicStatusError as e:
            raise ProviderError(f"Anthropic API failed ({e.status_code}): {_status_error_body(e)}",
                                details={"status": e.status_code}) from e
        except AnthropicAPIError as e:
            raise ProviderError(f"Anthropic API request failed: {e}") from e
        for block in getattr(resp, "content", None) or []:
            if getattr(block, "type", None) == "text":
                return self._require_text(getattr(block, "text", None), subject)
        return self._require_text(None, subject)


def create_adapter(provider: Any, api_key: str, model: Optional[str] = None, *,
                   session: Optional[ClientSession] = None,
                   client_override: Optional[Any] = None) -> ProviderAdapter:
    """Build the adapter for `provider`, resolving the default model when `model` is empty.

    `session` is used by the REST adapter, `client_override` by the SDK-backed ones.
    """
    provider = LlmProvider.parse(provider)
    logger.debug("Provider %s selected (model=%s, key=%s)", provider.value,
                 model or DEFAULT_MODELS[provider], mask_secret(api_key))
    if provider is LlmProvider.GEMINI:
        return GeminiAdapter(api_key, model, session=session)
    if provider is LlmProvider.ANTHROPIC:
        return AnthropicAdapter(api_key, model, client_override=client_override)
    return OpenAICompatibleAdapter(provider, api_key, model, client_override=client_override)


@trace_span(
    "llm.summarize",
    tracer_name="llm",
    attr_from_args=lambda items, prompt, provider, *a, **k: {
        "llm.provider": str(getattr(provider, "value", provider)),
        "llm.items": len(items),
    },
)
async def summarize(items, prompt: str, provider: Any, api_key: str, model: Optional[str] = None, *,
                    adapter: Optional[ProviderAdapter] = None, **adapter_kwargs) -> str:
    """Summarize `items` following `prompt` with one provider call."""
    adapter = adapter or create_adapter(provider, api_key, model, **adapter_kwargs)
    logger.info("Summarizing %d items with %s (%s)", len(items), adapter.provider.value, adapter.model)
    return await adapter.complete(prompt, f"News items:\n{build_items_text(items)}", subject="summary")


@trace_span("llm.polish", tracer_name="llm")
async def polish_prompt(prompt: str, provider: Any, api_key: str, model: Optional[str] = None, *,
                        adapter: Optional[ProviderAdapter] = None, **adapter_kwargs) -> str:
    """Rewrite a digest prompt for clarity."""
    adapter = adapter or create_adapter(provider, api_key, model, **adapter_kwargs)
    text = await adapter.complete(POLISH_SYSTEM_PROMPT, prompt, subject="text")
    return text.strip()


@trace_span("llm.search_query", tracer_name="llm")
async def induce_search_query(prompt: str, provider: Any, api_key: str, model: Optional[str] = None, *,
                              adapter: Optional[ProviderAdapter] = None, **adapter_kwargs) -> str:
    """Turn a digest prompt into a short web search query."""
    adapter = adapter or create_adapter(provider, api_key, model, **adapter_kwargs)
    text = await adapter.complete(QUERY_INDUCTION_PROMPT, f"Prompt:\n{prompt}",
                                  max_tokens=QUERY_MAX_TOKENS, subject="query text")
    query = text.strip().strip('"').strip("'").strip()
    if not query:
        raise ProviderError(f"{adapter.label} response missing query text")
    return query


__all__ = [
    "LlmProvider",
    "DEFAULT_MODELS",
    "ProviderAdapter",
    "GeminiAdapter",
    "OpenAICompatibleAdapter",
    "AnthropicAdapter",
    "create_adapter",
    "build_items_text",
    "summarize",
    "polish_prompt",
    "induce_search_query",
]
