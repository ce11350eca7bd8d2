import json
from typing import Callable, List

import httpx
import pytest

from companion.domain.errors import ProviderError, ProviderTimeout
from companion.domain.models.conversation import CompletionOptions, ConversationMessage
from companion.infrastructure.config.settings import (
    EmbeddingSettings, LLMSettings, ProviderSettings, WebSearchSettings
)
from companion.infrastructure.embeddings.openai_embedding import OpenAIEmbeddingProvider
from companion.infrastructure.llm.base_provider import HttpChatProvider
from companion.infrastructure.llm.gemini_provider import GeminiProvider
from companion.infrastructure.llm.grok_provider import GrokProvider
from companion.infrastructure.llm.openai_provider import OpenAIProvider
from companion.infrastructure.llm.provider_registry import build_providers
from companion.infrastructure.search.web_search import DuckDuckGoSearch, GoogleSearch, build_web_search


class Recorder:
    """MockTransport handler that keeps every request it answers"""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def body(self, index: int = -1):
        return json.loads(self.requests[index].content)


def _settings(**overrides) -> ProviderSettings:
    values = dict(api_key="sk-test", base_url="https://llm.test/v1", default_model="base-model")
    values.update(overrides)
    return ProviderSettings(**values)


def _openai_body(content: str = "Hi!", cached: int = 40) -> dict:
    return {
        "id": "chatcmpl-1",
        "model": "gpt-test",
        "choices": [{"message": {"role": "assistant", "content": f"  {content} "}, "finish_reason": "stop"}],
        "usage": {
            "prompt_tokens": 100,
            "completion_tokens": 10,
            "total_tokens": 110,
            "prompt_tokens_details": {"cached_tokens": cached},
        },
    }


MESSAGES = [ConversationMessage.system("persona"), ConversationMessage.user("hello")]


@pytest.mark.asyncio
async def test_openai_request_and_usage_parsing() -> None:
    recorder = Recorder(lambda request: httpx.Response(200, json=_openai_body()))
    provider = OpenAIProvider("OpenAI", _settings(), client=recorder.client())

    result = await provider.complete(MESSAGES, CompletionOptions(max_tokens=50, conversation_id="c1"))

    request = recorder.requests[0]
    assert request.url == "https://llm.test/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-test"
    body = recorder.body()
    assert body["model"] == "base-model"
    assert body["messages"] == [{"role": "system", "content": "persona"}, {"role": "user", "content": "hello"}]
    assert body["max_tokens"] == 50
    assert body["prompt_cache_key"] == "c1"

    assert result.content == "Hi!"
    assert result.model == "gpt-test"
    assert result.usage.cached_prompt_tokens == 40
    assert result.usage.cache_hit_ratio == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_grok_uses_conversation_header_instead_of_cache_key() -> None:
    recorder = Recorder(lambda request: httpx.Response(200, json=_openai_body()))
    provider = GrokProvider("Grok", _settings(), client=recorder.client())

    await provider.complete(MESSAGES, CompletionOptions(conversation_id="c9", model="grok-4"))

    assert recorder.requests[0].headers["x-grok-conv-id"] == "c9"
    body = recorder.body()
    assert "prompt_cache_key" not in body
    assert body["model"] == "grok-4"


@pytest.mark.asyncio
async def test_gemini_maps_roles_and_system_instruction() -> None:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there"}]}, "finishReason": "STOP"}],
            "usageMetadata": {
                "promptTokenCount": 80, "candidatesTokenCount": 5, "totalTokenCount": 85,
                "cachedContentTokenCount": 20,
            },
        })

    recorder = Recorder(respond)
    provider = GeminiProvider("Gemini", _settings(default_model="gemini-test"), client=recorder.client())
    messages = MESSAGES + [
        ConversationMessage.assistant("hey"),
        ConversationMessage.system("memory note", include_in_context=False),
    ]

    result = await provider.complete(messages, CompletionOptions(max_tokens=64))

    request = recorder.requests[0]
    assert request.url == "https://llm.test/v1/models/gemini-test:generateContent"
    assert request.headers["x-goog-api-key"] == "sk-test"
    body = recorder.body()
    assert body["systemInstruction"] == {"parts": [{"text": "persona"}]}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["contents"][-1]["parts"][0]["text"] == "memory note"
    assert body["generationConfig"]["maxOutputTokens"] == 64
    assert result.content == "Hello there"
    assert result.usage.total_tokens == 85
    assert result.usage.cached_prompt_tokens == 20


@pytest.mark.asyncio
async def test_http_error_status_becomes_provider_error() -> None:
    recorder = Recorder(lambda request: httpx.Response(429, text="rate limited"))
    provider = OpenAIProvider("OpenAI", _settings(), client=recorder.client())

    with pytest.raises(ProviderError) as excinfo:
        await provider.complete(MESSAGES, CompletionOptions())

    assert excinfo.value.status_code == 429
    assert "rate limited" in str(excinfo.value)


@pytest.mark.asyncio
async def test_empty_choices_and_non_json_are_provider_errors() -> None:
    empty = OpenAIProvider(
        "OpenAI", _settings(), client=Recorder(lambda r: httpx.Response(200, json={"choices": []})).client()
    )
    garbage = OpenAIProvider(
        "OpenAI", _settings(), client=Recorder(lambda r: httpx.Response(200, text="<html>")).client()
    )

    with pytest.raises(ProviderError):
        await empty.complete(MESSAGES, CompletionOptions())
    with pytest.raises(ProviderError):
        await garbage.complete(MESSAGES, CompletionOptions())


@pytest.mark.asyncio
async def test_transport_timeout_becomes_provider_timeout() -> None:
    def respond(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    provider = OpenAIProvider("OpenAI", _settings(timeout_seconds=3), client=Recorder(respond).client())

    with pytest.raises(ProviderTimeout) as excinfo:
        await provider.complete(MESSAGES, CompletionOptions())

    assert excinfo.value.provider == "OpenAI"
    assert excinfo.value.timeout_seconds == 3


@pytest.mark.asyncio
async def test_availability_probe_is_cached() -> None:
    now = [0.0]
    recorder = Recorder(lambda request: httpx.Response(200, json={"data": []}))
    provider = OpenAIProvider(
        "OpenAI", _settings(probe_ttl_seconds=60), client=recorder.client(), clock=lambda: now[0]
    )

    assert await provider.is_available()
    assert await provider.is_available()
    assert len(recorder.requests) == 1
    assert recorder.requests[0].url == "https://llm.test/v1/models"

    now[0] = 61.0
    assert await provider.is_available()
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_probe_failure_reports_unavailable() -> None:
    def respond(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider = OpenAIProvider("OpenAI", _settings(), client=Recorder(respond).client())

    assert not await provider.is_available()


def test_http_provider_base_requires_complete() -> None:
    with pytest.raises(TypeError):
        HttpChatProvider("Base", _settings(), client=httpx.AsyncClient())


def test_registry_builds_adapters_by_name() -> None:
    settings = LLMSettings(providers={
        "OpenAI": _settings(),
        "xAI": _settings(),
        "Gemini": _settings(),
        "LocalLlama": _settings(api_key=None),
    })

    providers = {p.name: p for p in build_providers(settings, client=httpx.AsyncClient())}

    assert isinstance(providers["OpenAI"], OpenAIProvider)
    assert isinstance(providers["xAI"], GrokProvider)
    assert isinstance(providers["Gemini"], GeminiProvider)
    assert type(providers["LocalLlama"]) is OpenAIProvider
    assert not providers["LocalLlama"].is_configured


@pytest.mark.asyncio
async def test_embedding_provider_returns_vector_or_none() -> None:
    recorder = Recorder(lambda request: httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]}))
    embedder = OpenAIEmbeddingProvider(EmbeddingSettings(api_key="sk-test"), client=recorder.client())

    assert await embedder.embed("hello") == [0.1, 0.2, 0.3]
    assert recorder.body()["model"] == "text-embedding-3-small"

    broken = OpenAIEmbeddingProvider(
        EmbeddingSettings(api_key="sk-test"), client=Recorder(lambda r: httpx.Response(500)).client()
    )
    assert await broken.embed("hello") is None
    assert await OpenAIEmbeddingProvider(EmbeddingSettings()).embed("hello") is None


@pytest.mark.asyncio
async def test_duckduckgo_flattens_related_topics() -> None:
    payload = {
        "Heading": "Chess",
        "AbstractText": "Chess is a board game.",
        "AbstractURL": "https://en.wikipedia.org/wiki/Chess",
        "RelatedTopics": [
            {"Text": "Chess openings - First moves of a game", "FirstURL": "https://duckduckgo.com/Chess_openings"},
            {"Name": "See also", "Topics": [{"Text": "Chess engine - Software", "FirstURL": "https://duckduckgo.com/Engine"}]},
        ],
    }
    recorder = Recorder(lambda request: httpx.Response(200, json=payload))

    result = await DuckDuckGoSearch(client=recorder.client()).search("chess", max_results=3)

    assert recorder.requests[0].url.params["q"] == "chess"
    assert [item.title for item in result.items] == ["Chess", "Chess openings", "Chess engine"]
    assert result.items[1].snippet == "First moves of a game"


@pytest.mark.asyncio
async def test_search_failure_is_reported_not_raised() -> None:
    result = await GoogleSearch("key", "cx", client=Recorder(lambda r: httpx.Response(403)).client()).search("q")

    assert not result.success
    assert result.items == []


def test_web_search_factory() -> None:
    assert build_web_search(WebSearchSettings(enabled=False)) is None
    assert build_web_search(WebSearchSettings(engine="google")) is None
    assert isinstance(build_web_search(WebSearchSettings()), DuckDuckGoSearch)
    assert isinstance(
        build_web_search(WebSearchSettings(engine="google", api_key="k", search_engine_id="cx")), GoogleSearch
    )
