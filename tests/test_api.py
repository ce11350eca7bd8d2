import pytest
from fastapi.testclient import TestClient

from companion.application.api.api_server import create_app
from companion.application.bootstrap import build_container
from companion.infrastructure.config.settings import (
    CompanionSettings, LLMSettings, ReasoningSettings, WebSearchSettings
)
from companion.infrastructure.vector.in_memory_store import InMemoryVectorStore

from conftest import FakeProvider, HashEmbedder, WordCounter


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider("Fake", ["Nice to meet you!"])


@pytest.fixture
def client(provider):
    settings = CompanionSettings(
        llm=LLMSettings(default_provider="Fake", fallback_order=["Fake"]),
        reasoning=ReasoningSettings(enabled=False),
        web_search=WebSearchSettings(enabled=False),
    )
    container = build_container(
        settings,
        providers=[provider],
        embedder=HashEmbedder(),
        vector_store=InMemoryVectorStore(),
        token_counter=WordCounter(),
    )
    with TestClient(create_app(container)) as test_client:
        yield test_client


def test_post_message_returns_reply(client, provider) -> None:
    response = client.post(
        "/api/v1/conversations/555/messages",
        json={"author_id": "u1", "server_id": "g1", "content": "I prefer green tea"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["content"] == "Nice to meet you!"
    assert body["provider"] == "Fake"
    assert body["usage"]["total_tokens"] == 15
    assert provider.options[0].conversation_id == "555"


def test_empty_content_is_rejected(client) -> None:
    response = client.post("/api/v1/conversations/555/messages", json={"author_id": "u1", "content": ""})

    assert response.status_code == 422


def test_user_memories_can_be_listed_and_erased(client) -> None:
    client.post("/api/v1/conversations/555/messages", json={"author_id": "u1", "content": "I prefer green tea"})
    client.portal.call(client.app.state.container.background.drain)

    listed = client.get("/api/v1/users/u1/memories")
    assert listed.status_code == 200
    assert [m["content"] for m in listed.json()] == ["I prefer green tea"]
    assert listed.json()[0]["scope"] == "user"

    erased = client.delete("/api/v1/users/u1/memories")
    assert erased.json() == {"user_id": "u1", "deleted": 1}

    assert client.get("/api/v1/users/u1/memories").json() == []


def test_health_reports_gate_registry(client) -> None:
    client.post("/api/v1/conversations/a/messages", json={"author_id": "u1", "content": "hello"})

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["open_conversations"] >= 1
