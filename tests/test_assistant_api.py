"""Tests for the reading assistant HTTP API."""

import json

import pytest
from conftest import make_scripted
from httpx import ASGITransport, AsyncClient

from app.gateway.errors import NetworkError
from app.gateway.orchestrator import AIOrchestrator
from app.gateway.types import AIProvider, AIServiceConfig, CacheConfig
from app.main import app
from app.services.conversation import InMemoryConversationStore

GEMINI = AIProvider.GEMINI
DEEPSEEK = AIProvider.DEEPSEEK


def _events(body: str) -> list[tuple[str, dict]]:
    """Split an SSE body into (event name, JSON payload) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        name, data = "message", None
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line.removeprefix("event: ")
            elif line.startswith("data: "):
                data = json.loads(line.removeprefix("data: "))
        events.append((name, data))
    return events


async def _client_for(adapters):
    app.state.orchestrator = AIOrchestrator(adapters, AIServiceConfig(cache=CacheConfig(enabled=False)))
    app.state.conversation_store = InMemoryConversationStore()
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
async def client():
    primary = await make_scripted(GEMINI, priority=1, script=["Ishmael narrates it."])
    backup = await make_scripted(DEEPSEEK, priority=2)
    async with await _client_for([primary, backup]) as ac:
        yield ac
    app.state.orchestrator = None


@pytest.fixture
async def failing_client():
    broken = await make_scripted(
        GEMINI,
        script=[NetworkError("down", GEMINI)],
        stream_script=[[NetworkError("down", GEMINI)]],
    )
    async with await _client_for([broken]) as ac:
        yield ac
    app.state.orchestrator = None


async def test_ask(client: AsyncClient):
    resp = await client.post(
        "/api/v1/assistant/ask",
        json={"conversation_id": "c1", "question": "Who narrates Moby-Dick?"},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["content"] == "Ishmael narrates it."
    assert data["provider"] == "gemini"
    assert data["conversation_id"] == "c1"
    assert data["usage"]["total_tokens"] == 15


async def test_ask_validation(client: AsyncClient):
    resp = await client.post(
        "/api/v1/assistant/ask",
        json={"conversation_id": "c1", "question": "Hi", "temperature": 5},
    )
    assert resp.status_code == 422


async def test_ask_all_providers_failed(failing_client: AsyncClient):
    resp = await failing_client.post(
        "/api/v1/assistant/ask",
        json={"conversation_id": "c1", "question": "Who wrote Dracula?"},
    )
    assert resp.status_code == 503
    detail = resp.json()["detail"]
    assert detail["code"] == "ALL_ATTEMPTS_FAILED"
    assert detail["providers_attempted"] == ["gemini"]


async def test_not_initialized(client: AsyncClient):
    app.state.orchestrator = None
    resp = await client.get("/api/v1/assistant/health")
    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "NOT_INITIALIZED"


async def test_history_and_archive(client: AsyncClient):
    await client.post("/api/v1/assistant/ask", json={"conversation_id": "c1", "question": "Who narrates Moby-Dick?"})

    resp = await client.get("/api/v1/assistant/conversations/c1")
    assert resp.status_code == 200
    assert [m["role"] for m in resp.json()["messages"]] == ["user", "assistant"]

    resp = await client.delete("/api/v1/assistant/conversations/c1")
    assert resp.json() == {"conversation_id": "c1", "archived_messages": 2}

    resp = await client.get("/api/v1/assistant/conversations/c1")
    assert resp.json()["messages"] == []


async def test_stream(client: AsyncClient):
    resp = await client.post(
        "/api/v1/assistant/stream",
        json={"conversation_id": "c1", "question": "Tell me about Ulysses"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = _events(resp.text)
    assert all(name == "message" for name, _ in events)
    assert "".join(data["delta"] for _, data in events) == "Test streaming response"
    assert events[-1][1]["done"] is True
    assert events[-1][1]["usage"]["total_tokens"] == 18


async def test_stream_error_event(failing_client: AsyncClient):
    resp = await failing_client.post(
        "/api/v1/assistant/stream",
        json={"conversation_id": "c1", "question": "Tell me about Ulysses"},
    )
    assert resp.status_code == 200
    events = _events(resp.text)
    assert events == [("error", events[0][1])]
    assert events[0][1]["code"] == "ALL_ATTEMPTS_FAILED"


async def test_health_and_stats(client: AsyncClient):
    resp = await client.get("/api/v1/assistant/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"

    resp = await client.get("/api/v1/assistant/stats")
    data = resp.json()
    assert data["total_requests"] == 0
    assert [c["provider"] for c in data["circuit_breakers"]] == ["gemini", "deepseek"]


async def test_reset_provider(client: AsyncClient):
    resp = await client.post("/api/v1/assistant/providers/gemini/reset")
    assert resp.status_code == 200
    assert resp.json()["state"] == "closed"

    resp = await client.post("/api/v1/assistant/providers/kimi/reset")
    assert resp.status_code == 404

    resp = await client.post("/api/v1/assistant/providers/openai/reset")
    assert resp.status_code == 422


async def test_app_health(client: AsyncClient):
    resp = await client.get("/api/v1/health")
    assert resp.json() == {"status": "ok", "ai_providers": ["gemini", "deepseek"]}
