"""Tests for the FastAPI presentation layer (routes, auth, SSE framing)."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import jwt
import pytest
from conftest import DA_ANSWER, FakeDecider, FakeGenerator, make_settings
from fastapi.testclient import TestClient

from marketplace_assistant.application.orchestrator import StreamOrchestrator
from marketplace_assistant.application.retrieval import RetrievalEngine
from marketplace_assistant.application.value_analyzer import ValueAnalyzer
from marketplace_assistant.infrastructure.embedding_provider import HashingEmbeddingProvider
from marketplace_assistant.infrastructure.tools import ToolRegistry
from marketplace_assistant.presentation.routes.chat import GENERATION_FAILED

SECRET = "test-secret-for-hs256-signing-key"


def _install_orchestrator(app, generator=None, decider=None) -> None:
    """Replace the real agents with fakes, keeping the real stores."""
    embedder = HashingEmbeddingProvider()
    store = app.state.knowledge_store
    app.state.orchestrator = StreamOrchestrator(
        retrieval=RetrievalEngine(store, embedder, background=app.state.background),
        cache=app.state.response_cache,
        value_analyzer=ValueAnalyzer(store, background=app.state.background),
        generator=generator or FakeGenerator(),
        tool_decider=decider or FakeDecider(),
        tools=ToolRegistry(),
        embedder=embedder,
    )


def _client(tmp_path: Path, **overrides):
    settings = make_settings(tmp_path, **overrides)
    with patch("marketplace_assistant.main.get_settings", return_value=settings):
        from marketplace_assistant.main import app

        with TestClient(app) as c:
            _install_orchestrator(app)
            yield c


def _events(response) -> list:
    """Parse an SSE body into JSON payloads, keeping the [DONE] sentinel as a string."""
    events = []
    for line in response.text.splitlines():
        if not line.startswith("data: "):
            continue
        data = line[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


def _token(sub: str, *, expires_in: timedelta = timedelta(hours=1), secret: str = SECRET) -> str:
    now = datetime.now(UTC)
    return jwt.encode({"sub": sub, "iat": now, "exp": now + expires_in}, secret, algorithm="HS256")


@pytest.fixture()
def client(tmp_path):
    yield from _client(tmp_path)


@pytest.fixture()
def auth_client(tmp_path):
    yield from _client(tmp_path, auth_enabled=True, jwt_secret=SECRET)


class TestHealthEndpoint:
    def test_health_returns_ok(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestChatStreamEndpoint:
    """HTTP-level concerns of /chat/stream; turn logic is covered by the orchestrator tests."""

    def test_streams_content_then_done(self, client: TestClient):
        response = client.post("/chat/stream", json={"message": "what is domain authority?"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response)
        assert events[-1] == "[DONE]"
        assert "".join(e["text"] for e in events if e != "[DONE]" and e["type"] == "content") == "".join(
            DA_ANSWER
        )
        done = [e for e in events if e != "[DONE]" and e["type"] == "done"]
        assert done == [{"type": "done", "cached": False, "context_ids": [], "tool": None}]

    def test_second_identical_query_is_cached(self, client: TestClient):
        client.post("/chat/stream", json={"message": "what is domain authority?"})
        events = _events(client.post("/chat/stream", json={"message": "What is domain authority?"}))

        done = [e for e in events if e != "[DONE]" and e["type"] == "done"]
        assert done[0]["cached"] is True

    def test_tool_event_for_filter_request(self, client: TestClient):
        _install_orchestrator(
            client.app,
            decider=FakeDecider(
                '{"shouldExecuteTool": true, "toolName": "apply_filters", '
                '"parameters": {"niche": "tech", "priceMax": 500}, "confidence": 0.9}'
            ),
        )

        events = _events(
            client.post(
                "/chat/stream",
                json={"message": "show me cheap tech sites", "currentFilters": {"country": "us"}},
            )
        )

        tools = [e for e in events if e != "[DONE]" and e["type"] == "tool"]
        assert len(tools) == 1
        assert tools[0]["name"] == "apply_filters"
        assert tools[0]["result"]["success"] is True

    def test_generation_failure_emits_error_event(self, client: TestClient):
        _install_orchestrator(client.app, generator=FakeGenerator(["partial "], error=RuntimeError("boom")))

        response = client.post("/chat/stream", json={"message": "what is DR?"})

        assert response.status_code == 200
        events = _events(response)
        assert {"type": "error", "detail": GENERATION_FAILED} in events
        assert events[-1] == "[DONE]"
        assert "boom" not in response.text

    def test_blank_message_rejected(self, client: TestClient):
        response = client.post("/chat/stream", json={"message": "   "})
        assert response.status_code == 422

    def test_missing_message_rejected(self, client: TestClient):
        response = client.post("/chat/stream", json={"history": []})
        assert response.status_code == 422


class TestKnowledgeEndpoints:
    def test_add_and_list(self, client: TestClient):
        created = client.post("/knowledge", json={"content": "My budget is $400 per link"})
        assert created.status_code == 201
        item_id = created.json()["id"]

        listed = client.get("/knowledge").json()
        assert [i["id"] for i in listed] == [item_id]
        assert listed[0]["content_type"] == "preference"
        assert listed[0]["metadata"]["source"] == "profile"

    def test_get_single_item(self, client: TestClient):
        item_id = client.post("/knowledge", json={"content": "I run a travel blog"}).json()["id"]

        response = client.get(f"/knowledge/{item_id}")
        assert response.status_code == 200
        assert response.json()["content"] == "I run a travel blog"
        assert "travel" in response.json()["topics"]

    def test_get_unknown_item_is_404(self, client: TestClient):
        assert client.get("/knowledge/does-not-exist").status_code == 404

    def test_same_fact_twice_returns_same_id(self, client: TestClient):
        first = client.post("/knowledge", json={"content": "I only buy tech sites"}).json()["id"]
        second = client.post("/knowledge", json={"content": "I only buy tech sites"}).json()["id"]
        assert first == second

    def test_empty_content_rejected(self, client: TestClient):
        response = client.post("/knowledge", json={"content": "   "})
        assert response.status_code == 422

    def test_filter_by_content_type(self, client: TestClient):
        client.post("/knowledge", json={"content": "Prefers UK sites", "content_type": "preference"})
        client.post("/knowledge", json={"content": "Asked about DA last week", "content_type": "memory"})

        listed = client.get("/knowledge", params={"content_type": "memory"}).json()
        assert [i["content"] for i in listed] == ["Asked about DA last week"]


class TestCacheEndpoints:
    def test_stats_then_clear(self, client: TestClient):
        client.post("/chat/stream", json={"message": "what is domain authority?"})

        stats = client.get("/cache/stats").json()
        assert stats == {"entries": 1, "active": 1, "total_hits": 0}

        assert client.delete("/cache").json() == {"removed": 1}
        assert client.get("/cache/stats").json()["entries"] == 0


class TestAuth:
    def test_missing_token(self, auth_client: TestClient):
        response = auth_client.get("/knowledge")
        assert response.status_code == 401
        assert "Authorization" in response.json()["detail"]

    def test_expired_token(self, auth_client: TestClient):
        token = _token("user-1", expires_in=timedelta(minutes=-5))
        response = auth_client.get("/knowledge", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_wrong_secret(self, auth_client: TestClient):
        token = _token("user-1", secret="some-other-secret-that-is-long-enough")
        response = auth_client.get("/knowledge", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_knowledge_is_scoped_to_token_subject(self, auth_client: TestClient):
        alice = {"Authorization": f"Bearer {_token('alice')}"}
        bob = {"Authorization": f"Bearer {_token('bob')}"}

        item_id = auth_client.post(
            "/knowledge", json={"content": "Alice prefers finance sites"}, headers=alice
        ).json()["id"]

        assert len(auth_client.get("/knowledge", headers=alice).json()) == 1
        assert auth_client.get("/knowledge", headers=bob).json() == []
        assert auth_client.get(f"/knowledge/{item_id}", headers=bob).status_code == 404
