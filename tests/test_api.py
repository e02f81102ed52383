import json

import pytest
from fastapi.testclient import TestClient

from config import MSG_RATE_LIMITED, MSG_STREAM_OVERLOADED
from main import app, get_chat_service
from rate_limiter import RateLimiter
from request_queue import RequestQueue

from conftest import FakeStore, make_product


@pytest.fixture
def client_for():
    """TestClient без lifespan: сервис подставляется через dependency_overrides."""

    def _client(service) -> TestClient:
        app.dependency_overrides[get_chat_service] = lambda: service
        return TestClient(app)

    yield _client
    app.dependency_overrides.clear()


def sse_events(body: str) -> list[str]:
    return [line[len("data: "):] for line in body.split("\n\n") if line.startswith("data: ")]


class TestChatEndpoint:
    def test_greeting(self, client_for, service):
        response = client_for(service).post("/api/chat", json={"message": "Привет", "sessionId": "abc"})

        assert response.status_code == 200
        data = response.json()
        assert data["content"] == "Здравствуйте! Чем могу помочь?"
        assert data["cached"] is True
        assert data["attachments"] == []

    def test_empty_message_is_rejected(self, client_for, service):
        response = client_for(service).post("/api/chat", json={"message": "   "})

        assert response.status_code == 400
        assert response.json() == {"message": "message is required"}

    def test_product_card_without_cached_flag(self, client_for, make_service):
        service = make_service(store=FakeStore(products=[make_product("AB123")]))

        data = client_for(service).post("/api/chat", json={"message": "артикул AB123"}).json()

        assert json.loads(data["content"])["data"]["vendorCode"] == "AB123"
        assert "cached" not in data

    def test_rate_limited(self, client_for, make_service):
        service = make_service(rate_limiter=RateLimiter({"chat": {"window": 60, "max_requests": 1}}))
        client = client_for(service)

        client.post("/api/chat", json={"message": "Привет"})
        response = client.post("/api/chat", json={"message": "Привет"})

        assert response.status_code == 429
        assert response.json()["message"] == MSG_RATE_LIMITED
        assert response.json()["retryAfter"] > 0
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in response.headers

    def test_overloaded(self, client_for, make_service):
        service = make_service(queue=RequestQueue(max_queue_size=0))

        response = client_for(service).post("/api/chat", json={"message": "Привет"})

        assert response.status_code == 503
        assert "estimatedWait" in response.json()


class TestStreamEndpoint:
    def test_sse_format(self, client_for, service):
        response = client_for(service).post(
            "/api/chat/stream",
            json={"message": "Расскажи о ламинате", "sessionId": "s1"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert "x-ratelimit-limit" in response.headers

        events = sse_events(response.text)
        assert events[-1] == "[DONE]"
        assert [json.loads(e)["content"] for e in events[:-1]] == ["Раз", "два"]
        assert response.text.endswith("data: [DONE]\n\n")

    def test_connection_limit(self, client_for, make_service):
        service = make_service(max_streams=0)

        response = client_for(service).post("/api/chat/stream", json={"message": "Привет"})

        assert response.status_code == 503
        assert response.json() == {"message": MSG_STREAM_OVERLOADED, "activeConnections": 0}


class TestSessionEndpoints:
    def test_save_and_load(self, client_for, service):
        client = client_for(service)
        body = {
            "sessionId": "s-42",
            "userEmail": "dealer@example.com",
            "messages": [{"role": "user", "content": "Где каталог?"}],
        }

        saved = client.post("/api/chat/session", json=body)
        loaded = client.get("/api/chat/session", params={"sessionId": "s-42"})

        assert saved.status_code == 200
        assert loaded.status_code == 200
        data = loaded.json()
        assert data["sessionId"] == "s-42"
        assert data["userEmail"] == "dealer@example.com"
        assert data["messages"][0]["content"] == "Где каталог?"
        assert data["isActive"] is True

    def test_missing_session_id(self, client_for, service):
        assert client_for(service).get("/api/chat/session").status_code == 400

    def test_unknown_session(self, client_for, service):
        response = client_for(service).get("/api/chat/session", params={"sessionId": "nope"})
        assert response.status_code == 404


class TestAdminAndHealth:
    def test_health(self, client_for, service):
        data = client_for(service).get("/health").json()

        assert data["status"] == "ok"
        assert data["llm"]["model"] == "model-standard"
        assert set(data["ai_queue"]) >= {"queue_length", "active_requests", "max_concurrent", "stats"}
        assert data["streams"]["active"] == 0
        assert "ai_response_cache" in data["cache"]

    def test_warm_cache(self, client_for, service, fake_store):
        data = client_for(service).post("/api/admin/cache/warm").json()

        assert data["success"] is True
        assert data["results"]["ai_cache"]["pre_warmed"] == 3
        assert fake_store.reloads == 1

    def test_cache_stats(self, client_for, service):
        data = client_for(service).get("/api/admin/cache").json()
        assert data["article_cache"]["size"] == 0
        assert "timestamp" in data

    def test_llm_probe_uses_overrides(self, client_for, service):
        response = client_for(service).post("/api/admin/llm/test", json={"model": "gpt-probe"})
        assert response.json() == {"success": True, "message": "gpt-probe"}
