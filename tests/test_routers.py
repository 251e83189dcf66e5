import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from conftest import BOT_ID, FakeTelegram
from fastapi.testclient import TestClient

from flowrouter.config import Settings
from flowrouter.exceptions import DependencyUnavailableError, NotFoundError, PayloadTooLargeError
from flowrouter.main import app
from flowrouter.routers.webhook import _read_body
from flowrouter.services.bot_service import BotRecord
from flowrouter.services.broadcast_pipeline import RunSummary
from flowrouter.services.dialogue_engine import UpdateOutcome
from flowrouter.services.memory_store import MemoryStore
from flowrouter.services.rate_limiter import RateLimiter, RateLimitRule
from flowrouter.services.schema_cache import CachedDefinition

SECRET = "tenant-secret"
INTERNAL = {"X-Internal-Secret": "internal-secret"}

UPDATE = {
    "update_id": 900,
    "message": {
        "message_id": 1,
        "date": 1702000000,
        "chat": {"id": 77, "type": "private"},
        "from": {"id": 77, "first_name": "Ann"},
        "text": "/start",
        "some_future_field": {"kept": True},
    },
}


def webhook_headers(secret=SECRET):
    return {"X-Telegram-Bot-Api-Secret-Token": secret} if secret else {}


@pytest.fixture
def container(definition):
    settings = Settings(
        _env_file=None,
        max_payload_bytes=2048,
        internal_secret="internal-secret",
        encryption_key="k" * 32,
    )
    bots = AsyncMock()
    bots.get_bot.return_value = BotRecord(id=BOT_ID, token="enc", webhook_secret=SECRET, definition=None)
    schema_cache = AsyncMock()
    schema_cache.get.return_value = CachedDefinition(definition=definition, version=1, source="cache")
    schema_cache.invalidate.return_value = True
    engine = AsyncMock()
    engine.handle_update.return_value = UpdateOutcome.RENDERED
    pipeline = AsyncMock()
    pipeline.run.return_value = RunSummary(broadcast_id="b-1", claimed=3, sent=3, completed=True, stop_reason="completed")

    return SimpleNamespace(
        settings=settings,
        bots=bots,
        schema_cache=schema_cache,
        engine=engine,
        broadcast_pipeline=pipeline,
        rate_limiter=RateLimiter(
            None,
            per_bot=RateLimitRule(3, 60),
            global_rule=RateLimitRule(100, 60),
            fallback=MemoryStore(),
            clock=lambda: 1000.0,
        ),
        telegram=Mock(return_value=FakeTelegram()),
        decrypt_token=Mock(return_value="123:plain"),
        http_client=None,
    )


@pytest.fixture
def client(container):
    app.state.container = container
    yield TestClient(app)
    app.state.container = None


class TestWebhookEndpoint:
    def test_routes_update_to_engine(self, client, container, definition):
        response = client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers())

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["detail"] == "rendered"
        ctx, update = container.engine.handle_update.await_args.args
        assert ctx.bot_id == BOT_ID
        assert ctx.bot_token == "123:plain"
        assert ctx.definition is definition
        assert update.message.text == "/start"
        container.decrypt_token.assert_called_once_with("enc")

    def test_malformed_bot_id(self, client, container):
        response = client.post("/webhook/not-a-uuid", json=UPDATE, headers=webhook_headers())

        assert response.status_code == 400
        container.bots.get_bot.assert_not_awaited()

    def test_malformed_body(self, client):
        response = client.post(
            f"/webhook/{BOT_ID}",
            content=b"{not json",
            headers={**webhook_headers(), "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_missing_update_id(self, client):
        response = client.post(f"/webhook/{BOT_ID}", json={"message": {}}, headers=webhook_headers())
        assert response.status_code == 400

    def test_missing_secret(self, client, container):
        response = client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers(None))

        assert response.status_code == 401
        container.bots.get_bot.assert_not_awaited()

    def test_wrong_secret(self, client, container):
        response = client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers("guess"))

        assert response.status_code == 401
        container.engine.handle_update.assert_not_awaited()

    def test_unknown_bot(self, client, container):
        container.bots.get_bot.return_value = None
        response = client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers())
        assert response.status_code == 404

    def test_payload_too_large(self, client, container):
        body = {**UPDATE, "padding": "x" * 4096}
        response = client.post(f"/webhook/{BOT_ID}", json=body, headers=webhook_headers())

        assert response.status_code == 413
        container.bots.get_bot.assert_not_awaited()

    def test_chunked_payload_too_large(self, client, container):
        def chunks():
            yield b'{"update_id": 900, "padding": "'
            for _ in range(8):
                yield b"x" * 512
            yield b'"}'

        response = client.post(f"/webhook/{BOT_ID}", content=chunks(), headers=webhook_headers())

        assert response.status_code == 413
        container.bots.get_bot.assert_not_awaited()
        container.engine.handle_update.assert_not_awaited()

    def test_rate_limited(self, client, container):
        for _ in range(3):
            assert client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers()).status_code == 200

        response = client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers())

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "20"
        assert container.bots.get_bot.await_count == 3

    def test_dependency_outage_is_acknowledged(self, client, container):
        container.bots.get_bot.side_effect = DependencyUnavailableError("postgres", "postgres unavailable")

        response = client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers())

        assert response.status_code == 200
        assert response.json() == {"ok": False, "error": "dependency_unavailable", "detail": None}

    def test_processing_error_is_acknowledged(self, client, container):
        container.engine.handle_update.side_effect = RuntimeError("redis connection lost")

        response = client.post(f"/webhook/{BOT_ID}", json=UPDATE, headers=webhook_headers())

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert response.json()["error"] == "cache_error"

    def test_get_reports_status(self, client):
        response = client.get(f"/webhook/{BOT_ID}")
        assert response.status_code == 200
        assert response.json()["valid"] is True


class StreamingRequest:
    def __init__(self, chunks, headers=None):
        self.headers = headers or {}
        self._chunks = chunks
        self.consumed = 0

    async def stream(self):
        for chunk in self._chunks:
            self.consumed += 1
            yield chunk


class TestReadBody:
    def test_stops_reading_once_over_limit(self):
        request = StreamingRequest([b"a" * 600] * 10)

        with pytest.raises(PayloadTooLargeError):
            asyncio.run(_read_body(request, 1024))

        assert request.consumed == 2

    def test_declared_length_rejected_before_reading(self):
        request = StreamingRequest([b"{}"], headers={"content-length": "5000"})

        with pytest.raises(PayloadTooLargeError):
            asyncio.run(_read_body(request, 1024))

        assert request.consumed == 0

    def test_joins_chunks_within_limit(self):
        request = StreamingRequest([b'{"update_id":', b" 1}"])
        assert asyncio.run(_read_body(request, 1024)) == b'{"update_id": 1}'


class TestInternalEndpoints:
    def test_requires_secret(self, client, container):
        response = client.post("/internal/broadcasts/b-1/process", headers={"X-Internal-Secret": "nope"})

        assert response.status_code == 401
        container.broadcast_pipeline.run.assert_not_awaited()

    def test_broadcast_accepted(self, client, container):
        response = client.post("/internal/broadcasts/b-1/process", headers=INTERNAL)

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "broadcast_id": "b-1"}
        container.broadcast_pipeline.run.assert_awaited_once_with("b-1")

    def test_broadcast_wait_returns_summary(self, client):
        response = client.post("/internal/broadcasts/b-1/process?wait=true", headers=INTERNAL)

        assert response.status_code == 200
        assert response.json()["sent"] == 3
        assert response.json()["completed"] is True

    def test_broadcast_not_found(self, client, container):
        container.broadcast_pipeline.run.side_effect = NotFoundError("Broadcast b-1 not found")
        response = client.post("/internal/broadcasts/b-1/process?wait=true", headers=INTERNAL)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_broadcast_dependency_unavailable(self, client, container):
        container.broadcast_pipeline.run.side_effect = DependencyUnavailableError("postgres")
        response = client.post("/internal/broadcasts/b-1/process?wait=true", headers=INTERNAL)

        assert response.status_code == 503

    def test_schema_invalidate(self, client, container):
        response = client.post(f"/internal/bots/{BOT_ID}/schema/invalidate", headers=INTERNAL)

        assert response.status_code == 200
        assert response.json() == {"bot_id": BOT_ID, "invalidated": True}
        container.schema_cache.invalidate.assert_awaited_once_with(BOT_ID)

    def test_test_webhook(self, client, container):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"stored": True})

        container.http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        response = client.post(
            "/internal/test-webhook",
            json={"url": "https://hooks.example.com/test", "headers": {"X-Team": "growth"}},
            headers=INTERNAL,
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": 201, "response": {"stored": True}, "error": None}
        assert seen[0].headers["X-Team"] == "growth"

    def test_test_webhook_reports_failure(self, client, container):
        container.http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        )

        response = client.post("/internal/test-webhook", json={"url": "https://hooks.example.com/x"}, headers=INTERNAL)

        assert response.json()["success"] is False
        assert response.json()["status"] == 500
        assert response.json()["error"] == "HTTP 500"


class TestHealthEndpoint:
    def test_degraded_is_200(self, client, monkeypatch, container):
        container.connections = Mock()
        container.fallback_store = MemoryStore()
        container.side_effects = Mock()
        monkeypatch.setattr(
            "flowrouter.routers.health.get_system_health", AsyncMock(return_value={"status": "degraded"})
        )

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_error_is_503(self, client, monkeypatch, container):
        container.connections = Mock()
        container.fallback_store = MemoryStore()
        container.side_effects = Mock()
        monkeypatch.setattr("flowrouter.routers.health.get_system_health", AsyncMock(return_value={"status": "error"}))

        assert client.get("/health").status_code == 503

    def test_not_ready(self, client):
        app.state.container = None
        assert client.get("/health").status_code == 503
