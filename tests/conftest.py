import itertools
from typing import Any, Optional

import pytest

from flowrouter.config import Settings
from flowrouter.schemas.dialogue import parse_definition
from flowrouter.services.memory_store import MemoryStore
from flowrouter.services.pending_input import PendingInputTracker
from flowrouter.services.state_store import HybridStore, UpdateDeduplicator, UserStateStore

BOT_ID = "0b6f7c1e-2d4a-4c8e-9f10-1a2b3c4d5e6f"


class FakeRedis:
    """Dict-backed stand-in for the handful of redis.asyncio commands the router uses."""

    def __init__(self):
        self.data: dict[str, Any] = {}
        self.expirations: dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expirations[key] = ex
        return True

    async def delete(self, key):
        existed = key in self.data
        self.data.pop(key, None)
        return int(existed)

    async def incr(self, key):
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    async def expire(self, key, seconds, nx=False):
        if nx and key in self.expirations:
            return False
        self.expirations[key] = seconds
        return True

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ping(self):
        return True


class FakePipeline:
    """Queues commands and applies them in order on ``execute``, like MULTI/EXEC."""

    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.queued: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.queued = []

    def __getattr__(self, method):
        def queue(*args, **kwargs):
            self.queued.append((method, args, kwargs))
            return self

        return queue

    async def execute(self):
        return [await getattr(self.redis, method)(*args, **kwargs) for method, args, kwargs in self.queued]


class FakeConnections:
    """Exposes the redis side of ConnectionManager; ``down`` simulates an outage."""

    def __init__(self, redis: Optional[FakeRedis] = None):
        self.redis = redis
        self.down = False
        self.calls = 0

    @property
    def redis_available(self) -> bool:
        return self.redis is not None

    async def redis_call(self, method, *args, **kwargs):
        self.calls += 1
        if self.down:
            raise ConnectionError("ECONNREFUSED redis")
        return await getattr(self.redis, method)(*args, **kwargs)

    async def redis_transaction(self, queue):
        self.calls += 1
        if self.down:
            raise ConnectionError("ECONNREFUSED redis")
        async with self.redis.pipeline(transaction=True) as pipe:
            queue(pipe)
            return await pipe.execute()


class FakeTelegram:
    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._message_ids = itertools.count(1000)

    def sent(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def send_message(self, chat_id, text, reply_markup=None, parse_mode="HTML"):
        self.calls.append(
            ("send_message", {"chat_id": chat_id, "text": text, "reply_markup": reply_markup, "parse_mode": parse_mode})
        )
        return {"message_id": next(self._message_ids)}

    async def send_media(self, chat_id, media, caption=None, parse_mode="HTML", reply_markup=None):
        self.calls.append(
            ("send_media", {"chat_id": chat_id, "media": media, "caption": caption, "reply_markup": reply_markup})
        )
        return {"message_id": next(self._message_ids)}

    async def send_media_group(self, chat_id, media, parse_mode="HTML"):
        self.calls.append(("send_media_group", {"chat_id": chat_id, "media": media}))
        return [{"message_id": next(self._message_ids)}]

    async def answer_callback_query(self, callback_query_id, text=None):
        self.calls.append(("answer_callback_query", {"callback_query_id": callback_query_id, "text": text}))
        return True


class FakeBotUsers:
    def __init__(self):
        self.interactions: dict[int, int] = {}
        self.contacts: dict[int, dict[str, Any]] = {}

    async def upsert(self, bot_id, user):
        self.interactions[user.id] = self.interactions.get(user.id, 0) + 1
        return self.interactions[user.id]

    async def update_contact(self, bot_id, user_id, *, phone_number=None, email=None):
        record = self.contacts.setdefault(user_id, {})
        if phone_number is not None:
            record["phone_number"] = phone_number
        if email is not None:
            record["email"] = email

    async def get_profile(self, bot_id, user_id):
        return dict(self.contacts.get(user_id, {}))


class FakeAnalytics:
    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def log_event(self, bot_id, user_id, event_type, **fields):
        self.events.append({"bot_id": bot_id, "user_id": user_id, "event_type": event_type, **fields})
        return True

    def types(self) -> list[str]:
        return [event["event_type"].value for event in self.events]


class FakeEngagement:
    """Broadcast lookups used for engagement attribution."""

    def __init__(self, by_message: Optional[dict[int, str]] = None, recent: Optional[str] = None):
        self.by_message = by_message or {}
        self.recent = recent
        self.engagements: list[tuple[str, bool]] = []

    async def find_by_telegram_message(self, bot_id, user_id, telegram_message_id):
        return self.by_message.get(telegram_message_id)

    async def find_recent_sent(self, bot_id, user_id, window_hours):
        return self.recent

    async def record_engagement(self, broadcast_message_id, click):
        self.engagements.append((broadcast_message_id, click))


class FakeWebhookLogs:
    def __init__(self):
        self.records: list[tuple] = []

    async def record(self, *args, **kwargs):
        self.records.append(args)
        return True


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        encryption_key="k" * 32,
        internal_secret="internal-secret",
        database_url="postgresql+asyncpg://u:p@db.internal:5432/flowrouter",
        redis_url="redis://cache.internal:6379/0",
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_connections(fake_redis):
    return FakeConnections(fake_redis)


@pytest.fixture
def hybrid_store(fake_connections):
    return HybridStore(fake_connections, MemoryStore(max_entries=100))


@pytest.fixture
def user_states(hybrid_store):
    return UserStateStore(hybrid_store)


@pytest.fixture
def pending_tracker(hybrid_store):
    return PendingInputTracker(hybrid_store)


@pytest.fixture
def deduplicator(hybrid_store):
    return UpdateDeduplicator(hybrid_store)


@pytest.fixture
def raw_definition():
    return {
        "version": 1,
        "initialState": "start",
        "states": {
            "start": {
                "message": "Welcome!",
                "buttons": [
                    {"text": "Menu", "nextState": "menu"},
                    {"type": "url", "text": "Site", "url": "https://example.com"},
                ],
            },
            "menu": {
                "message": "Share your phone",
                "buttons": [{"type": "request_contact", "text": "Share", "nextState": "ask_email"}],
            },
            "ask_email": {
                "message": "We also need your email",
                "buttons": [{"type": "request_email", "text": "Email", "nextState": "done"}],
            },
            "done": {"message": "All set", "buttons": [{"text": "Again", "nextState": "start"}]},
        },
    }


@pytest.fixture
def definition(raw_definition):
    return parse_definition(raw_definition)
