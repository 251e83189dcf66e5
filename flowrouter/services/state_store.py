"""Per-user dialogue state and update de-duplication, Redis first with an in-memory fallback."""

import json
from typing import Any, Optional

from flowrouter.logging_config import get_logger
from flowrouter.services.connection_manager import ConnectionManager
from flowrouter.services.memory_store import MemoryStore

logger = get_logger("state_store")


class HybridStore:
    """Same interface whether Redis is reachable or not.

    Every call goes to Redis through the breaker; on failure the bounded
    in-memory store answers instead (degraded mode). Entering and leaving
    degraded mode are each logged once.
    """

    def __init__(self, connections: Optional[ConnectionManager], fallback: MemoryStore):
        self.connections = connections
        self.fallback = fallback
        self.degraded = False

    def _redis_enabled(self) -> bool:
        return self.connections is not None and self.connections.redis_available

    def _degraded(self, operation: str, key: str, exc: Exception) -> None:
        if self.degraded:
            return
        self.degraded = True
        logger.warning(
            "Redis unavailable, using in-memory store",
            extra={"context": {"operation": operation, "key": key, "error": str(exc)}},
        )

    def _recovered(self) -> None:
        if self.degraded:
            self.degraded = False
            logger.info("Redis reachable again, leaving in-memory store")

    async def get(self, key: str) -> Optional[str]:
        if self._redis_enabled():
            try:
                value = await self.connections.redis_call("get", key)
                self._recovered()
                return value
            except Exception as exc:
                self._degraded("get", key, exc)
        return self.fallback.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        if self._redis_enabled():
            try:
                await self.connections.redis_call("set", key, value, ex=ttl)
                self._recovered()
                return
            except Exception as exc:
                self._degraded("set", key, exc)
        self.fallback.set(key, value, ttl)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        if self._redis_enabled():
            try:
                stored = await self.connections.redis_call("set", key, value, ex=ttl, nx=True)
                self._recovered()
                return bool(stored)
            except Exception as exc:
                self._degraded("set_nx", key, exc)
        return self.fallback.set_if_absent(key, value, ttl)

    async def delete(self, key: str) -> None:
        if self._redis_enabled():
            try:
                await self.connections.redis_call("delete", key)
                self._recovered()
            except Exception as exc:
                self._degraded("delete", key, exc)
        self.fallback.delete(key)

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry", extra={"context": {"key": key}})
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        await self.set(key, json.dumps(value, ensure_ascii=False, default=str), ttl)


def user_state_key(bot_id: str, user_id: int) -> str:
    return f"bot:{bot_id}:user:{user_id}:state"


def update_marker_key(bot_id: str, update_id: int) -> str:
    return f"bot:{bot_id}:update:{update_id}"


class UserStateStore:
    """(bot, user) -> current state key, refreshed on every write."""

    def __init__(self, store: HybridStore, ttl_seconds: int = 30 * 24 * 3600):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def get(self, bot_id: str, user_id: int) -> Optional[str]:
        return await self.store.get(user_state_key(bot_id, user_id))

    async def set(self, bot_id: str, user_id: int, state_key: str) -> None:
        await self.store.set(user_state_key(bot_id, user_id), state_key, self.ttl_seconds)

    async def reset(self, bot_id: str, user_id: int) -> None:
        await self.store.delete(user_state_key(bot_id, user_id))


class UpdateDeduplicator:
    """Marks provider update ids so engagement accounting runs once per update."""

    def __init__(self, store: HybridStore, ttl_seconds: int = 24 * 3600):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def mark_processed(self, bot_id: str, update_id: int) -> bool:
        """True only for the first caller with this (bot, update) pair."""
        return await self.store.set_if_absent(update_marker_key(bot_id, update_id), "1", self.ttl_seconds)
