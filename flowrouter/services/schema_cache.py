"""Read-through cache of dialogue definitions keyed by bot id."""

import json
from dataclasses import dataclass
from typing import Any, Optional

from flowrouter.exceptions import DefinitionError
from flowrouter.logging_config import get_logger
from flowrouter.schemas.dialogue import DialogueDefinition, parse_definition
from flowrouter.services.bot_service import BotRepository
from flowrouter.services.connection_manager import ConnectionManager

logger = get_logger("schema_cache")


def schema_cache_key(bot_id: str) -> str:
    return f"bot:{bot_id}:schema"


@dataclass
class CachedDefinition:
    definition: DialogueDefinition
    version: int
    source: str  # cache or database


class SchemaCache:
    def __init__(self, connections: Optional[ConnectionManager], bots: BotRepository, ttl_seconds: int = 300):
        self.connections = connections
        self.bots = bots
        self.ttl_seconds = ttl_seconds
        self.hits = 0
        self.misses = 0
        self.errors = 0

    def _redis_enabled(self) -> bool:
        return self.connections is not None and self.connections.redis_available

    async def _read_cache(self, bot_id: str) -> Optional[dict[str, Any]]:
        if not self._redis_enabled():
            return None
        try:
            raw = await self.connections.redis_call("get", schema_cache_key(bot_id))
        except Exception as exc:
            self.errors += 1
            logger.warning("Schema cache read failed", extra={"context": {"bot_id": bot_id, "error": str(exc)}})
            return None
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return entry if isinstance(entry, dict) and "schema" in entry else None

    async def _write_cache(self, bot_id: str, raw_definition: dict[str, Any], version: int) -> None:
        if not self._redis_enabled():
            return
        entry = json.dumps({"schema": raw_definition, "schema_version": version}, ensure_ascii=False)
        try:
            await self.connections.redis_call("set", schema_cache_key(bot_id), entry, ex=self.ttl_seconds)
        except Exception as exc:
            self.errors += 1
            logger.warning("Schema cache write failed", extra={"context": {"bot_id": bot_id, "error": str(exc)}})

    async def get(self, bot_id: str, min_version: Optional[int] = None) -> Optional[CachedDefinition]:
        """Cached definition, or the stored one on miss. ``None`` when the bot has no definition.

        Raises DefinitionError when the stored definition is invalid.
        """
        entry = await self._read_cache(bot_id)
        if entry is not None:
            version = int(entry.get("schema_version") or 0)
            if min_version is None or version >= min_version:
                try:
                    definition = parse_definition(entry["schema"])
                except DefinitionError as exc:
                    logger.warning(
                        "Discarding invalid cached definition",
                        extra={"context": {"bot_id": bot_id, "error": str(exc)}},
                    )
                else:
                    self.hits += 1
                    return CachedDefinition(definition=definition, version=version, source="cache")

        self.misses += 1
        loaded = await self.bots.get_definition(bot_id)
        if loaded is None:
            return None
        raw_definition, version = loaded
        definition = parse_definition(raw_definition)
        await self._write_cache(bot_id, raw_definition, version)
        return CachedDefinition(definition=definition, version=version, source="database")

    async def invalidate(self, bot_id: str) -> bool:
        if not self._redis_enabled():
            return False
        try:
            await self.connections.redis_call("delete", schema_cache_key(bot_id))
        except Exception as exc:
            self.errors += 1
            logger.warning("Schema cache invalidation failed", extra={"context": {"bot_id": bot_id, "error": str(exc)}})
            return False
        logger.info("Schema cache invalidated", extra={"context": {"bot_id": bot_id}})
        return True

    def stats(self) -> dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "errors": self.errors}
