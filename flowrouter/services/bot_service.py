import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowrouter.models import Bot
from flowrouter.services.connection_manager import ConnectionManager


@dataclass
class BotRecord:
    id: str
    token: str  # encrypted
    webhook_secret: Optional[str]
    definition: Optional[dict[str, Any]]
    schema_version: int = 0


def as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _to_record(bot: Bot) -> BotRecord:
    return BotRecord(
        id=str(bot.id),
        token=bot.token,
        webhook_secret=bot.webhook_secret,
        definition=bot.definition,
        schema_version=int(bot.schema_version or 0),
    )


class BotRepository:
    """Read-only access to tenant bots."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def _first(self, *criteria: Any) -> Optional[BotRecord]:
        async def _load(session: AsyncSession) -> Optional[BotRecord]:
            result = await session.execute(select(Bot).where(*criteria).limit(1))
            bot = result.scalars().first()
            return _to_record(bot) if bot is not None else None

        return await self.connections.transaction(_load)

    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        key = as_uuid(bot_id)
        if key is None:
            return None
        return await self._first(Bot.id == key)

    async def get_bot_by_secret(self, webhook_secret: str) -> Optional[BotRecord]:
        if not webhook_secret:
            return None
        return await self._first(Bot.webhook_secret == webhook_secret)

    async def get_definition(self, bot_id: str) -> Optional[tuple[dict[str, Any], int]]:
        key = as_uuid(bot_id)
        if key is None:
            return None

        async def _load(session: AsyncSession) -> Optional[tuple[dict[str, Any], int]]:
            result = await session.execute(select(Bot.definition, Bot.schema_version).where(Bot.id == key))
            row = result.first()
            if row is None or row[0] is None:
                return None
            definition, schema_version = row
            return definition, int(schema_version or 0)

        return await self.connections.transaction(_load)
