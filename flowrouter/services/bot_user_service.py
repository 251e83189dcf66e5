from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from flowrouter.logging_config import get_logger
from flowrouter.models import BotUser
from flowrouter.schemas.telegram import TelegramUser
from flowrouter.services.bot_service import as_uuid
from flowrouter.services.connection_manager import ConnectionManager

logger = get_logger("bot_user_service")

PROFILE_FIELDS = ("first_name", "last_name", "username", "language_code", "phone_number", "email")


def build_user_upsert(bot_id: str, user: TelegramUser):
    """Insert on first contact, otherwise refresh the profile and bump the interaction count."""
    statement = insert(BotUser).values(
        bot_id=as_uuid(bot_id),
        telegram_user_id=user.id,
        first_name=user.first_name or None,
        last_name=user.last_name,
        username=user.username,
        language_code=user.language_code,
        interaction_count=1,
    )
    excluded = statement.excluded
    return statement.on_conflict_do_update(
        index_elements=[BotUser.bot_id, BotUser.telegram_user_id],
        set_={
            "first_name": func.coalesce(excluded.first_name, BotUser.first_name),
            "last_name": func.coalesce(excluded.last_name, BotUser.last_name),
            "username": func.coalesce(excluded.username, BotUser.username),
            "language_code": func.coalesce(excluded.language_code, BotUser.language_code),
            "interaction_count": BotUser.interaction_count + 1,
            "last_interaction_at": func.now(),
        },
    ).returning(BotUser.interaction_count)


class BotUserRepository:
    """Upserts of per-bot user profiles collected from updates."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def upsert(self, bot_id: str, user: TelegramUser) -> int:
        """Returns the interaction count after this update (1 on first contact)."""
        statement = build_user_upsert(bot_id, user)

        async def _upsert(session: AsyncSession) -> int:
            result = await session.execute(statement)
            return int(result.scalar_one())

        return await self.connections.transaction(_upsert)

    async def update_contact(
        self,
        bot_id: str,
        user_id: int,
        *,
        phone_number: Optional[str] = None,
        email: Optional[str] = None,
    ) -> None:
        values: dict[str, Any] = {"last_interaction_at": func.now()}
        if phone_number is not None:
            values["phone_number"] = phone_number
        if email is not None:
            values["email"] = email
        statement = (
            update(BotUser)
            .where(BotUser.bot_id == as_uuid(bot_id), BotUser.telegram_user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async def _update(session: AsyncSession) -> None:
            await session.execute(statement)

        await self.connections.transaction(_update)

    async def get_profile(self, bot_id: str, user_id: int) -> dict[str, Any]:
        async def _load(session: AsyncSession) -> dict[str, Any]:
            result = await session.execute(
                select(BotUser).where(BotUser.bot_id == as_uuid(bot_id), BotUser.telegram_user_id == user_id)
            )
            user = result.scalars().first()
            return {field: getattr(user, field) for field in PROFILE_FIELDS} if user is not None else {}

        try:
            return await self.connections.transaction(_load)
        except Exception as exc:
            logger.warning(
                "Failed to load user profile",
                extra={"context": {"bot_id": bot_id, "user_id": user_id, "error": str(exc)}},
            )
            return {}
