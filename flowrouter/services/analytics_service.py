"""Append-only analytics events. Failures are logged and never reach the caller."""

from enum import Enum
from typing import Any, Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from flowrouter.logging_config import get_logger
from flowrouter.models import AnalyticsEvent
from flowrouter.services.bot_service import as_uuid
from flowrouter.services.connection_manager import ConnectionManager

logger = get_logger("analytics_service")


class AnalyticsEventType(str, Enum):
    BOT_START = "bot_start"
    BUTTON_CLICK = "button_click"
    STATE_TRANSITION = "state_transition"
    CONTACT_SHARED = "contact_shared"
    EMAIL_SHARED = "email_shared"


def build_event_insert(
    bot_id: str,
    user_id: int,
    event_type: AnalyticsEventType,
    *,
    update_id: Optional[int] = None,
    state_from: Optional[str] = None,
    state_to: Optional[str] = None,
    button_text: Optional[str] = None,
    data: Optional[dict[str, Any]] = None,
):
    """INSERT that is a no-op when the same update already produced this event type."""
    return (
        insert(AnalyticsEvent)
        .values(
            bot_id=as_uuid(bot_id),
            telegram_user_id=user_id,
            source_update_id=update_id,
            event_type=event_type.value,
            state_from=state_from,
            state_to=state_to,
            button_text=button_text,
            event_data=data or {},
        )
        .on_conflict_do_nothing(index_elements=["bot_id", "source_update_id", "event_type"])
    )


class AnalyticsService:
    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def log_event(
        self,
        bot_id: str,
        user_id: int,
        event_type: AnalyticsEventType,
        **fields: Any,
    ) -> bool:
        statement = build_event_insert(bot_id, user_id, event_type, **fields)

        async def _insert(session: AsyncSession) -> None:
            await session.execute(statement)

        try:
            await self.connections.transaction(_insert)
            return True
        except Exception as exc:
            logger.warning(
                "Failed to log analytics event",
                extra={"context": {"bot_id": bot_id, "event_type": event_type.value, "error": str(exc)}},
            )
            return False
