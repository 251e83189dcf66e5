from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from flowrouter.logging_config import get_logger
from flowrouter.models import WebhookLog
from flowrouter.services.bot_service import as_uuid
from flowrouter.services.connection_manager import ConnectionManager

logger = get_logger("webhook_log_service")


def _as_json_document(value: Any) -> Any:
    """JSONB columns take dicts and lists; bare strings and numbers are wrapped."""
    if value is None or isinstance(value, (dict, list)):
        return value
    return {"value": value}


class WebhookLogService:
    """Records the outcome of every outbound webhook and integration call."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def record(
        self,
        bot_id: str,
        state_key: str,
        user_id: int,
        url: str,
        payload: Optional[dict[str, Any]],
        status: Optional[int],
        response: Any,
        error: Optional[str],
        retry_count: int = 0,
    ) -> bool:
        statement = insert(WebhookLog).values(
            bot_id=as_uuid(bot_id),
            state_key=state_key,
            telegram_user_id=user_id,
            webhook_url=url,
            request_payload=payload,
            response_status=status,
            response_body=_as_json_document(response),
            error_message=error,
            retry_count=retry_count,
        )

        async def _insert(session: AsyncSession) -> None:
            await session.execute(statement)

        try:
            await self.connections.transaction(_insert)
            return True
        except Exception as exc:
            logger.warning(
                "Failed to write webhook log",
                extra={"context": {"bot_id": bot_id, "state": state_key, "url": url, "error": str(exc)}},
            )
            return False
