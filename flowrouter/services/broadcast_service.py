from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowrouter.models import Broadcast, BroadcastMessage
from flowrouter.services.bot_service import as_uuid
from flowrouter.services.connection_manager import ConnectionManager


class BroadcastStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class BroadcastRecord:
    id: str
    bot_id: str
    message: str
    parse_mode: Optional[str]
    media: Optional[dict[str, Any]]
    status: BroadcastStatus
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0


@dataclass
class ClaimedMessage:
    id: str
    telegram_user_id: int


class BroadcastRepository:
    """Relational access for the broadcast pipeline and click attribution."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def _execute(self, *statements: Any) -> None:
        async def _run(session: AsyncSession) -> None:
            for statement in statements:
                await session.execute(statement)

        await self.connections.transaction(_run)

    async def get_broadcast(self, broadcast_id: str) -> Optional[BroadcastRecord]:
        key = as_uuid(broadcast_id)
        if key is None:
            return None

        async def _load(session: AsyncSession) -> Optional[BroadcastRecord]:
            result = await session.execute(select(Broadcast).where(Broadcast.id == key))
            broadcast = result.scalars().first()
            if broadcast is None:
                return None
            return BroadcastRecord(
                id=str(broadcast.id),
                bot_id=str(broadcast.bot_id),
                message=broadcast.message,
                parse_mode=broadcast.parse_mode,
                media=broadcast.media,
                status=BroadcastStatus(broadcast.status),
                total_recipients=int(broadcast.total_recipients or 0),
                sent_count=int(broadcast.sent_count or 0),
                failed_count=int(broadcast.failed_count or 0),
            )

        return await self.connections.transaction(_load)

    async def get_status(self, broadcast_id: str) -> Optional[BroadcastStatus]:
        key = as_uuid(broadcast_id)
        if key is None:
            return None

        async def _load(session: AsyncSession) -> Optional[BroadcastStatus]:
            result = await session.execute(select(Broadcast.status).where(Broadcast.id == key))
            value = result.scalar_one_or_none()
            return BroadcastStatus(value) if value else None

        return await self.connections.transaction(_load)

    async def mark_started(self, broadcast_id: str) -> None:
        await self._execute(
            update(Broadcast)
            .where(Broadcast.id == as_uuid(broadcast_id))
            .values(started_at=func.coalesce(Broadcast.started_at, func.now()), updated_at=func.now())
            .execution_options(synchronize_session=False)
        )

    async def set_status(self, broadcast_id: str, status: BroadcastStatus) -> None:
        finished = status in (BroadcastStatus.COMPLETED, BroadcastStatus.FAILED)
        await self._execute(
            update(Broadcast)
            .where(Broadcast.id == as_uuid(broadcast_id))
            .values(
                status=status.value,
                completed_at=func.now() if finished else Broadcast.completed_at,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )

    async def reset_stale_sending(self, broadcast_id: str, lease_seconds: int) -> int:
        """Return rows stuck in ``sending`` past the lease to ``pending``."""

        async def _reset(session: AsyncSession) -> int:
            result = await session.execute(
                text(
                    """
                    UPDATE broadcast_messages
                    SET status = 'pending',
                        updated_at = NOW()
                    WHERE broadcast_id = CAST(:id AS uuid)
                      AND status = 'sending'
                      AND updated_at < NOW() - make_interval(secs => :lease)
                    """
                ),
                {"id": broadcast_id, "lease": float(lease_seconds)},
            )
            return int(result.rowcount or 0)

        return await self.connections.transaction(_reset)

    async def claim_batch(self, broadcast_id: str, limit: int) -> list[ClaimedMessage]:
        """Atomically move up to ``limit`` pending rows to ``sending``; concurrent runs skip locked rows."""

        async def _claim(session: AsyncSession) -> list[ClaimedMessage]:
            result = await session.execute(
                text(
                    """
                    WITH cte AS (
                        SELECT id
                        FROM broadcast_messages
                        WHERE broadcast_id = CAST(:id AS uuid)
                          AND status = 'pending'
                        ORDER BY created_at, id
                        LIMIT :limit
                        FOR UPDATE SKIP LOCKED
                    )
                    UPDATE broadcast_messages
                    SET status = 'sending',
                        updated_at = NOW()
                    FROM cte
                    WHERE broadcast_messages.id = cte.id
                    RETURNING broadcast_messages.id, broadcast_messages.telegram_user_id
                    """
                ),
                {"id": broadcast_id, "limit": limit},
            )
            return [
                ClaimedMessage(id=str(row["id"]), telegram_user_id=int(row["telegram_user_id"]))
                for row in result.mappings().all()
            ]

        return await self.connections.transaction(_claim)

    async def mark_sent(self, broadcast_id: str, message_id: str, telegram_message_id: Optional[int]) -> None:
        await self._execute(
            update(BroadcastMessage)
            .where(BroadcastMessage.id == as_uuid(message_id))
            .values(
                status=MessageStatus.SENT.value,
                telegram_message_id=telegram_message_id,
                sent_at=func.now(),
                error_message=None,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False),
            update(Broadcast)
            .where(Broadcast.id == as_uuid(broadcast_id))
            .values(sent_count=Broadcast.sent_count + 1, updated_at=func.now())
            .execution_options(synchronize_session=False),
        )

    async def mark_failed(self, broadcast_id: str, message_id: str, error: str) -> None:
        await self._execute(
            update(BroadcastMessage)
            .where(BroadcastMessage.id == as_uuid(message_id))
            .values(status=MessageStatus.FAILED.value, error_message=error[:1000], updated_at=func.now())
            .execution_options(synchronize_session=False),
            update(Broadcast)
            .where(Broadcast.id == as_uuid(broadcast_id))
            .values(failed_count=Broadcast.failed_count + 1, updated_at=func.now())
            .execution_options(synchronize_session=False),
        )

    async def get_stats(self, broadcast_id: str) -> dict[str, int]:
        key = as_uuid(broadcast_id)

        async def _load(session: AsyncSession) -> dict[str, int]:
            result = await session.execute(
                select(BroadcastMessage.status, func.count())
                .where(BroadcastMessage.broadcast_id == key)
                .group_by(BroadcastMessage.status)
            )
            stats = {status.value: 0 for status in MessageStatus}
            for status, total in result.all():
                stats[status] = int(total)
            return stats

        return await self.connections.transaction(_load)

    async def find_by_telegram_message(self, bot_id: str, user_id: int, telegram_message_id: int) -> Optional[str]:
        async def _load(session: AsyncSession) -> Optional[str]:
            result = await session.execute(
                select(BroadcastMessage.id)
                .join(Broadcast, Broadcast.id == BroadcastMessage.broadcast_id)
                .where(
                    Broadcast.bot_id == as_uuid(bot_id),
                    BroadcastMessage.telegram_user_id == user_id,
                    BroadcastMessage.telegram_message_id == telegram_message_id,
                )
                .limit(1)
            )
            value = result.scalar_one_or_none()
            return str(value) if value else None

        return await self.connections.transaction(_load)

    async def find_recent_sent(self, bot_id: str, user_id: int, window_hours: int = 24) -> Optional[str]:
        async def _load(session: AsyncSession) -> Optional[str]:
            result = await session.execute(
                text(
                    """
                    SELECT bm.id
                    FROM broadcast_messages bm
                    JOIN broadcasts b ON b.id = bm.broadcast_id
                    WHERE b.bot_id = CAST(:bot_id AS uuid)
                      AND bm.telegram_user_id = :user_id
                      AND bm.status = 'sent'
                      AND bm.sent_at >= NOW() - make_interval(hours => :window_hours)
                    ORDER BY bm.sent_at DESC
                    LIMIT 1
                    """
                ),
                {"bot_id": bot_id, "user_id": user_id, "window_hours": window_hours},
            )
            value = result.scalar_one_or_none()
            return str(value) if value else None

        return await self.connections.transaction(_load)

    async def record_engagement(self, broadcast_message_id: str, click: bool) -> None:
        await self._execute(
            update(BroadcastMessage)
            .where(BroadcastMessage.id == as_uuid(broadcast_message_id))
            .values(
                click_count=BroadcastMessage.click_count + (1 if click else 0),
                engaged_at=func.coalesce(BroadcastMessage.engaged_at, func.now()),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
