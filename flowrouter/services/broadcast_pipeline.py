"""
Broadcast delivery pipeline.

A run drains pre-materialised broadcast messages for one broadcast under the
provider throughput ceiling. Runs are bounded by time and by message count;
whatever is left is picked up by the next trigger. Rows stuck in ``sending``
longer than the lease (a crashed run) are returned to ``pending`` first.
"""

import asyncio
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

from flowrouter.exceptions import DecryptionError, NotFoundError, ProviderError
from flowrouter.logging_config import LoggerAdapter, get_logger
from flowrouter.schemas.dialogue import MediaItem
from flowrouter.services.bot_service import BotRepository
from flowrouter.services.broadcast_service import (
    BroadcastRecord,
    BroadcastRepository,
    BroadcastStatus,
    ClaimedMessage,
    MessageStatus,
)
from flowrouter.services.telegram_service import TelegramService
from flowrouter.services.text_format import normalize_text

logger = get_logger("broadcast_pipeline")


@dataclass
class BroadcastPipelineConfig:
    batch_size: int = 30
    messages_per_second: int = 30
    run_budget_seconds: float = 8.0
    max_messages_per_run: int = 240
    sending_lease_seconds: int = 300

    @property
    def pacing_interval(self) -> float:
        return math.ceil(1000 / self.messages_per_second) / 1000


@dataclass
class RunSummary:
    broadcast_id: str
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    reclaimed: int = 0
    completed: bool = False
    cancelled: bool = False
    stop_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BroadcastPipeline:
    def __init__(
        self,
        repository: BroadcastRepository,
        bots: BotRepository,
        telegram_factory: Callable[[str], TelegramService],
        decrypt: Callable[[str], str],
        config: Optional[BroadcastPipelineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.repository = repository
        self.bots = bots
        self.telegram_factory = telegram_factory
        self.decrypt = decrypt
        self.config = config or BroadcastPipelineConfig()
        self._clock = clock
        self._sleep = sleep

    async def run(self, broadcast_id: str) -> RunSummary:
        summary = RunSummary(broadcast_id=broadcast_id)
        log = LoggerAdapter(logger, {"broadcast_id": broadcast_id})

        broadcast = await self.repository.get_broadcast(broadcast_id)
        if broadcast is None:
            raise NotFoundError(f"Broadcast {broadcast_id} not found")
        if broadcast.status != BroadcastStatus.PROCESSING:
            summary.cancelled = broadcast.status == BroadcastStatus.CANCELLED
            summary.stop_reason = f"status:{broadcast.status.value}"
            log.info("Broadcast not processing, nothing to do", context={"status": broadcast.status.value})
            return summary

        bot = await self.bots.get_bot(broadcast.bot_id)
        if bot is None:
            await self.repository.set_status(broadcast_id, BroadcastStatus.FAILED)
            summary.stop_reason = "bot_missing"
            log.error("Broadcast bot no longer exists", context={"bot_id": broadcast.bot_id})
            return summary
        try:
            telegram = self.telegram_factory(self.decrypt(bot.token))
        except DecryptionError as exc:
            await self.repository.set_status(broadcast_id, BroadcastStatus.FAILED)
            summary.stop_reason = "token_invalid"
            log.error("Failed to decrypt bot token", context={"bot_id": broadcast.bot_id, "error": str(exc)})
            return summary

        await self.repository.mark_started(broadcast_id)
        summary.reclaimed = await self.repository.reset_stale_sending(broadcast_id, self.config.sending_lease_seconds)
        if summary.reclaimed:
            log.warning("Reclaimed stale sending messages", context={"count": summary.reclaimed})

        media = self._media(broadcast, log)
        deadline = self._clock() + self.config.run_budget_seconds

        while True:
            if self._clock() >= deadline:
                summary.stop_reason = "time_budget"
                break
            remaining = self.config.max_messages_per_run - summary.claimed
            if remaining <= 0:
                summary.stop_reason = "message_budget"
                break

            status = await self.repository.get_status(broadcast_id)
            if status == BroadcastStatus.CANCELLED:
                summary.cancelled = True
                summary.stop_reason = "cancelled"
                log.info("Broadcast cancelled, stopping run")
                break
            if status != BroadcastStatus.PROCESSING:
                summary.stop_reason = f"status:{status.value if status else 'missing'}"
                break

            batch = await self.repository.claim_batch(broadcast_id, min(self.config.batch_size, remaining))
            if not batch:
                if not await self._complete_if_drained(broadcast_id, summary, log):
                    summary.stop_reason = "in_flight"
                break

            summary.claimed += len(batch)
            for item in batch:
                await self._deliver(telegram, broadcast, media, item, summary, log)
                await self._sleep(self.config.pacing_interval)

        if summary.stop_reason in ("time_budget", "message_budget"):
            await self._complete_if_drained(broadcast_id, summary, log)

        log.info("Broadcast run finished", context=summary.to_dict())
        return summary

    async def _complete_if_drained(self, broadcast_id: str, summary: RunSummary, log: LoggerAdapter) -> bool:
        stats = await self.repository.get_stats(broadcast_id)
        if stats.get(MessageStatus.PENDING.value, 0) or stats.get(MessageStatus.SENDING.value, 0):
            return False
        await self.repository.set_status(broadcast_id, BroadcastStatus.COMPLETED)
        summary.completed = True
        summary.stop_reason = "completed"
        log.info("Broadcast completed", context={"stats": stats})
        return True

    def _media(self, broadcast: BroadcastRecord, log: LoggerAdapter) -> Optional[MediaItem]:
        if not broadcast.media:
            return None
        try:
            return MediaItem.model_validate(broadcast.media)
        except ValueError as exc:
            log.warning("Ignoring invalid broadcast media", context={"error": str(exc)})
            return None

    async def _deliver(
        self,
        telegram: TelegramService,
        broadcast: BroadcastRecord,
        media: Optional[MediaItem],
        item: ClaimedMessage,
        summary: RunSummary,
        log: LoggerAdapter,
    ) -> None:
        parse_mode = broadcast.parse_mode or "HTML"
        text = normalize_text(broadcast.message, parse_mode)
        try:
            if media is not None:
                result = await telegram.send_media(item.telegram_user_id, media, text, parse_mode=parse_mode)
            else:
                result = await telegram.send_message(item.telegram_user_id, text, parse_mode=parse_mode)
        except ProviderError as exc:
            await self.repository.mark_failed(broadcast.id, item.id, exc.description)
            summary.failed += 1
            log.warning(
                "Broadcast message failed",
                context={"message_id": item.id, "user_id": item.telegram_user_id, "error": exc.description},
            )
            return
        await self.repository.mark_sent(broadcast.id, item.id, (result or {}).get("message_id"))
        summary.sent += 1
