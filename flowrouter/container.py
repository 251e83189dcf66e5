"""Service container - wires configuration, connections and router services."""

from dataclasses import dataclass
from typing import Optional

import httpx

from flowrouter.config import Settings
from flowrouter.logging_config import get_logger
from flowrouter.services.analytics_service import AnalyticsService
from flowrouter.services.bot_service import BotRepository
from flowrouter.services.bot_user_service import BotUserRepository
from flowrouter.services.broadcast_pipeline import BroadcastPipeline, BroadcastPipelineConfig
from flowrouter.services.broadcast_service import BroadcastRepository
from flowrouter.services.connection_manager import ConnectionManager
from flowrouter.services.dialogue_engine import DialogueEngine
from flowrouter.services.encryption import decrypt_token
from flowrouter.services.memory_store import MemoryStore
from flowrouter.services.pending_input import PendingInputTracker
from flowrouter.services.rate_limiter import RateLimiter, RateLimitRule
from flowrouter.services.schema_cache import SchemaCache
from flowrouter.services.side_effects import SideEffectRunner
from flowrouter.services.state_store import HybridStore, UpdateDeduplicator, UserStateStore
from flowrouter.services.telegram_service import TelegramService
from flowrouter.services.webhook_log_service import WebhookLogService

logger = get_logger("container")


@dataclass
class ServiceContainer:
    """Process-wide services shared by the HTTP handlers."""

    settings: Settings
    connections: ConnectionManager
    http_client: httpx.AsyncClient
    fallback_store: MemoryStore
    rate_limiter: RateLimiter
    bots: BotRepository
    schema_cache: SchemaCache
    user_states: UserStateStore
    pending: PendingInputTracker
    deduplicator: UpdateDeduplicator
    side_effects: SideEffectRunner
    engine: DialogueEngine
    broadcasts: BroadcastRepository
    broadcast_pipeline: BroadcastPipeline

    @classmethod
    def build(
        cls,
        settings: Settings,
        connections: Optional[ConnectionManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ServiceContainer":
        """Wire every service without touching the network."""
        connections = connections or ConnectionManager(settings)
        http_client = http_client or httpx.AsyncClient(timeout=settings.telegram_timeout_seconds)

        fallback_store = MemoryStore(max_entries=settings.memory_store_max_entries)
        store = HybridStore(connections, fallback_store)

        rate_limiter = RateLimiter(
            connections,
            per_bot=RateLimitRule(settings.rate_limit_per_bot, settings.rate_limit_window_seconds),
            global_rule=RateLimitRule(settings.rate_limit_global, settings.rate_limit_window_seconds),
            fallback=MemoryStore(max_entries=settings.rate_limit_fallback_max_keys),
        )

        bots = BotRepository(connections)
        broadcasts = BroadcastRepository(connections)
        schema_cache = SchemaCache(connections, bots, ttl_seconds=settings.schema_cache_ttl_seconds)
        user_states = UserStateStore(store, ttl_seconds=settings.user_state_ttl_seconds)
        pending = PendingInputTracker(store, ttl_seconds=settings.pending_input_ttl_seconds)
        deduplicator = UpdateDeduplicator(store, ttl_seconds=settings.update_dedup_ttl_seconds)
        side_effects = SideEffectRunner(
            serverless=settings.serverless,
            await_timeout=settings.webhook_serverless_timeout_ms / 1000,
        )

        engine = DialogueEngine(
            user_states=user_states,
            pending=pending,
            deduplicator=deduplicator,
            bot_users=BotUserRepository(connections),
            analytics=AnalyticsService(connections),
            broadcasts=broadcasts,
            webhook_logs=WebhookLogService(connections),
            side_effects=side_effects,
            http_client=http_client,
            serverless=settings.serverless,
            webhook_timeout_ms=settings.webhook_timeout_ms,
            serverless_timeout_ms=settings.webhook_serverless_timeout_ms,
        )

        container = cls(
            settings=settings,
            connections=connections,
            http_client=http_client,
            fallback_store=fallback_store,
            rate_limiter=rate_limiter,
            bots=bots,
            schema_cache=schema_cache,
            user_states=user_states,
            pending=pending,
            deduplicator=deduplicator,
            side_effects=side_effects,
            engine=engine,
            broadcasts=broadcasts,
            broadcast_pipeline=None,  # set below, needs the bound factories
        )
        container.broadcast_pipeline = BroadcastPipeline(
            broadcasts,
            bots,
            telegram_factory=container.telegram,
            decrypt=container.decrypt_token,
            config=BroadcastPipelineConfig(
                batch_size=settings.broadcast_batch_size,
                messages_per_second=settings.broadcast_messages_per_second,
                run_budget_seconds=settings.broadcast_run_budget_seconds,
                max_messages_per_run=settings.broadcast_max_messages_per_run,
                sending_lease_seconds=settings.broadcast_sending_lease_seconds,
            ),
        )
        return container

    @classmethod
    async def create(cls, settings: Settings) -> "ServiceContainer":
        logger.info("Building service container", extra={"context": {"serverless": settings.serverless}})
        container = cls.build(settings)
        await container.connections.init()
        logger.info("Service container ready")
        return container

    def telegram(self, bot_token: str) -> TelegramService:
        return TelegramService(bot_token, self.http_client, timeout=self.settings.telegram_timeout_seconds)

    def decrypt_token(self, encrypted_token: str) -> str:
        return decrypt_token(encrypted_token, self.settings.encryption_key)

    async def shutdown(self) -> None:
        await self.side_effects.drain()
        await self.http_client.aclose()
        await self.connections.shutdown()
