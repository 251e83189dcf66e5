"""Fixed-window rate limiting for inbound webhooks."""

import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flowrouter.exceptions import RateLimitExceededError
from flowrouter.logging_config import get_logger
from flowrouter.services.connection_manager import ConnectionManager
from flowrouter.services.memory_store import MemoryStore

logger = get_logger("rate_limiter")

BOT_ID_PATTERN = re.compile(r"^[0-9a-fA-F-]{36}$")
GLOBAL_SCOPE = "global"
INVALID_BOT_SCOPE = "bot:invalid"


def is_valid_bot_id(bot_id: Optional[str]) -> bool:
    return bool(bot_id) and BOT_ID_PATTERN.match(bot_id) is not None


def bot_scope(bot_id: Optional[str]) -> str:
    """Malformed ids share one bucket so they cannot fan out into unbounded keys."""
    if not is_valid_bot_id(bot_id):
        return INVALID_BOT_SCOPE
    return f"bot:{bot_id}"


@dataclass
class RateLimitRule:
    max_requests: int
    window_seconds: int


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int
    backend: str


class RateLimiter:
    def __init__(
        self,
        connections: Optional[ConnectionManager],
        *,
        per_bot: RateLimitRule,
        global_rule: RateLimitRule,
        fallback: Optional[MemoryStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.connections = connections
        self.per_bot = per_bot
        self.global_rule = global_rule
        self.fallback = fallback or MemoryStore()
        self._clock = clock
        self.last_backend = "memory"

    def _window(self, rule: RateLimitRule) -> tuple[int, int]:
        now = self._clock()
        bucket = int(now // rule.window_seconds)
        retry_after = max(1, int((bucket + 1) * rule.window_seconds - now))
        return bucket, retry_after

    async def _increment(self, key: str, window_seconds: int) -> tuple[int, str]:
        if self.connections is not None and self.connections.redis_available:
            def queue(pipe):
                pipe.incr(key)
                pipe.expire(key, window_seconds, nx=True)

            try:
                count, _ = await self.connections.redis_transaction(queue)
                return int(count), "redis"
            except Exception as exc:
                logger.warning(
                    "Rate limiter redis unavailable, using in-memory counters",
                    extra={"context": {"key": key, "error": str(exc)}},
                )
        return self.fallback.incr(key, window_seconds), "memory"

    async def hit(self, scope: str, rule: RateLimitRule) -> RateLimitDecision:
        bucket, retry_after = self._window(rule)
        key = f"rl:{scope}:{bucket}"
        count, backend = await self._increment(key, rule.window_seconds)
        self.last_backend = backend
        return RateLimitDecision(
            allowed=count <= rule.max_requests,
            count=count,
            limit=rule.max_requests,
            retry_after=retry_after,
            backend=backend,
        )

    async def check_global(self) -> RateLimitDecision:
        decision = await self.hit(GLOBAL_SCOPE, self.global_rule)
        if not decision.allowed:
            logger.warning("Global webhook rate limit exceeded", extra={"context": {"count": decision.count}})
            raise RateLimitExceededError(GLOBAL_SCOPE, decision.retry_after)
        return decision

    async def check_bot(self, bot_id: Optional[str]) -> RateLimitDecision:
        scope = bot_scope(bot_id)
        decision = await self.hit(scope, self.per_bot)
        if not decision.allowed:
            logger.warning(
                "Bot webhook rate limit exceeded",
                extra={"context": {"scope": scope, "count": decision.count}},
            )
            raise RateLimitExceededError(scope, decision.retry_after)
        return decision
