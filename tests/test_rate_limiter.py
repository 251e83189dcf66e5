import asyncio

import pytest
from conftest import BOT_ID, FakeConnections, FakeRedis

from flowrouter.exceptions import RateLimitExceededError
from flowrouter.services.memory_store import MemoryStore
from flowrouter.services.rate_limiter import (
    INVALID_BOT_SCOPE,
    RateLimiter,
    RateLimitRule,
    bot_scope,
    is_valid_bot_id,
)


def make_limiter(connections, now=120.0):
    return RateLimiter(
        connections,
        per_bot=RateLimitRule(60, 60),
        global_rule=RateLimitRule(500, 60),
        fallback=MemoryStore(max_entries=100),
        clock=lambda: now,
    )


class TestBotScope:
    def test_valid_id(self):
        assert is_valid_bot_id(BOT_ID)
        assert bot_scope(BOT_ID) == f"bot:{BOT_ID}"

    def test_malformed_ids_share_bucket(self):
        assert not is_valid_bot_id("../../etc/passwd")
        assert not is_valid_bot_id("")
        assert bot_scope("not-a-bot") == INVALID_BOT_SCOPE
        assert bot_scope(None) == INVALID_BOT_SCOPE


class TestRateLimiter:
    def test_sixty_first_request_rejected(self):
        limiter = make_limiter(FakeConnections(FakeRedis()))

        async def scenario():
            for _ in range(60):
                await limiter.check_bot(BOT_ID)
            with pytest.raises(RateLimitExceededError) as exc_info:
                await limiter.check_bot(BOT_ID)
            return exc_info.value

        error = asyncio.run(scenario())
        assert error.status_code == 429
        assert error.retry_after >= 1

    def test_counts_in_redis_with_window_expiry(self):
        redis = FakeRedis()
        limiter = make_limiter(FakeConnections(redis), now=125.0)

        decision = asyncio.run(limiter.check_bot(BOT_ID))

        assert decision.backend == "redis"
        key = f"rl:bot:{BOT_ID}:2"
        assert redis.data[key] == 1
        assert redis.expirations[key] == 60
        assert decision.retry_after == 55

    def test_window_expiry_not_extended(self):
        redis = FakeRedis()
        limiter = make_limiter(FakeConnections(redis), now=125.0)
        key = f"rl:bot:{BOT_ID}:2"

        async def scenario():
            await limiter.check_bot(BOT_ID)
            redis.expirations[key] = 7
            return await limiter.check_bot(BOT_ID)

        decision = asyncio.run(scenario())

        assert decision.count == 2
        assert redis.expirations[key] == 7

    def test_tenants_are_isolated(self):
        limiter = make_limiter(FakeConnections(FakeRedis()))
        other = "11111111-2222-3333-4444-555555555555"

        async def scenario():
            for _ in range(60):
                await limiter.check_bot(BOT_ID)
            return await limiter.check_bot(other)

        assert asyncio.run(scenario()).allowed

    def test_falls_back_to_memory_when_redis_down(self):
        connections = FakeConnections(FakeRedis())
        connections.down = True
        limiter = make_limiter(connections)

        async def scenario():
            for _ in range(60):
                await limiter.check_bot(BOT_ID)
            with pytest.raises(RateLimitExceededError):
                await limiter.check_bot(BOT_ID)

        asyncio.run(scenario())
        assert limiter.last_backend == "memory"

    def test_memory_only_without_connections(self):
        limiter = make_limiter(None)
        decision = asyncio.run(limiter.check_global())
        assert decision.backend == "memory"
        assert decision.count == 1

    def test_global_limit(self):
        limiter = RateLimiter(
            None,
            per_bot=RateLimitRule(60, 60),
            global_rule=RateLimitRule(2, 60),
            clock=lambda: 10.0,
        )

        async def scenario():
            await limiter.check_global()
            await limiter.check_global()
            with pytest.raises(RateLimitExceededError) as exc_info:
                await limiter.check_global()
            return exc_info.value

        assert asyncio.run(scenario()).scope == "global"
