from datetime import datetime, timezone
from typing import Any, Optional

from flowrouter.services.connection_manager import ConnectionManager
from flowrouter.services.memory_store import MemoryStore
from flowrouter.services.rate_limiter import RateLimiter
from flowrouter.services.schema_cache import SchemaCache
from flowrouter.services.side_effects import SideEffectRunner

STATUS_OK = "ok"
STATUS_DEGRADED = "degraded"
STATUS_ERROR = "error"


def overall_status(postgres_ok: bool, postgres_breaker_closed: bool, redis_ok: bool, redis_breaker_closed: bool) -> str:
    """Relational trouble is an error; cache trouble only degrades the router."""
    if not (postgres_ok and postgres_breaker_closed):
        return STATUS_ERROR
    if not (redis_ok and redis_breaker_closed):
        return STATUS_DEGRADED
    return STATUS_OK


async def get_system_health(
    connections: ConnectionManager,
    *,
    fallback_store: MemoryStore,
    schema_cache: Optional[SchemaCache] = None,
    rate_limiter: Optional[RateLimiter] = None,
    side_effects: Optional[SideEffectRunner] = None,
) -> dict[str, Any]:
    postgres_ok = await connections.ping_postgres()
    redis_ok = await connections.ping_redis()
    postgres_breaker = connections.postgres_breaker.stats()
    redis_breaker = connections.redis_breaker.stats()

    status = overall_status(
        postgres_ok,
        connections.postgres_breaker.is_closed,
        redis_ok,
        connections.redis_breaker.is_closed,
    )

    health: dict[str, Any] = {
        "status": status,
        "postgres": {
            "connected": postgres_ok,
            "breaker": postgres_breaker,
            "pool": connections.pool_stats(),
        },
        "redis": {
            "connected": redis_ok,
            "breaker": redis_breaker,
        },
        "retry": connections.retry_stats_dict(),
        "memory_store": {
            "entries": len(fallback_store),
            "max_entries": fallback_store.max_entries,
            "evictions": fallback_store.evictions,
        },
        "serverless": connections.serverless,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
    if schema_cache is not None:
        health["schema_cache"] = schema_cache.stats()
    if rate_limiter is not None:
        health["rate_limit_backend"] = "redis" if redis_ok else rate_limiter.last_backend
    if side_effects is not None:
        health["side_effects"] = {
            "pending": side_effects.pending,
            "completed": side_effects.completed,
            "failed": side_effects.failures,
        }
    return health
