"""Pooled PostgreSQL and Redis access with bounded-retry connects and circuit breakers."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis_async
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from flowrouter.config import Settings
from flowrouter.exceptions import DependencyUnavailableError
from flowrouter.logging_config import get_logger, redact_url
from flowrouter.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

logger = get_logger("connection_manager")

T = TypeVar("T")

POSTGRES = "postgres"
REDIS = "redis"


@dataclass
class RetryConfig:
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 2.0
    attempt_timeout: float = 5.0

    def wait(self) -> wait_exponential_jitter:
        """Doubling backoff from ``initial_delay`` capped at ``max_delay``, plus up to ``jitter`` seconds."""
        return wait_exponential_jitter(initial=self.initial_delay, max=self.max_delay, jitter=self.jitter)

    @classmethod
    def for_postgres(cls, serverless: bool) -> "RetryConfig":
        if serverless:
            return cls(max_attempts=7, initial_delay=0.5, max_delay=15.0, jitter=1.0, attempt_timeout=3.0)
        return cls(max_attempts=5, initial_delay=1.0, max_delay=10.0, jitter=2.0, attempt_timeout=5.0)

    @classmethod
    def for_redis(cls, serverless: bool) -> "RetryConfig":
        if serverless:
            return cls(max_attempts=7, initial_delay=0.5, max_delay=10.0, jitter=1.0, attempt_timeout=3.0)
        return cls(max_attempts=5, initial_delay=1.0, max_delay=10.0, jitter=2.0, attempt_timeout=5.0)


@dataclass
class RetryStats:
    successes: int = 0
    failures: int = 0
    exhausted: int = 0
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "successes": self.successes,
            "failures": self.failures,
            "exhausted": self.exhausted,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


async def connect_with_retry(
    name: str,
    connect: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    target: str,
    stats: Optional[RetryStats] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``connect`` until it succeeds or ``config.max_attempts`` is reached."""
    stats = stats if stats is not None else RetryStats()

    def _record_failure(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        stats.failures += 1
        stats.last_error = f"{type(error).__name__}: {error}"

    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            f"{name} connection attempt failed, retrying",
            extra={
                "context": {
                    "dependency": name,
                    "target": target,
                    "attempt": retry_state.attempt_number,
                    "delay_seconds": round(retry_state.next_action.sleep, 3),
                    "error": stats.last_error,
                }
            },
        )

    def _log_attempt(retry_state: RetryCallState) -> None:
        logger.info(
            f"Connecting to {name}",
            extra={"context": {"dependency": name, "target": target, "attempt": retry_state.attempt_number}},
        )

    async def _attempt() -> T:
        return await asyncio.wait_for(connect(), timeout=config.attempt_timeout)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=config.wait(),
        retry=retry_if_exception_type(Exception),
        before=_log_attempt,
        after=_record_failure,
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )

    try:
        result = await retrying(_attempt)
    except Exception as exc:
        stats.exhausted += 1
        logger.error(
            f"{name} connection failed",
            extra={"context": {"dependency": name, "target": target, "attempts": config.max_attempts, "error": stats.last_error}},
        )
        raise DependencyUnavailableError(
            name,
            f"{name} connection failed after {config.max_attempts} attempts ({target})",
            attempts=config.max_attempts,
            target=target,
        ) from exc

    stats.successes += 1
    stats.last_success_at = datetime.now(timezone.utc)
    attempt = retrying.statistics["attempt_number"]
    logger.info(f"{name} ready", extra={"context": {"dependency": name, "target": target, "attempt": attempt}})
    return result


def normalize_database_url(url: str) -> str:
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


class ConnectionManager:
    """Owns the engine, the Redis client and the two breakers that guard them."""

    def __init__(
        self,
        settings: Settings,
        *,
        engine_factory: Optional[Callable[..., AsyncEngine]] = None,
        redis_factory: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.serverless = settings.serverless
        self._engine_factory = engine_factory or create_async_engine
        self._redis_factory = redis_factory or redis_async.from_url
        self._sleep = sleep

        self.postgres_retry = RetryConfig.for_postgres(self.serverless)
        self.redis_retry = RetryConfig.for_redis(self.serverless)
        self.retry_stats = {POSTGRES: RetryStats(), REDIS: RetryStats()}

        self.postgres_breaker = CircuitBreaker(
            POSTGRES,
            CircuitBreakerConfig(
                failure_threshold=settings.postgres_failure_threshold,
                reset_timeout=settings.postgres_reset_timeout_seconds,
                success_threshold=settings.postgres_success_threshold,
            ),
        )
        self.redis_breaker = CircuitBreaker(
            REDIS,
            CircuitBreakerConfig(
                failure_threshold=settings.redis_failure_threshold,
                reset_timeout=settings.redis_reset_timeout_seconds,
                success_threshold=settings.redis_success_threshold,
            ),
        )

        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None
        self.redis: Any = None
        self.postgres_ready = False
        self.redis_ready = False
        self._postgres_lock = asyncio.Lock()

    @property
    def postgres_target(self) -> str:
        return redact_url(self.settings.database_url)

    @property
    def redis_target(self) -> str:
        return redact_url(self.settings.redis_url)

    async def init(self) -> None:
        """Connect both dependencies; only a relational failure outside serverless mode is fatal."""
        try:
            await self._connect_postgres()
        except DependencyUnavailableError:
            if not self.serverless:
                raise
            logger.warning(
                "Postgres unavailable at startup, will retry on first use",
                extra={"context": {"target": self.postgres_target}},
            )

        try:
            await self._connect_redis()
        except DependencyUnavailableError:
            logger.warning(
                "Redis unavailable, running with in-memory fallbacks",
                extra={"context": {"target": self.redis_target}},
            )

    async def shutdown(self) -> None:
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as exc:
                logger.warning("Redis close failed", extra={"context": {"error": str(exc)}})
            self.redis = None
            self.redis_ready = False
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            self.postgres_ready = False
        logger.info("Connections closed")

    def _create_engine(self) -> AsyncEngine:
        pool_size = self.settings.db_pool_size_serverless if self.serverless else self.settings.db_pool_size
        return self._engine_factory(
            normalize_database_url(self.settings.database_url),
            pool_size=pool_size,
            max_overflow=0 if self.serverless else pool_size // 2,
            pool_timeout=self.postgres_retry.attempt_timeout,
            pool_pre_ping=True,
            connect_args={"timeout": self.postgres_retry.attempt_timeout},
        )

    async def _connect_postgres(self) -> None:
        async with self._postgres_lock:
            if self.postgres_ready and self.engine is not None:
                return
            if self.engine is None:
                self.engine = self._create_engine()
                self.session_factory = async_sessionmaker(
                    self.engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                    autoflush=False,
                )

            async def _select_one() -> None:
                async with self.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))

            await connect_with_retry(
                POSTGRES,
                _select_one,
                self.postgres_retry,
                target=self.postgres_target,
                stats=self.retry_stats[POSTGRES],
                sleep=self._sleep,
            )
            self.postgres_ready = True

    async def _connect_redis(self) -> None:
        if not self.settings.redis_url:
            logger.info("Redis not configured, using in-memory fallbacks")
            return
        if self.redis is None:
            self.redis = self._redis_factory(
                self.settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=self.redis_retry.attempt_timeout,
                socket_timeout=self.redis_retry.attempt_timeout,
            )
        await connect_with_retry(
            REDIS,
            self.redis.ping,
            self.redis_retry,
            target=self.redis_target,
            stats=self.retry_stats[REDIS],
            sleep=self._sleep,
        )
        self.redis_ready = True

    async def _run_in_session(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.session_factory() as session:
            try:
                result = await work(session)
                await session.commit()
                return result
            except Exception:
                await session.rollback()
                raise

    async def acquire(self, dependency: str) -> Any:
        """Return the pooled handle for ``dependency``, connecting with bounded retries first if needed.

        Postgres yields the session factory, Redis the client. Reconnects go
        through the dependency's breaker, so an open circuit fails fast.
        """
        if dependency == POSTGRES:
            if not self.postgres_ready or self.session_factory is None:
                # Serverless cold start or a failed startup connect
                await self.postgres_breaker.call(self._connect_postgres)
            return self.session_factory
        if dependency == REDIS:
            if self.redis is None or not self.redis_ready:
                await self.redis_breaker.call(self._connect_redis)
            if self.redis is None:
                raise DependencyUnavailableError(REDIS, "Redis not configured")
            return self.redis
        raise ValueError(f"Unknown dependency: {dependency}")

    async def transaction(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``work`` in one committed session, guarded by the postgres breaker."""
        await self.acquire(POSTGRES)
        return await self.postgres_breaker.call(self._run_in_session, work)

    @property
    def redis_available(self) -> bool:
        return self.redis is not None

    async def redis_call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a Redis command through the redis breaker."""
        if self.redis is None:
            raise DependencyUnavailableError(REDIS, "Redis not configured")
        result = await self.redis_breaker.call(getattr(self.redis, method), *args, **kwargs)
        self.redis_ready = True
        return result

    async def redis_transaction(self, queue: Callable[[Any], Any]) -> list[Any]:
        """Run the commands ``queue`` adds to a MULTI/EXEC pipeline through the redis breaker."""
        if self.redis is None:
            raise DependencyUnavailableError(REDIS, "Redis not configured")

        async def _execute() -> list[Any]:
            async with self.redis.pipeline(transaction=True) as pipe:
                queue(pipe)
                return await pipe.execute()

        result = await self.redis_breaker.call(_execute)
        self.redis_ready = True
        return result

    async def ping_postgres(self) -> bool:
        async def _select(session: AsyncSession) -> Any:
            return await session.execute(text("SELECT 1"))

        try:
            await self.transaction(_select)
            return True
        except Exception as exc:
            logger.warning("Postgres health check failed", extra={"context": {"error": str(exc)}})
            return False

    async def ping_redis(self) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis_call("ping")
            return True
        except Exception as exc:
            self.redis_ready = False
            logger.warning("Redis health check failed", extra={"context": {"error": str(exc)}})
            return False

    def pool_stats(self) -> dict[str, int]:
        if self.engine is None:
            return {"size": 0, "idle": 0, "in_use": 0, "overflow": 0}
        pool = self.engine.pool
        try:
            return {
                "size": pool.size(),
                "idle": pool.checkedin(),
                "in_use": pool.checkedout(),
                "overflow": pool.overflow(),
            }
        except AttributeError:
            return {"size": 0, "idle": 0, "in_use": 0, "overflow": 0}

    def retry_stats_dict(self) -> dict[str, dict[str, Any]]:
        return {name: stats.to_dict() for name, stats in self.retry_stats.items()}

