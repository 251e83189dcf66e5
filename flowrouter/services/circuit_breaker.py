"""
Circuit breaker for relational and cache calls.

closed:    calls pass through, consecutive qualifying failures are counted
open:      calls fail immediately with CircuitBreakerOpenError
half-open: a limited number of trial calls decide between closed and open
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from flowrouter.exceptions import CircuitBreakerOpenError, DependencyUnavailableError
from flowrouter.logging_config import get_logger

logger = get_logger("circuit_breaker")

T = TypeVar("T")

CONNECTION_ERROR_MARKERS = (
    "econnrefused",
    "etimedout",
    "econnreset",
    "epipe",
    "enotfound",
    "eai_again",
    "connection refused",
    "connection reset",
    "broken pipe",
    "timed out",
    "timeout",
    "name or service not known",
    "temporary failure in name resolution",
    "connection closed",
    "connection lost",
)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


def is_connection_failure(error: BaseException) -> bool:
    """Only transport-level failures count against a breaker; caller-input errors never do."""
    if isinstance(error, CircuitBreakerOpenError):
        return False
    if isinstance(error, (DependencyUnavailableError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    # redis.exceptions.ConnectionError / TimeoutError and asyncpg/sqlalchemy interface errors
    name = type(error).__name__
    if name in {"OperationalError", "InterfaceError", "ConnectionDoesNotExistError", "CannotConnectNowError"}:
        return True
    message = str(error).lower()
    return any(marker in message for marker in CONNECTION_ERROR_MARKERS)


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    success_threshold: int = 2
    half_open_max_requests: int = 1


class CircuitBreaker:
    """Wraps awaitable calls against one dependency."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        is_failure: Callable[[BaseException], bool] = is_connection_failure,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.is_failure = is_failure
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_in_flight = 0
        self._last_transition = clock()
        self._opened_at: Optional[float] = None
        self._rejected = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    def _transition(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state
        self._last_transition = self._clock()
        context = {
            "breaker": self.name,
            "from": old_state.value,
            "to": new_state.value,
            "failures": self._failures,
        }
        if new_state == CircuitState.OPEN:
            self._opened_at = self._last_transition
            self._successes = 0
            logger.warning("Circuit breaker opened", extra={"context": context})
        elif new_state == CircuitState.HALF_OPEN:
            self._successes = 0
            self._half_open_in_flight = 0
            logger.info("Circuit breaker half-open", extra={"context": context})
        else:
            self._opened_at = None
            self._failures = 0
            self._successes = 0
            logger.info("Circuit breaker closed", extra={"context": context})

    async def _before_call(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.config.reset_timeout:
                    self._rejected += 1
                    raise CircuitBreakerOpenError(self.name, retry_in=self.config.reset_timeout - elapsed)
                self._transition(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_max_requests:
                    self._rejected += 1
                    raise CircuitBreakerOpenError(self.name)
                self._half_open_in_flight += 1
                return True
            return False

    async def _on_success(self, trial: bool) -> None:
        async with self._lock:
            if trial and self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failures = 0

    async def _on_error(self, error: BaseException, trial: bool) -> None:
        async with self._lock:
            if trial and self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            if not self.is_failure(error):
                return
            if self._state == CircuitState.HALF_OPEN:
                self._failures += 1
                self._transition(CircuitState.OPEN)
                return
            if self._state == CircuitState.CLOSED:
                self._failures += 1
                if self._failures >= self.config.failure_threshold:
                    self._transition(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker, raising CircuitBreakerOpenError while open."""
        trial = await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except BaseException as error:
            await self._on_error(error, trial)
            raise
        await self._on_success(trial)
        return result

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._failures = 0
        self._rejected = 0

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._failures,
            "successes": self._successes,
            "rejected": self._rejected,
            "last_transition": self._last_transition,
            "failure_threshold": self.config.failure_threshold,
            "reset_timeout": self.config.reset_timeout,
            "success_threshold": self.config.success_threshold,
        }
