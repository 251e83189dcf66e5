"""Detached side effects (tenant webhooks, integrations) with their own error channel."""

import asyncio
from typing import Any, Coroutine, Optional

from flowrouter.logging_config import get_logger

logger = get_logger("side_effects")


class SideEffectRunner:
    """Runs work that must never fail or delay the primary response.

    Long-running deployments detach the work as tasks. Serverless deployments
    await it inline under ``await_timeout`` because the invocation may be
    frozen as soon as the response is written.
    """

    def __init__(self, serverless: bool = False, await_timeout: float = 3.0):
        self.serverless = serverless
        self.await_timeout = await_timeout
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0
        self.completed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _record_failure(self, name: str, error: BaseException, context: Optional[dict[str, Any]]) -> None:
        self.failures += 1
        logger.error(
            "Side effect failed",
            extra={"context": {**(context or {}), "side_effect": name, "error": f"{type(error).__name__}: {error}"}},
        )

    def _on_done(self, task: asyncio.Task, name: str, context: Optional[dict[str, Any]]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._record_failure(name, error, context)
        else:
            self.completed += 1

    def spawn(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
        context: Optional[dict[str, Any]] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"side-effect:{name}")
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._on_done(done, name, context))
        return task

    async def run(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Detach ``coro``, or await it under the budget in serverless mode. Never raises."""
        if not self.serverless:
            self.spawn(name, coro, context)
            return
        try:
            await asyncio.wait_for(coro, timeout=self.await_timeout)
            self.completed += 1
        except asyncio.TimeoutError as exc:
            self._record_failure(name, exc, {**(context or {}), "timeout_seconds": self.await_timeout})
        except Exception as exc:
            self._record_failure(name, exc, context)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for detached work at shutdown, cancelling whatever outlives ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled unfinished side effects", extra={"context": {"count": len(pending)}})
