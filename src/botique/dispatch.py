"""Background task dispatch for work that must not block a request.

Webhook delivery runs here: the request that triggered it only waits for
`submit()` to return, never for the delivery itself.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional
import structlog

logger = structlog.get_logger()


class BackgroundDispatcher:
    """Runs coroutines as detached asyncio tasks and keeps track of them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        name: str = "background_task",
        **kwargs: Any,
    ) -> asyncio.Task:
        """Schedule `fn(*args, **kwargs)` on the running loop and return at once."""
        task = asyncio.create_task(self._run(fn, args, kwargs, name), name=name)
        # The loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("task_submitted", task=name, pending=len(self._tasks))
        return task

    async def _run(self, fn, args, kwargs, name: str) -> Any:
        try:
            return await fn(*args, **kwargs)
        except asyncio.CancelledError:
            logger.info("task_cancelled", task=name)
            raise
        except Exception as e:
            logger.error("task_failed", task=name, error=str(e), error_type=type(e).__name__)
            return None

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every submitted task, including ones submitted while waiting."""
        while self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
            if timeout is not None:
                break

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Give running tasks `timeout` seconds, then cancel the rest."""
        if not self._tasks:
            return
        done, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("tasks_cancelled_on_shutdown", count=len(still_running))
