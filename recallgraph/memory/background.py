"""Background tasks for the memory system.

This module provides the BackgroundTasks class, which runs fire-and-forget
work (learning from retrievals) outside the caller's cancellation scope.
"""

import asyncio
from typing import Awaitable, Optional

from loguru import logger


class BackgroundTasks:
    """
    Owner of detached asyncio tasks.

    Keeps a strong reference to every task until it finishes, so the event
    loop cannot garbage-collect it mid-flight. Each task gets its own
    timeout; failures are logged, never raised. Cancelling the coroutine
    that spawned a task does not cancel the task.
    """

    def __init__(self, timeout_seconds: Optional[float] = 30.0):
        """
        Args:
            timeout_seconds: Per-task timeout, None for no limit
        """
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, awaitable: Awaitable, name: str = "background") -> asyncio.Task:
        """Schedule ``awaitable`` to run detached from the caller."""
        task = asyncio.get_running_loop().create_task(self._run(awaitable, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, awaitable: Awaitable, name: str) -> None:
        try:
            if self.timeout_seconds is None:
                await awaitable
            else:
                await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.CancelledError:
            logger.debug(f"Background task {name} cancelled")
            raise
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(f"Background task {name} timed out after {self.timeout_seconds}s")
        except Exception as e:
            self.failures += 1
            logger.error(f"Background task {name} failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding task (including ones spawned meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding tasks and wait for them to stop."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug(f"Background tasks closed ({len(tasks)} cancelled)")
