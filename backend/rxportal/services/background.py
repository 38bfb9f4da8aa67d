"""Fire-and-forget dispatch for request side effects.

Notifications and emails that accompany a refill transition run as
background ``asyncio`` tasks.  The caller never awaits them and their
failures are only logged, so a broken SMTP server or notification table
cannot fail a refill that has already been committed.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Runs coroutines detached from the request that scheduled them."""

    def __init__(self) -> None:
        # Strong references: the event loop only keeps weak ones to tasks
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        label: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run(label, func, *args, **kwargs), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, label: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
        try:
            await func(*args, **kwargs)
        except asyncio.CancelledError:
            logger.warning("background: %s cancelled", label)
            raise
        except Exception:
            logger.exception("background: %s failed (non-blocking)", label)

    async def drain(self, timeout: float) -> None:
        """Wait up to ``timeout`` seconds for outstanding tasks, cancel the rest."""
        if not self._tasks:
            return
        done, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("background: cancelled %d side-effect task(s) at shutdown", len(still_running))


side_effects = BackgroundDispatcher()
