"""Helpers for work that must not block the request path.

``spawn`` keeps fire-and-forget tasks referenced until they finish and logs
their failures; ``run_sync`` pushes blocking calls (filesystem, boto3) onto
the default executor.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from functools import partial
from typing import Awaitable, Callable, Optional, Any, Set

logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task[Any]] = set()


def spawn(coro: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task[Any]:
    """Schedule ``coro`` on the running loop and log it if it raises."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _background_tasks.add(task)

    def _done(t: asyncio.Task[Any]) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            logger.debug("Background task %s cancelled", name or t)
            return
        exc = t.exception()
        if exc is not None:
            logger.error("Background task %s failed", name or t, exc_info=exc)

    task.add_done_callback(_done)
    return task


async def drain(timeout: float = 5.0) -> None:
    """Wait for outstanding background tasks (shutdown and tests)."""
    pending = list(_background_tasks)
    if pending:
        await asyncio.wait(pending, timeout=timeout)


async def run_sync(func: Callable[..., Any], *args: Any,
                   executor: Optional[Executor] = None, **kwargs: Any) -> Any:
    """Execute blocking code in the executor and await the result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, partial(func, *args, **kwargs))


__all__ = ["spawn", "drain", "run_sync"]
