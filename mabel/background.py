"""Supervised in-process background tasks.

The task queue's ``background`` mode hands work to ``spawn``; tasks stay
referenced until they finish and failures land in the log. ``drain`` is
the shutdown hook that lets in-flight jobs settle.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

_running: Set[asyncio.Task[Any]] = set()


def _settle(task: asyncio.Task[Any]) -> None:
    _running.discard(task)
    if task.cancelled():
        logger.debug("Background task %s cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)


def spawn(coro: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task[Any]:
    """Start ``coro`` on the running loop and keep it referenced until done."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _running.add(task)
    task.add_done_callback(_settle)
    return task


def pending() -> int:
    return len(_running)


async def drain(timeout: Optional[float] = None) -> None:
    """Wait for supervised tasks, including any they spawn while draining."""
    while _running:
        done, not_done = await asyncio.wait(set(_running), timeout=timeout)
        if not_done and timeout is not None:
            logger.warning("%s background task(s) still running after %ss", len(not_done), timeout)
            return


async def run_sync(func: Callable[..., Any], *args: Any, executor: Optional[Executor] = None, **kwargs: Any) -> Any:
    """Run blocking code (PDF rendering, Pillow, whisper) off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, partial(func, *args, **kwargs))
