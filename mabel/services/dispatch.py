# mabel/services/dispatch.py
"""Task queue with one producer interface and one consumer implementation.

``dispatch`` decides *how* a handler runs (inline, as a supervised
background task, or via an external event bus that later calls
``POST /api/events``); the handler itself is the same in every case.
A bus that is unconfigured or refuses the event degrades to inline.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from mabel.background import spawn
from mabel.settings.config import settings

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]

MODES = ("inline", "background", "bus")


class DispatchError(RuntimeError):
    pass


@dataclass
class DispatchResult:
    event: str
    mode: str               # how the work actually ran
    fallback: bool = False  # True when the bus failed and we ran inline

    @property
    def ran_inline(self) -> bool:
        return self.mode == "inline"


class TaskQueue:
    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._handlers: Dict[str, Handler] = {}
        self._transport = transport

    def handler(self, event: str) -> Callable[[Handler], Handler]:
        def register(fn: Handler) -> Handler:
            if event in self._handlers:
                raise ValueError(f"Handler already registered for {event}")
            self._handlers[event] = fn
            return fn
        return register

    def events(self) -> List[str]:
        return sorted(self._handlers)

    def has(self, event: str) -> bool:
        return event in self._handlers

    async def run(self, event: str, payload: dict) -> None:
        """Consumer entry point shared by every execution strategy."""
        fn = self._handlers.get(event)
        if fn is None:
            raise DispatchError(f"No handler registered for {event}")
        logger.debug("running %s", event)
        await fn(payload)

    async def dispatch(self, event: str, payload: dict, *, mode: Optional[str] = None) -> DispatchResult:
        if event not in self._handlers:
            raise DispatchError(f"No handler registered for {event}")
        mode = mode or settings.DISPATCH_MODE
        if mode not in MODES:
            raise DispatchError(f"Unknown dispatch mode {mode!r}")

        if mode == "bus":
            try:
                await self.publish(event, payload)
                return DispatchResult(event, "bus")
            except (DispatchError, httpx.HTTPError) as exc:
                logger.warning("Event bus unavailable for %s (%s); running inline", event, exc)
                await self.run(event, payload)
                return DispatchResult(event, "inline", fallback=True)

        if mode == "background":
            spawn(self.run(event, payload), name=f"task:{event}")
            return DispatchResult(event, "background")

        await self.run(event, payload)
        return DispatchResult(event, "inline")

    async def publish(self, event: str, payload: dict) -> None:
        url = settings.EVENT_BUS_URL
        if not url:
            raise DispatchError("EVENT_BUS_URL is not configured")
        headers = {}
        if settings.EVENT_BUS_KEY:
            headers["Authorization"] = f"Bearer {settings.EVENT_BUS_KEY}"
        async with httpx.AsyncClient(timeout=settings.EVENT_BUS_TIMEOUT, transport=self._transport) as client:
            r = await client.post(url, json={"name": event, "data": payload}, headers=headers)
            r.raise_for_status()
        logger.info("published %s to event bus", event)


queue = TaskQueue()

__all__ = ["TaskQueue", "DispatchResult", "DispatchError", "queue", "MODES"]
