# mabel/services/polling.py
"""Fixed-interval status polling, for scripts and any client of the HTTP API."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

import httpx

from mabel.settings.config import settings

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_STATUSES = ("FAILED", "ERROR")


class PollError(RuntimeError):
    pass


class PollFailed(PollError):
    def __init__(self, label: str, status: str):
        super().__init__(f"{label} failed (status {status})")
        self.status = status


class PollTimeout(PollError):
    pass


async def wait_for_status(
    fetch_status: Callable[[], Awaitable[Optional[str]]],
    target: str | Iterable[str],
    *,
    max_attempts: Optional[int] = None,
    interval: Optional[float] = None,
    failure_statuses: Iterable[str] = DEFAULT_FAILURE_STATUSES,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Re-fetch until the status is one of ``target``.

    Fetch errors are logged and retried until the attempt budget runs out;
    a failure status ends the wait immediately.
    """
    targets = {target} if isinstance(target, str) else set(target)
    failures = set(failure_statuses)
    attempts = max_attempts or settings.POLL_MAX_ATTEMPTS
    delay = settings.POLL_INTERVAL_SECONDS if interval is None else interval

    for attempt in range(1, attempts + 1):
        try:
            status = await fetch_status()
        except Exception as exc:  # noqa: BLE001  (retried until the budget is spent)
            logger.warning("%s: poll %s/%s failed: %s", label, attempt, attempts, exc)
            status = None
        if status in targets:
            return status
        if status in failures:
            raise PollFailed(label, status)
        if attempt < attempts:
            await sleep(delay)

    raise PollTimeout(f"{label} timed out after {int(attempts * delay)} seconds")


class ModuleStatusPoller:
    """Polls the module and job endpoints of a running Mabel server."""

    def __init__(self, client: httpx.AsyncClient, project_id: int):
        self.client = client
        self.project_id = project_id

    async def module_status(self, module_id: int) -> Optional[str]:
        r = await self.client.get(f"/api/projects/{self.project_id}/modules/{module_id}")
        r.raise_for_status()
        return ((r.json() or {}).get("data") or {}).get("status")

    async def job_status(self, job_id: int) -> Optional[str]:
        r = await self.client.get(f"/api/jobs/{job_id}")
        r.raise_for_status()
        return ((r.json() or {}).get("data") or {}).get("status")

    async def wait_for_module(self, module_id: int, target: str | Iterable[str], **kwargs) -> str:
        return await wait_for_status(
            lambda: self.module_status(module_id), target, label=f"module {module_id}", **kwargs
        )

    async def wait_for_job(self, job_id: int, **kwargs) -> str:
        return await wait_for_status(lambda: self.job_status(job_id), "COMPLETED", label=f"job {job_id}", **kwargs)
