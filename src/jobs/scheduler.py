"""
Per-job deadline timers.

Timers live in the event loop only and are lost on restart; a durable
deployment would persist ``expires_at`` and re-arm on startup through the
same ``arm`` call.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Set

import structlog

from src.jobs.models import utcnow

logger = structlog.get_logger()

DeadlineCallback = Callable[[str], Awaitable[None]]


class ExpirationScheduler:
    """One-shot deadline per job id, re-armable and cancellable"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._running: Set[asyncio.Task] = set()

    def arm(self, job_id: str, deadline: datetime, callback: DeadlineCallback) -> None:
        """Fire ``callback(job_id)`` at ``deadline`` (immediately if already past)"""
        self.cancel(job_id)
        delay = max(0.0, (deadline - self._clock()).total_seconds())
        loop = asyncio.get_running_loop()
        self._handles[job_id] = loop.call_later(delay, self._fire, job_id, callback)
        logger.debug("expiration_armed", job_id=job_id, delay_seconds=round(delay, 3))

    def cancel(self, job_id: str) -> bool:
        handle = self._handles.pop(job_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_armed(self, job_id: str) -> bool:
        return job_id in self._handles

    @property
    def pending(self) -> int:
        return len(self._handles)

    def _fire(self, job_id: str, callback: DeadlineCallback) -> None:
        self._handles.pop(job_id, None)
        task = asyncio.ensure_future(callback(job_id))
        self._running.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("expiration_callback_failed", error=str(task.exception()))

    async def close(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
