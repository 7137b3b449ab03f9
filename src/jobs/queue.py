"""
Sequential submission queue for ledger transactions.

A Stellar account can only have one transaction in flight per sequence
number, so everything signed with the facilitator key goes through a single
FIFO channel drained by one worker task.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

QueueItem = Tuple[Callable[[], Awaitable], asyncio.Future]


class SubmissionQueue:
    """
    Runs enqueued tasks strictly one at a time, in enqueue order.

    A failing task only fails its own caller; the worker moves on to the
    next item. Once dequeued a task always runs to completion.
    """

    def __init__(self, name: str = "facilitator"):
        self.name = name
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._depth = 0
        self._closed = False

    @property
    def depth(self) -> int:
        """Tasks waiting or running"""
        return self._depth

    def is_idle(self) -> bool:
        return self._depth == 0

    def _ensure_worker(self) -> asyncio.Queue:
        if self._closed:
            raise RuntimeError(f"Submission queue '{self.name}' is closed")
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"submission-queue-{self.name}")
        return self._queue

    async def enqueue(self, task: Callable[[], Awaitable[T]]) -> T:
        """Schedule a task and wait for its result (or exception)"""
        queue = self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._depth += 1
        queue.put_nowait((task, future))
        logger.debug("submission_enqueued", queue=self.name, depth=self._depth)
        # Shield so a cancelled caller does not cancel the shared future
        return await asyncio.shield(future)

    async def _run(self):
        assert self._queue is not None
        while True:
            task, future = await self._queue.get()
            try:
                result = await task()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error("submission_task_failed", queue=self.name, error=str(e))
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._depth -= 1
                self._queue.task_done()
                logger.debug("submission_completed", queue=self.name, depth=self._depth)

    async def close(self, drain: bool = True):
        """Stop the worker, optionally letting queued tasks finish first"""
        self._closed = True
        if self._queue is not None and drain:
            await self._queue.join()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        while self._queue is not None and not self._queue.empty():
            _, future = self._queue.get_nowait()
            self._depth -= 1
            if not future.done():
                future.cancel()
