"""
Detached background tasks.

Side effects that must never hold up or fail a send (webhook alerts) are
submitted here instead of being awaited. One worker drains a bounded
asyncio.Queue; sync callables run via asyncio.to_thread. A full queue
drops the job with a warning.
"""

import asyncio
import logging
from typing import Callable, Optional

import config

logger = logging.getLogger("campaigns.background")


class BackgroundTasks:
    def __init__(self, maxsize: int = None):
        self.maxsize = maxsize or config.BACKGROUND_QUEUE_SIZE
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    def _ensure_worker(self):
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.maxsize)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="background_tasks"
            )

    def submit(self, func: Callable, *args, name: str = None, **kwargs) -> bool:
        """Queue `func(*args, **kwargs)`; returns False if it was dropped."""
        self._ensure_worker()
        job_name = name or getattr(func, "__name__", "task")
        try:
            self._queue.put_nowait((job_name, func, args, kwargs))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Background queue full ({self.maxsize}), dropped {job_name}")
            return False
        return True

    async def _run(self):
        while True:
            job_name, func, args, kwargs = await self._queue.get()
            try:
                if asyncio.iscoroutinefunction(func):
                    await func(*args, **kwargs)
                else:
                    await asyncio.to_thread(func, *args, **kwargs)
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.error(f"Background task {job_name} failed: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def drain(self, timeout: float = None):
        """Wait until everything queued so far has run."""
        if self._queue is None:
            return
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def close(self, timeout: float = 10):
        if self._queue is not None:
            try:
                await self.drain(timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Background queue not drained in {timeout}s, {self.pending} job(s) abandoned")
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
