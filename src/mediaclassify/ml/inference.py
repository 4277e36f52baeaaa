"""Thread offload layer for CPU-bound work.

Architecture:
    event loop -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> decode / ONNX inference

Keeps the event loop free to schedule downloads and ffmpeg subprocesses
while images are decoded and the engine runs.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Manages the semaphore and thread pool for decode and inference work."""

    def __init__(self, max_workers: int, *, thread_name_prefix: str = "mediaclassify-worker") -> None:
        self._semaphore = asyncio.Semaphore(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the thread pool.

        Raises:
            RuntimeError: If the pool has been shut down.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await self._semaphore.acquire()
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of tasks waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
        logger.debug("Worker pool shut down")
