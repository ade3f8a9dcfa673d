"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> TaggingPipeline.tag

The pipeline itself is synchronous; parallelism only exists here, as
independent ``tag()`` calls sharing one read-only pipeline. Requests beyond
the semaphore limit wait for ``queue_timeout`` seconds, then fail.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from waifutag.config import Settings
    from waifutag.ml.pipeline import TaggingPipeline, TagOptions
    from waifutag.ml.postprocessing import TaggingResult
    from waifutag.ml.preprocessing import ImageInput

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounds the number of tagging calls running at once."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="waifutag-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the inference thread pool.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("Inference queue full; gave up after %.1fs", self._timeout)
            raise
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

    async def tag(
        self, pipeline: TaggingPipeline, image: ImageInput, options: TagOptions | None = None
    ) -> TaggingResult:
        """Tag one image on the pool."""
        return await self.run(pipeline.tag, image, options)

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Wait for running tasks, then stop the worker threads."""
        self._executor.shutdown(wait=True)
