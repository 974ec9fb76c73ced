"""Worker pool shared by the model gateway and the upload path.

Three kinds of blocking work run here:

* ``ModelGateway.load``: the Hugging Face download, descriptor parsing and
  ``InferenceSession`` construction, once at startup.
* ``ModelGateway.classify``: preprocessing plus ``session.run``, once per
  camera cycle or upload.
* ``AppController.handle_upload``: Pillow decode of the uploaded bytes and
  the JPEG re-encode served by ``GET /upload/image``.

The camera loop and uploads share SNAPLABEL_MAX_CONCURRENT slots. A caller
that cannot get a slot within 5s gets TimeoutError. The gateway reports that
as InferenceError, and the upload path shows it as a failed prediction.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from snaplabel.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Manages the semaphore and thread pool for blocking ML work."""

    def __init__(self, settings: Settings) -> None:
        self._max_workers = settings.max_concurrent
        self._semaphore: asyncio.Semaphore | None = None
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="snaplabel-worker",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function in the worker pool and await its result.

        Raises:
            TimeoutError: If no worker slot frees up within the timeout.
        """
        semaphore = self._get_semaphore()
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(semaphore.acquire(), timeout=SEMAPHORE_TIMEOUT_SECONDS)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so the pool can be built outside a running loop.
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_workers)
        return self._semaphore

    @property
    def active_count(self) -> int:
        """Number of currently running tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of callers waiting for a worker slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
        logger.info("Worker pool shut down")
