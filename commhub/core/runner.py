"""Threaded background runner for out-of-band work."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Simple wrapper around :class:`ThreadPoolExecutor` for fire-and-forget jobs.

    Jobs are named so failures show up in the logs with some context. A job
    that raises is logged and dropped; it never propagates into the caller
    that submitted it. :meth:`drain` lets tests wait until everything that
    has been submitted so far has finished.
    """

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="commhub-bg"
        )
        self._lock = threading.Lock()
        self._futures: set[Future] = set()

    # Job signature
    Job = Callable[[], None]

    def submit(self, name: str, fn: Job) -> Future:
        """Submit a job for execution."""

        def _run() -> None:
            try:
                fn()
            except Exception:
                logger.exception("Background job %s failed", name)

        future = self.executor.submit(_run)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def drain(self, timeout: float | None = 10.0) -> None:
        """Block until every job submitted so far (and jobs they submit) finished."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                futures = list(self._futures)
            if not futures:
                return
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"{len(futures)} background jobs still running")
            wait(futures, timeout=remaining)

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self.executor.shutdown(wait=wait_for_jobs)
