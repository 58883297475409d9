"""Deadline timer running callbacks at wall-clock instants."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from collections.abc import Callable
from datetime import datetime

from ..core.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class DeadlineTimer:
    """Keyed one-shot timers on a single background thread.

    Scheduling a key again replaces its previous deadline; cancelled or
    replaced entries stay in the heap and are skipped when they surface.
    Without :meth:`start`, nothing fires until :meth:`run_due` is called,
    which is how tests drive it with a manual clock.
    """

    def __init__(self, *, clock: Clock = utcnow, max_sleep: float = 1.0) -> None:
        self._clock = clock
        self._max_sleep = max_sleep
        self._cond = threading.Condition()
        self._heap: list[tuple[datetime, int, str]] = []
        self._live: dict[str, tuple[int, Callable[[], None]]] = {}
        self._counter = itertools.count()
        self._thread: threading.Thread | None = None
        self._stopping = False

    def schedule(self, key: str, when: datetime, callback: Callable[[], None]) -> None:
        with self._cond:
            token = next(self._counter)
            self._live[key] = (token, callback)
            heapq.heappush(self._heap, (when, token, key))
            self._cond.notify()

    def cancel(self, key: str) -> None:
        with self._cond:
            self._live.pop(key, None)

    def pending(self) -> int:
        with self._cond:
            return len(self._live)

    def _pop_due(self, now: datetime) -> list[tuple[str, Callable[[], None]]]:
        due = []
        while self._heap and self._heap[0][0] <= now:
            _, token, key = heapq.heappop(self._heap)
            live = self._live.get(key)
            if live is not None and live[0] == token:
                del self._live[key]
                due.append((key, live[1]))
        return due

    def run_due(self) -> int:
        """Fire every callback whose deadline has passed; returns how many ran."""

        with self._cond:
            due = self._pop_due(self._clock())
        for key, callback in due:
            self._fire(key, callback)
        return len(due)

    def _fire(self, key: str, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Deadline callback %s failed", key)

    def start(self) -> None:
        with self._cond:
            if self._thread is not None:
                return
            self._stopping = False
            self._thread = threading.Thread(
                target=self._run, name="commhub-deadlines", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._cond:
            self._stopping = True
            thread = self._thread
            self._thread = None
            self._cond.notify_all()
        if thread is not None:
            thread.join(timeout=5)

    def _run(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                now = self._clock()
                due = self._pop_due(now)
                if not due:
                    timeout = self._max_sleep
                    if self._heap:
                        timeout = min(timeout, max((self._heap[0][0] - now).total_seconds(), 0.0))
                    self._cond.wait(timeout)
                    continue
            for key, callback in due:
                self._fire(key, callback)
