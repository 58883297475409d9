"""Capacity constrained assignment of tasks to workers."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from ..core.clock import Clock, utcnow
from ..core.errors import InvalidTaskActionError, TaskNotFoundError, WorkerNotFoundError
from ..core.metrics import TASK_BACKLOG
from .models import Task, TaskEvent, TaskState, Worker, WorkerStatus
from .repository import TaskStore
from .timers import DeadlineTimer

logger = logging.getLogger(__name__)

TaskListener = Callable[[TaskEvent], None]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class TaskScheduler:
    """Owns every worker and task as one aggregate behind a single lock.

    Tasks move ``PENDING -> RESERVED -> ASSIGNED -> COMPLETED``. A reservation
    that is rejected or not accepted before its deadline goes back to
    ``PENDING``; a task left ``PENDING`` beyond the maximum wait times out.
    Reserving a task increments the worker's active count in the same
    critical section that checks capacity, so the count never exceeds the
    worker's maximum. Dispatch runs again whenever capacity or availability
    changes. Listeners are notified after the lock is released.
    """

    def __init__(
        self,
        store: TaskStore,
        timer: DeadlineTimer,
        *,
        reservation_timeout_seconds: int = 30,
        max_wait_seconds: int = 3600,
        max_rejections: int = 3,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._timer = timer
        self._reservation_timeout = timedelta(seconds=reservation_timeout_seconds)
        self._max_wait = timedelta(seconds=max_wait_seconds)
        self._max_rejections = max_rejections
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: list[TaskListener] = []
        self._workers: dict[str, Worker] = {}
        self._tasks: dict[str, Task] = {}
        self._seq = itertools.count(1)
        self._load()

    # ------------------------------------------------------------------
    # Listeners

    def add_listener(self, listener: TaskListener) -> None:
        self._listeners.append(listener)

    def _emit(self, events: Iterable[TaskEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception("Task listener failed for %s", event.type)

    def _event(
        self, events: list[TaskEvent], event_type: str, task: Task, worker: Worker | None = None
    ) -> None:
        events.append(
            TaskEvent(event_type, copy.deepcopy(task), copy.deepcopy(worker) if worker else None)
        )

    # ------------------------------------------------------------------
    # Start-up

    def _load(self) -> None:
        now = self._clock()
        for worker in self._store.load_workers():
            worker.active_task_count = 0
            self._workers[worker.id] = worker
        tasks = sorted(self._store.load_tasks(), key=lambda task: task.seq)
        for task in tasks:
            self._tasks[task.id] = task
            if task.state is TaskState.RESERVED:
                # Reservations do not survive a restart; the task is offered again.
                task.state = TaskState.PENDING
                task.worker_id = None
                task.reserved_at = None
                task.reservation_deadline = None
                task.updated_at = now
                self._store.save_task(task)
            if task.state is TaskState.ASSIGNED and task.worker_id in self._workers:
                self._workers[task.worker_id].active_task_count += 1
            if task.state is TaskState.PENDING:
                self._schedule_wait(task)
        for worker in self._workers.values():
            self._store.save_worker(worker)
        self._seq = itertools.count(max((task.seq for task in tasks), default=0) + 1)
        events: list[TaskEvent] = []
        with self._lock:
            self._dispatch(events)
            self._update_backlog()
        self._emit(events)

    # ------------------------------------------------------------------
    # Queries

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found")
            return copy.deepcopy(task)

    def list_tasks(
        self, *, state: TaskState | None = None, queue: str | None = None
    ) -> list[Task]:
        with self._lock:
            tasks = [
                copy.deepcopy(task)
                for task in self._tasks.values()
                if (state is None or task.state is state)
                and (queue is None or task.queue == queue)
            ]
        return sorted(tasks, key=lambda task: task.seq)

    def open_task_for(self, interaction_id: str) -> Task | None:
        with self._lock:
            for task in self._tasks.values():
                if task.interaction_id == interaction_id and task.is_open:
                    return copy.deepcopy(task)
        return None

    def get_worker(self, worker_id: str) -> Worker:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise WorkerNotFoundError(f"Worker {worker_id} not found")
            return copy.deepcopy(worker)

    def list_workers(self) -> list[Worker]:
        with self._lock:
            workers = [copy.deepcopy(worker) for worker in self._workers.values()]
        return sorted(workers, key=lambda worker: worker.id)

    def backlog(self) -> dict[str, dict[str, int]]:
        """Per-queue counts of pending, reserved and assigned tasks."""

        summary: dict[str, dict[str, int]] = {}
        with self._lock:
            for task in self._tasks.values():
                if not task.is_open:
                    continue
                counts = summary.setdefault(
                    task.queue, {"pending": 0, "reserved": 0, "assigned": 0}
                )
                counts[task.state.value] += 1
        return summary

    # ------------------------------------------------------------------
    # Workers

    def upsert_worker(
        self,
        worker_id: str,
        *,
        skills: Iterable[str] = (),
        max_concurrent_tasks: int = 1,
        display_name: str | None = None,
        status: WorkerStatus | None = None,
    ) -> Worker:
        if max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")
        events: list[TaskEvent] = []
        with self._lock:
            now = self._clock()
            worker = self._workers.get(worker_id)
            if worker is None:
                worker = Worker(id=worker_id, idle_since=now)
                self._workers[worker_id] = worker
            elif max_concurrent_tasks < worker.active_task_count:
                raise InvalidTaskActionError(
                    f"Worker {worker_id} holds {worker.active_task_count} tasks; "
                    f"cannot lower the limit to {max_concurrent_tasks}"
                )
            worker.skills = frozenset(skills)
            worker.max_concurrent_tasks = max_concurrent_tasks
            worker.display_name = display_name
            if status is not None:
                self._change_status(worker, status, now)
            self._store.save_worker(worker)
            self._dispatch(events)
            self._update_backlog()
            snapshot = copy.deepcopy(worker)
        self._emit(events)
        return snapshot

    def set_worker_status(self, worker_id: str, status: WorkerStatus) -> Worker:
        events: list[TaskEvent] = []
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise WorkerNotFoundError(f"Worker {worker_id} not found")
            self._change_status(worker, status, self._clock())
            self._store.save_worker(worker)
            self._dispatch(events)
            self._update_backlog()
            snapshot = copy.deepcopy(worker)
        self._emit(events)
        return snapshot

    def _change_status(self, worker: Worker, status: WorkerStatus, now: datetime) -> None:
        if worker.status is not WorkerStatus.AVAILABLE and status is WorkerStatus.AVAILABLE:
            worker.idle_since = now
        worker.status = status

    # ------------------------------------------------------------------
    # Tasks

    def submit(
        self,
        interaction_id: str,
        queue: str,
        *,
        required_skills: Iterable[str] = (),
        priority: int = 0,
    ) -> Task:
        """Create a pending task and try to place it right away."""

        events: list[TaskEvent] = []
        with self._lock:
            snapshot = self._create_task(interaction_id, queue, required_skills, priority, events)
        self._emit(events)
        return snapshot

    def submit_if_none_open(
        self,
        interaction_id: str,
        queue: str,
        *,
        required_skills: Iterable[str] = (),
        priority: int = 0,
    ) -> Task | None:
        """Like :meth:`submit`, but ``None`` when the interaction already has an open task.

        The check and the creation happen under the pool lock, so concurrent
        routing of one message thread yields a single task.
        """

        events: list[TaskEvent] = []
        with self._lock:
            if any(
                task.interaction_id == interaction_id and task.is_open
                for task in self._tasks.values()
            ):
                return None
            snapshot = self._create_task(interaction_id, queue, required_skills, priority, events)
        self._emit(events)
        return snapshot

    def _create_task(
        self,
        interaction_id: str,
        queue: str,
        required_skills: Iterable[str],
        priority: int,
        events: list[TaskEvent],
    ) -> Task:
        now = self._clock()
        task = Task(
            id=uuid.uuid4().hex,
            interaction_id=interaction_id,
            queue=queue,
            required_skills=tuple(required_skills),
            priority=priority,
            created_at=now,
            updated_at=now,
            seq=next(self._seq),
        )
        self._tasks[task.id] = task
        self._store.save_task(task)
        self._schedule_wait(task)
        self._event(events, "task.created", task)
        self._dispatch(events)
        self._update_backlog()
        return copy.deepcopy(task)

    def accept(self, task_id: str, worker_id: str | None = None) -> Task:
        events: list[TaskEvent] = []
        with self._lock:
            task = self._require_task(task_id)
            if task.state is not TaskState.RESERVED:
                raise InvalidTaskActionError(f"Task {task_id} is {task.state.value}, not reserved")
            if worker_id is not None and worker_id != task.worker_id:
                raise InvalidTaskActionError(f"Task {task_id} is reserved for another worker")
            self._timer.cancel(_reservation_key(task.id))
            self._timer.cancel(_wait_key(task.id))
            task.state = TaskState.ASSIGNED
            task.reservation_deadline = None
            task.updated_at = self._clock()
            self._store.save_task(task)
            self._event(events, "task.assigned", task, self._workers.get(task.worker_id or ""))
            self._update_backlog()
            snapshot = copy.deepcopy(task)
        self._emit(events)
        return snapshot

    def reject(self, task_id: str, worker_id: str | None = None) -> Task:
        events: list[TaskEvent] = []
        with self._lock:
            task = self._require_task(task_id)
            if task.state is not TaskState.RESERVED:
                raise InvalidTaskActionError(f"Task {task_id} is {task.state.value}, not reserved")
            if worker_id is not None and worker_id != task.worker_id:
                raise InvalidTaskActionError(f"Task {task_id} is reserved for another worker")
            self._timer.cancel(_reservation_key(task.id))
            self._return_reservation(task, "task.rejected", events)
            self._dispatch(events)
            self._update_backlog()
            snapshot = copy.deepcopy(task)
        self._emit(events)
        return snapshot

    def complete(self, task_id: str, worker_id: str | None = None) -> Task:
        events: list[TaskEvent] = []
        with self._lock:
            task = self._require_task(task_id)
            if task.state is not TaskState.ASSIGNED:
                raise InvalidTaskActionError(f"Task {task_id} is {task.state.value}, not assigned")
            if worker_id is not None and task.worker_id != worker_id:
                raise InvalidTaskActionError(f"Task {task_id} is assigned to another worker")
            worker = self._release_worker(task)
            task.state = TaskState.COMPLETED
            task.updated_at = self._clock()
            self._store.save_task(task)
            self._event(events, "task.completed", task, worker)
            self._dispatch(events)
            self._update_backlog()
            snapshot = copy.deepcopy(task)
        self._emit(events)
        return snapshot

    def cancel_for_interaction(self, interaction_id: str) -> list[Task]:
        """Cancel pending or reserved tasks of an interaction that ended.

        Assigned tasks are left for their worker to complete.
        """

        events: list[TaskEvent] = []
        canceled: list[Task] = []
        with self._lock:
            for task in self._tasks.values():
                if task.interaction_id != interaction_id:
                    continue
                if task.state not in (TaskState.PENDING, TaskState.RESERVED):
                    continue
                self._timer.cancel(_reservation_key(task.id))
                self._timer.cancel(_wait_key(task.id))
                worker = self._release_worker(task) if task.state is TaskState.RESERVED else None
                task.state = TaskState.CANCELED
                task.reservation_deadline = None
                task.updated_at = self._clock()
                self._store.save_task(task)
                self._event(events, "task.canceled", task, worker)
                canceled.append(copy.deepcopy(task))
            if canceled:
                self._dispatch(events)
                self._update_backlog()
        self._emit(events)
        return canceled

    # ------------------------------------------------------------------
    # Deadlines

    def _on_reservation_deadline(self, task_id: str, deadline: datetime) -> None:
        events: list[TaskEvent] = []
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.state is not TaskState.RESERVED:
                return
            if task.reservation_deadline != deadline:
                return
            logger.info("Reservation of task %s by %s expired", task.id, task.worker_id)
            self._return_reservation(task, "task.reservation_expired", events)
            self._dispatch(events)
            self._update_backlog()
        self._emit(events)

    def _on_wait_deadline(self, task_id: str) -> None:
        events: list[TaskEvent] = []
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.state is not TaskState.PENDING:
                return
            self._time_out(task, events)
            self._update_backlog()
        self._emit(events)

    def _schedule_wait(self, task: Task) -> None:
        created = task.created_at or self._clock()
        self._timer.schedule(
            _wait_key(task.id),
            created + self._max_wait,
            lambda task_id=task.id: self._on_wait_deadline(task_id),
        )

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)

    def _require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    def _release_worker(self, task: Task) -> Worker | None:
        worker = self._workers.get(task.worker_id or "")
        if worker is None:
            return None
        worker.active_task_count = max(worker.active_task_count - 1, 0)
        if worker.active_task_count == 0:
            worker.idle_since = self._clock()
        self._store.save_worker(worker)
        return worker

    def _return_reservation(self, task: Task, event_type: str, events: list[TaskEvent]) -> None:
        worker = self._release_worker(task)
        if task.worker_id and task.worker_id not in task.rejected_by:
            task.rejected_by.append(task.worker_id)
        task.worker_id = None
        task.reserved_at = None
        task.reservation_deadline = None
        task.updated_at = self._clock()
        if len(task.rejected_by) >= self._max_rejections:
            task.state = TaskState.REJECTED
            self._timer.cancel(_wait_key(task.id))
            self._store.save_task(task)
            self._event(events, event_type, task, worker)
            self._event(events, "task.rejected_final", task)
            return
        task.state = TaskState.PENDING
        self._store.save_task(task)
        self._event(events, event_type, task, worker)
        if task.created_at and self._clock() >= task.created_at + self._max_wait:
            self._time_out(task, events)

    def _time_out(self, task: Task, events: list[TaskEvent]) -> None:
        task.state = TaskState.TIMED_OUT
        task.updated_at = self._clock()
        self._timer.cancel(_wait_key(task.id))
        self._store.save_task(task)
        logger.info("Task %s timed out waiting in %s", task.id, task.queue)
        self._event(events, "task.timed_out", task)

    def _dispatch(self, events: list[TaskEvent]) -> None:
        pending = sorted(
            (task for task in self._tasks.values() if task.state is TaskState.PENDING),
            key=lambda task: (-task.priority, task.seq),
        )
        for task in pending:
            candidates = [worker for worker in self._workers.values() if worker.can_take(task)]
            if not candidates:
                continue
            worker = min(
                candidates,
                key=lambda w: (w.active_task_count, w.idle_since or _EPOCH, w.id),
            )
            self._reserve(task, worker, events)

    def _reserve(self, task: Task, worker: Worker, events: list[TaskEvent]) -> None:
        now = self._clock()
        worker.active_task_count += 1
        task.state = TaskState.RESERVED
        task.worker_id = worker.id
        task.reserved_at = now
        task.reservation_deadline = now + self._reservation_timeout
        task.updated_at = now
        self._store.save_worker(worker)
        self._store.save_task(task)
        deadline = task.reservation_deadline
        self._timer.schedule(
            _reservation_key(task.id),
            deadline,
            lambda task_id=task.id, deadline=deadline: self._on_reservation_deadline(
                task_id, deadline
            ),
        )
        self._event(events, "task.reserved", task, worker)

    def _update_backlog(self) -> None:
        counts: dict[str, int] = {}
        for task in self._tasks.values():
            counts.setdefault(task.queue, 0)
            if task.state is TaskState.PENDING:
                counts[task.queue] += 1
        for queue, count in counts.items():
            TASK_BACKLOG.labels(queue=queue).set(count)


def _reservation_key(task_id: str) -> str:
    return f"reservation:{task_id}"


def _wait_key(task_id: str) -> str:
    return f"wait:{task_id}"
