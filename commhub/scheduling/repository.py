"""Persistence for workers and tasks."""

from __future__ import annotations

import copy
import threading
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import as_utc
from ..models import TaskRecord, WorkerRecord
from ..models.session import session_scope
from .models import Task, TaskState, Worker, WorkerStatus


class TaskStore(Protocol):
    """Write-through storage for the scheduler's aggregate.

    The scheduler keeps the authoritative copy in memory under its pool lock
    and writes every change through; the store is read once at start-up.
    """

    def load_workers(self) -> list[Worker]: ...

    def load_tasks(self) -> list[Task]: ...

    def save_worker(self, worker: Worker) -> None: ...

    def save_task(self, task: Task) -> None: ...


class InMemoryTaskStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._workers: dict[str, Worker] = {}
        self._tasks: dict[str, Task] = {}

    def load_workers(self) -> list[Worker]:
        with self._lock:
            return [copy.deepcopy(worker) for worker in self._workers.values()]

    def load_tasks(self) -> list[Task]:
        with self._lock:
            return [copy.deepcopy(task) for task in self._tasks.values()]

    def save_worker(self, worker: Worker) -> None:
        with self._lock:
            self._workers[worker.id] = copy.deepcopy(worker)

    def save_task(self, task: Task) -> None:
        with self._lock:
            self._tasks[task.id] = copy.deepcopy(task)


class SqlAlchemyTaskStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def load_workers(self) -> list[Worker]:
        with session_scope(self._session_factory) as session:
            return [
                Worker(
                    id=record.id,
                    display_name=record.display_name,
                    skills=frozenset(record.skills or []),
                    status=WorkerStatus(record.status),
                    active_task_count=record.active_task_count,
                    max_concurrent_tasks=record.max_concurrent_tasks,
                    idle_since=as_utc(record.idle_since),
                )
                for record in session.scalars(select(WorkerRecord))
            ]

    def load_tasks(self) -> list[Task]:
        with session_scope(self._session_factory) as session:
            return [
                Task(
                    id=record.id,
                    seq=record.seq,
                    interaction_id=record.interaction_id,
                    queue=record.queue,
                    required_skills=tuple(record.required_skills or []),
                    priority=record.priority,
                    state=TaskState(record.state),
                    worker_id=record.worker_id,
                    reserved_at=as_utc(record.reserved_at),
                    reservation_deadline=as_utc(record.reservation_deadline),
                    rejected_by=list(record.rejected_by or []),
                    created_at=as_utc(record.created_at),
                    updated_at=as_utc(record.updated_at),
                )
                for record in session.scalars(select(TaskRecord).order_by(TaskRecord.seq))
            ]

    def save_worker(self, worker: Worker) -> None:
        with session_scope(self._session_factory) as session:
            record = session.get(WorkerRecord, worker.id)
            if record is None:
                record = WorkerRecord(id=worker.id)
                session.add(record)
            record.display_name = worker.display_name
            record.skills = sorted(worker.skills)
            record.status = worker.status.value
            record.active_task_count = worker.active_task_count
            record.max_concurrent_tasks = worker.max_concurrent_tasks
            record.idle_since = worker.idle_since

    def save_task(self, task: Task) -> None:
        with session_scope(self._session_factory) as session:
            record = session.get(TaskRecord, task.id)
            if record is None:
                record = TaskRecord(id=task.id)
                session.add(record)
            record.seq = task.seq
            record.interaction_id = task.interaction_id
            record.queue = task.queue
            record.required_skills = list(task.required_skills)
            record.priority = task.priority
            record.state = task.state.value
            record.worker_id = task.worker_id
            record.reserved_at = task.reserved_at
            record.reservation_deadline = task.reservation_deadline
            record.rejected_by = list(task.rejected_by)
            record.created_at = task.created_at
            record.updated_at = task.updated_at
