"""Workers and tasks handled by the assignment scheduler."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkerStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class TaskState(str, Enum):
    PENDING = "pending"
    RESERVED = "reserved"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"


OPEN_TASK_STATES = frozenset({TaskState.PENDING, TaskState.RESERVED, TaskState.ASSIGNED})


@dataclass
class Worker:
    id: str
    display_name: str | None = None
    skills: frozenset[str] = frozenset()
    status: WorkerStatus = WorkerStatus.OFFLINE
    active_task_count: int = 0
    max_concurrent_tasks: int = 1
    idle_since: datetime | None = None

    @property
    def has_capacity(self) -> bool:
        return self.active_task_count < self.max_concurrent_tasks

    def can_take(self, task: "Task") -> bool:
        return (
            self.status is WorkerStatus.AVAILABLE
            and self.has_capacity
            and set(task.required_skills).issubset(self.skills)
            and self.id not in task.rejected_by
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["skills"] = sorted(self.skills)
        data["status"] = self.status.value
        return data


@dataclass
class Task:
    id: str
    interaction_id: str
    queue: str
    required_skills: tuple[str, ...] = ()
    priority: int = 0
    state: TaskState = TaskState.PENDING
    worker_id: str | None = None
    reserved_at: datetime | None = None
    reservation_deadline: datetime | None = None
    rejected_by: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    seq: int = 0

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_TASK_STATES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["required_skills"] = list(self.required_skills)
        return data


@dataclass(frozen=True)
class TaskEvent:
    """Emitted after every scheduler change, outside the pool lock."""

    type: str
    task: Task
    worker: Worker | None = None
