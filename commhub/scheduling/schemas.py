"""Pydantic schemas for the task and worker APIs."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .models import Task, Worker, WorkerStatus


class TaskOut(BaseModel):
    id: str
    interaction_id: str
    queue: str
    required_skills: list[str] = Field(default_factory=list)
    priority: int = 0
    state: str
    worker_id: str | None = None
    reserved_at: datetime | None = None
    reservation_deadline: datetime | None = None
    rejected_by: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_domain(cls, task: Task) -> "TaskOut":
        return cls.model_validate(task.to_dict())


class TaskList(BaseModel):
    items: list[TaskOut]
    total: int


class TaskActionRequest(BaseModel):
    worker_id: str | None = None


class WorkerOut(BaseModel):
    id: str
    display_name: str | None = None
    skills: list[str] = Field(default_factory=list)
    status: WorkerStatus
    active_task_count: int
    max_concurrent_tasks: int
    idle_since: datetime | None = None

    @classmethod
    def from_domain(cls, worker: Worker) -> "WorkerOut":
        return cls.model_validate(worker.to_dict())


class WorkerUpsert(BaseModel):
    display_name: str | None = Field(default=None, max_length=255)
    skills: list[str] = Field(default_factory=list)
    max_concurrent_tasks: int = Field(default=1, ge=1, le=100)
    status: WorkerStatus | None = None


class WorkerStatusUpdate(BaseModel):
    status: WorkerStatus


class QueueSummary(BaseModel):
    queue: str
    pending: int = 0
    reserved: int = 0
    assigned: int = 0
