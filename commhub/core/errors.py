"""Domain exceptions shared by the services and routers."""

from __future__ import annotations


class SignatureError(RuntimeError):
    """Raised when a webhook request fails provider signature verification."""


class WebhookValidationError(ValueError):
    """Raised when a webhook payload is malformed or missing required fields."""


class OrphanEventError(RuntimeError):
    """Raised when a follow-up event references an interaction never seen."""

    def __init__(self, interaction_id: str, kind: str):
        super().__init__(f"No interaction {interaction_id!r} for event {kind!r}")
        self.interaction_id = interaction_id
        self.kind = kind


class TaskNotFoundError(RuntimeError):
    """Raised when a task id does not exist."""


class WorkerNotFoundError(RuntimeError):
    """Raised when a worker id does not exist."""


class InvalidTaskActionError(RuntimeError):
    """Raised when a task action is not allowed from the task's current state."""


class RuleNotFoundError(RuntimeError):
    """Raised when a routing rule id does not exist."""


class ActivityLogNotFoundError(RuntimeError):
    """Raised when no activity log entry exists for an interaction and kind."""


class ActivityLogConflictError(RuntimeError):
    """Raised when an activity log entry is not in a state that allows the action."""


__all__ = [
    "ActivityLogConflictError",
    "ActivityLogNotFoundError",
    "InvalidTaskActionError",
    "OrphanEventError",
    "RuleNotFoundError",
    "SignatureError",
    "TaskNotFoundError",
    "WebhookValidationError",
    "WorkerNotFoundError",
]
