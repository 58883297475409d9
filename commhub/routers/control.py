"""Operator actions: task decisions, worker updates, routing rules, retries."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import SQLAlchemyError

from ..activity.models import ActivityKind
from ..activity.schemas import ActivityLogOut
from ..contacts.models import Contact
from ..core.errors import (
    ActivityLogConflictError,
    ActivityLogNotFoundError,
    InvalidTaskActionError,
    RuleNotFoundError,
    TaskNotFoundError,
    WorkerNotFoundError,
)
from ..interactions.schemas import InteractionOut, OutboundMessageRequest
from ..platform import Platform, get_platform
from ..routing.schemas import (
    RoutingDecisionOut,
    RoutingRuleCreate,
    RoutingRuleOut,
    RoutingTestRequest,
)
from ..scheduling.schemas import (
    TaskActionRequest,
    TaskOut,
    WorkerOut,
    WorkerStatusUpdate,
    WorkerUpsert,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["control"])


@contextmanager
def _service_context() -> Iterator[None]:
    try:
        yield
    except (
        TaskNotFoundError,
        WorkerNotFoundError,
        RuleNotFoundError,
        ActivityLogNotFoundError,
    ) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (InvalidTaskActionError, ActivityLogConflictError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        # WebhookValidationError is a ValueError as well.
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        logger.exception("Store failure")
        raise HTTPException(status_code=500, detail="Storage unavailable") from exc


# ----------------------------------------------------------------------
# Tasks


@router.post("/tasks/{task_id}/accept", response_model=TaskOut)
def accept_task(
    task_id: str,
    payload: TaskActionRequest | None = None,
    platform: Platform = Depends(get_platform),
) -> TaskOut:
    worker_id = payload.worker_id if payload else None
    with _service_context():
        task = platform.scheduler.accept(task_id, worker_id)
    return TaskOut.from_domain(task)


@router.post("/tasks/{task_id}/reject", response_model=TaskOut)
def reject_task(
    task_id: str,
    payload: TaskActionRequest | None = None,
    platform: Platform = Depends(get_platform),
) -> TaskOut:
    """Decline a reservation; the task goes back to its queue."""
    worker_id = payload.worker_id if payload else None
    with _service_context():
        task = platform.scheduler.reject(task_id, worker_id)
    return TaskOut.from_domain(task)


@router.post("/tasks/{task_id}/complete", response_model=TaskOut)
def complete_task(
    task_id: str,
    payload: TaskActionRequest | None = None,
    platform: Platform = Depends(get_platform),
) -> TaskOut:
    worker_id = payload.worker_id if payload else None
    with _service_context():
        task = platform.scheduler.complete(task_id, worker_id)
    return TaskOut.from_domain(task)


# ----------------------------------------------------------------------
# Workers


@router.put("/workers/{worker_id}", response_model=WorkerOut)
def upsert_worker(
    worker_id: str, payload: WorkerUpsert, platform: Platform = Depends(get_platform)
) -> WorkerOut:
    """Create or update a worker's skills and capacity."""
    with _service_context():
        worker = platform.scheduler.upsert_worker(
            worker_id,
            skills=payload.skills,
            max_concurrent_tasks=payload.max_concurrent_tasks,
            display_name=payload.display_name,
            status=payload.status,
        )
    return WorkerOut.from_domain(worker)


@router.post("/workers/{worker_id}/status", response_model=WorkerOut)
def set_worker_status(
    worker_id: str,
    payload: WorkerStatusUpdate,
    platform: Platform = Depends(get_platform),
) -> WorkerOut:
    with _service_context():
        worker = platform.scheduler.set_worker_status(worker_id, payload.status)
    return WorkerOut.from_domain(worker)


# ----------------------------------------------------------------------
# Routing rules


@router.post(
    "/routing/rules", response_model=RoutingRuleOut, status_code=status.HTTP_201_CREATED
)
def create_routing_rule(
    payload: RoutingRuleCreate, platform: Platform = Depends(get_platform)
) -> RoutingRuleOut:
    with _service_context():
        rule = platform.routing.add_rule(
            priority=payload.priority,
            predicate_kind=payload.predicate_kind,
            predicate_args=payload.predicate_args,
            target_queue=payload.target_queue,
            name=payload.name,
        )
    return RoutingRuleOut.from_domain(rule)


@router.delete("/routing/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_routing_rule(rule_id: str, platform: Platform = Depends(get_platform)) -> Response:
    with _service_context():
        platform.routing.remove_rule(rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/routing/test", response_model=RoutingDecisionOut)
def dry_run_routing(
    payload: RoutingTestRequest, platform: Platform = Depends(get_platform)
) -> RoutingDecisionOut:
    """Dry-run the current rules without creating anything."""
    contact = None
    if payload.priority_tier is not None:
        contact = Contact(
            external_id="routing-test", display_name=None, priority_tier=payload.priority_tier
        )
    decision = platform.routing.decide(
        text_signal=payload.text_signal, topic=payload.topic, contact=contact
    )
    return RoutingDecisionOut.from_domain(decision)


# ----------------------------------------------------------------------
# Activity log and outbound messages


@router.post("/activity-log/{interaction_id}/{kind}/retry", response_model=ActivityLogOut)
def retry_activity_log(
    interaction_id: str, kind: ActivityKind, platform: Platform = Depends(get_platform)
) -> ActivityLogOut:
    """Re-queue an entry that exhausted its delivery attempts."""
    with _service_context():
        entry = platform.activity.retry(interaction_id, kind)
    return ActivityLogOut.from_domain(entry)


@router.post("/messages", response_model=InteractionOut, status_code=status.HTTP_201_CREATED)
def register_outbound_message(
    payload: OutboundMessageRequest, platform: Platform = Depends(get_platform)
) -> InteractionOut:
    with _service_context():
        result = platform.gateway.record_outbound_message(
            sid=payload.sid,
            line_address=payload.from_address,
            customer_address=payload.to_address,
            body=payload.body,
            media_urls=payload.media_urls,
            status=payload.status,
        )
        interaction = platform.interactions.get(result.interaction_id or "")
    if interaction is None:
        raise HTTPException(status_code=500, detail="Thread was not stored")
    return InteractionOut.from_domain(interaction)
