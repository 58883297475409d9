"""Read-only views of interactions, tasks, workers, queues and activity logs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from ..activity.models import DeliveryState
from ..activity.schemas import ActivityLogList, ActivityLogOut
from ..interactions.models import InteractionType
from ..interactions.schemas import InteractionList, InteractionOut
from ..platform import Platform, get_platform
from ..routing.schemas import RoutingRuleOut
from ..scheduling.models import TaskState
from ..scheduling.schemas import QueueSummary, TaskList, TaskOut, WorkerOut

router = APIRouter(prefix="/api", tags=["dashboard"])


@router.get("/interactions", response_model=InteractionList)
def list_interactions(
    type: InteractionType | None = None,
    state: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    platform: Platform = Depends(get_platform),
) -> InteractionList:
    items = platform.interactions.list(
        type=type.value if type else None, state=state, limit=limit, offset=offset
    )
    return InteractionList(
        items=[InteractionOut.from_domain(item) for item in items], total=len(items)
    )


@router.get("/interactions/{interaction_id}", response_model=InteractionOut)
def get_interaction(
    interaction_id: str, platform: Platform = Depends(get_platform)
) -> InteractionOut:
    interaction = platform.interactions.get(interaction_id)
    if interaction is None:
        raise HTTPException(status_code=404, detail=f"Interaction {interaction_id} not found")
    return InteractionOut.from_domain(interaction)


@router.get("/tasks", response_model=TaskList)
def list_tasks(
    state: TaskState | None = None,
    queue: str | None = None,
    platform: Platform = Depends(get_platform),
) -> TaskList:
    tasks = platform.scheduler.list_tasks(state=state, queue=queue)
    return TaskList(items=[TaskOut.from_domain(task) for task in tasks], total=len(tasks))


@router.get("/workers", response_model=list[WorkerOut])
def list_workers(platform: Platform = Depends(get_platform)) -> list[WorkerOut]:
    return [WorkerOut.from_domain(worker) for worker in platform.scheduler.list_workers()]


@router.get("/queues", response_model=list[QueueSummary])
def list_queues(platform: Platform = Depends(get_platform)) -> list[QueueSummary]:
    """Backlog per queue: pending, reserved and assigned task counts."""
    backlog = platform.scheduler.backlog()
    return [QueueSummary(queue=name, **counts) for name, counts in sorted(backlog.items())]


@router.get("/activity-log", response_model=ActivityLogList)
def list_activity_log(
    state: DeliveryState | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    platform: Platform = Depends(get_platform),
) -> ActivityLogList:
    entries = platform.activity.list(state=state, limit=limit, offset=offset)
    return ActivityLogList(
        items=[ActivityLogOut.from_domain(entry) for entry in entries], total=len(entries)
    )


@router.get("/routing/rules", response_model=list[RoutingRuleOut])
def list_routing_rules(platform: Platform = Depends(get_platform)) -> list[RoutingRuleOut]:
    """Rules in evaluation order."""
    return [RoutingRuleOut.from_domain(rule) for rule in platform.routing.snapshot()]
