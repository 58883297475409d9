"""Ingest pipeline: ledger, state machine, then side effects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from ..activity.logger import ActivityLogger
from ..activity.models import ActivityKind
from ..contacts.models import PriorityTier
from ..contacts.resolver import ContactResolver
from ..core.errors import OrphanEventError, WebhookValidationError
from ..core.metrics import TRANSITION_CONFLICTS, WEBHOOK_EVENTS
from ..core.runner import BackgroundRunner
from ..interactions.models import (
    Call,
    CallState,
    Direction,
    EventKind,
    Interaction,
    MessageThread,
    Voicemail,
    WebhookEvent,
    thread_id_for,
)
from ..interactions.service import InteractionService
from ..interactions.state_machine import EffectKind, Transition, settled_effects
from ..realtime.broadcaster import (
    GLOBAL_ROOM,
    Broadcaster,
    interaction_room,
    queue_room,
    worker_room,
)
from ..routing.engine import VIP_TASK_PRIORITY, RoutingEngine
from ..routing.rules import RoutingDecision
from ..scheduling.models import TaskEvent
from ..scheduling.scheduler import TaskScheduler
from .ledger import IdempotencyLedger, LedgerKey, fingerprint
from .schemas import MESSAGE_STATUSES, normalize_address

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    CREATED = "created"
    TRANSITIONED = "transitioned"
    ATTACHED = "attached"
    NOOP = "noop"
    DUPLICATE = "duplicate"
    ORPHAN = "orphan"
    IGNORED = "ignored"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    interaction_id: str | None = None
    transitions: list[Transition] = field(default_factory=list)


class WebhookGateway:
    """Coordinates everything that happens for one provider event.

    The delivery is claimed in the ledger, applied to its interaction under
    the interaction's lock, and its side effects are dispatched: broadcasts
    and task cancellation inline, contact resolution and routing on the
    background runner. The ledger claim is committed at the end, or released
    if anything failed so the provider's retry is processed again.
    """

    def __init__(
        self,
        *,
        ledger: IdempotencyLedger,
        interactions: InteractionService,
        resolver: ContactResolver,
        routing: RoutingEngine,
        scheduler: TaskScheduler,
        activity: ActivityLogger,
        broadcaster: Broadcaster,
        runner: BackgroundRunner,
        voicemail_queue: str = "voicemail",
    ) -> None:
        self._ledger = ledger
        self._interactions = interactions
        self._resolver = resolver
        self._routing = routing
        self._scheduler = scheduler
        self._activity = activity
        self._broadcaster = broadcaster
        self._runner = runner
        self._voicemail_queue = voicemail_queue

    # ------------------------------------------------------------------
    # Entry points

    def ingest(self, event: WebhookEvent) -> IngestResult:
        kind = event.kind.value
        key = LedgerKey(event.interaction_id, kind, fingerprint(event.payload))
        if not self._ledger.claim(key):
            logger.debug("Duplicate %s for %s", kind, event.interaction_id)
            WEBHOOK_EVENTS.labels(kind=kind, outcome=IngestOutcome.DUPLICATE.value).inc()
            return IngestResult(IngestOutcome.DUPLICATE, event.interaction_id)

        try:
            transitions = self._interactions.apply(event)
        except OrphanEventError as exc:
            self._ledger.commit(key, IngestOutcome.ORPHAN.value)
            logger.warning("Orphan webhook: %s", exc)
            WEBHOOK_EVENTS.labels(kind=kind, outcome=IngestOutcome.ORPHAN.value).inc()
            return IngestResult(IngestOutcome.ORPHAN, event.interaction_id)
        except Exception:
            self._ledger.release(key)
            raise

        for transition in transitions:
            if not transition.changed:
                # Redo whatever an earlier, failed delivery of this state left undone.
                transition.effects.extend(settled_effects(transition.interaction, event))

        try:
            self._dispatch(transitions)
        except Exception:
            self._ledger.release(key)
            raise

        primary = transitions[0]
        outcome = IngestOutcome(primary.outcome.value)
        self._ledger.commit(key, outcome.value)
        if outcome is IngestOutcome.NOOP:
            TRANSITION_CONFLICTS.labels(kind=kind).inc()
        WEBHOOK_EVENTS.labels(kind=kind, outcome=outcome.value).inc()
        return IngestResult(outcome, primary.interaction.id, transitions)

    def apply_internal(self, event: WebhookEvent) -> IngestResult:
        """Apply an event raised by the core itself; no ledger involved."""

        transitions = self._interactions.apply(event)
        self._dispatch(transitions)
        primary = transitions[0]
        return IngestResult(IngestOutcome(primary.outcome.value), primary.interaction.id, transitions)

    def record_outbound_message(
        self,
        *,
        sid: str,
        line_address: str,
        customer_address: str,
        body: str = "",
        media_urls: list[str] | None = None,
        status: str = "queued",
    ) -> IngestResult:
        """Register a message sent through the provider so its status callbacks apply."""

        try:
            line = normalize_address(line_address)
            customer = normalize_address(customer_address)
        except ValueError as exc:
            raise WebhookValidationError(str(exc)) from exc
        state = MESSAGE_STATUSES.get(status.lower())
        if state is None:
            raise WebhookValidationError(f"Unknown message status {status!r}")
        event = WebhookEvent(
            thread_id_for(customer, line),
            EventKind.MESSAGE_RECEIVED,
            {
                "direction": Direction.OUTBOUND.value,
                "message_sid": sid,
                "from_address": line,
                "to_address": customer,
                "body": body,
                "media_urls": list(media_urls or []),
                "message_status": state.value,
            },
        )
        return self.apply_internal(event)

    # ------------------------------------------------------------------
    # Side effects

    def _dispatch(self, transitions: list[Transition]) -> None:
        for transition in transitions:
            interaction = transition.interaction
            for effect in transition.effects:
                if effect.kind is EffectKind.BROADCAST:
                    self._broadcast(effect.data["event"], transition)
                elif effect.kind is EffectKind.CLOSE_TASK:
                    self._scheduler.cancel_for_interaction(interaction.id)
                elif effect.kind is EffectKind.LOG_ACTIVITY:
                    self._schedule_activity(interaction, effect.data)
                elif effect.kind is EffectKind.ROUTE:
                    interaction_id = effect.data["interaction_id"]
                    self._runner.submit(
                        f"route:{interaction_id}",
                        lambda interaction_id=interaction_id: self.route_interaction(interaction_id),
                    )

    def _broadcast(self, event_type: str, transition: Transition) -> None:
        interaction = transition.interaction
        self._broadcaster.publish_many(
            _rooms_for(interaction),
            event_type,
            {
                "interaction": interaction.to_dict(),
                "previous_state": transition.previous_state,
                "outcome": transition.outcome.value,
            },
        )

    def _schedule_activity(self, interaction: Interaction, data: dict) -> None:
        kind = ActivityKind(data["kind"])
        parent_id = interaction.id if kind is ActivityKind.SMS else None
        self._activity.schedule(
            data["subject_id"],
            kind,
            data["outcome"],
            parent_id=parent_id,
            contact_external_id=interaction.contact_id,
        )

    # ------------------------------------------------------------------
    # Routing (runs on the background runner)

    def route_interaction(self, interaction_id: str) -> RoutingDecision | None:
        """Resolve the counterparty, pick a queue and hand a task to the scheduler."""

        interaction = self._interactions.get(interaction_id)
        if interaction is None or interaction.is_terminal:
            return None
        if isinstance(interaction, Call) and interaction.state != CallState.RINGING.value:
            return None
        if isinstance(interaction, MessageThread):
            if self._scheduler.open_task_for(interaction.id) is not None:
                return None

        resolution = self._resolver.resolve(interaction.customer_address)
        contact = resolution.contact
        if contact is not None and contact.external_id != interaction.contact_id:
            contact_id = contact.external_id
            self._interactions.update(
                interaction_id, lambda item: setattr(item, "contact_id", contact_id)
            )

        if isinstance(interaction, Voicemail):
            decision = RoutingDecision(
                self._voicemail_queue,
                None,
                self._routing.skills_for_topic(interaction.topic),
                VIP_TASK_PRIORITY if contact and contact.priority_tier is PriorityTier.VIP else 0,
            )
        else:
            decision = self._routing.route(interaction, contact)

        if isinstance(interaction, Call) and decision.queue == self._voicemail_queue:
            logger.info("Diverting call %s to voicemail (rule %s)", interaction_id, decision.rule_id)
            self.apply_internal(
                WebhookEvent(
                    interaction_id,
                    EventKind.VOICEMAIL,
                    {"reason": "routing", "rule_id": decision.rule_id},
                )
            )
            return decision

        if isinstance(interaction, MessageThread):
            # One open task per thread, however many messages race through here.
            task = self._scheduler.submit_if_none_open(
                interaction_id,
                decision.queue,
                required_skills=decision.required_skills,
                priority=decision.priority,
            )
            if task is None:
                logger.debug("Thread %s already has an open task", interaction_id)
                return None
        else:
            task = self._scheduler.submit(
                interaction_id,
                decision.queue,
                required_skills=decision.required_skills,
                priority=decision.priority,
            )

        def _assign_queue(item: Interaction) -> None:
            item.queue = decision.queue
            item.task_id = task.id

        updated = self._interactions.update(interaction_id, _assign_queue)
        if updated is not None and updated.is_terminal:
            # The interaction ended while it was being routed.
            self._scheduler.cancel_for_interaction(interaction_id)
        logger.info(
            "Routed %s to %s (rule %s, task %s)",
            interaction_id,
            decision.queue,
            decision.rule_id,
            task.id,
        )
        return decision

    # ------------------------------------------------------------------
    # Scheduler notifications

    def handle_task_event(self, event: TaskEvent) -> None:
        task = event.task
        if event.type == "task.assigned" and task.worker_id:
            worker_id = task.worker_id
            self._interactions.update(
                task.interaction_id,
                lambda item: setattr(item, "assigned_worker_id", worker_id),
            )
        rooms = [GLOBAL_ROOM, queue_room(task.queue), interaction_room(task.interaction_id)]
        worker_id = task.worker_id or (event.worker.id if event.worker else None)
        if worker_id:
            rooms.append(worker_room(worker_id))
        self._broadcaster.publish_many(
            rooms,
            event.type,
            {
                "task": task.to_dict(),
                "worker": event.worker.to_dict() if event.worker else None,
            },
        )


def _rooms_for(interaction: Interaction) -> list[str]:
    rooms = [GLOBAL_ROOM, interaction_room(interaction.id)]
    if interaction.queue:
        rooms.append(queue_room(interaction.queue))
    if interaction.assigned_worker_id:
        rooms.append(worker_room(interaction.assigned_worker_id))
    return rooms
