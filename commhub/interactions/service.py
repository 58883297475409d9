"""Serialized application of events to stored interactions."""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..core.clock import Clock, utcnow
from ..core.errors import OrphanEventError
from ..core.locks import KeyedLock
from . import state_machine
from .models import Call, EventKind, Interaction, WebhookEvent
from .repository import InteractionRepository
from .state_machine import EffectKind, Transition

logger = logging.getLogger(__name__)


class InteractionService:
    """Runs the state machines against the repository.

    Events for the same interaction are applied one at a time under a per-id
    lock; events for different interactions proceed in parallel. The lock is
    only held for load, transition and save.
    """

    def __init__(
        self,
        repository: InteractionRepository,
        *,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # Queries

    def get(self, interaction_id: str) -> Interaction | None:
        return self._repository.get(interaction_id)

    def list(
        self,
        *,
        type: str | None = None,
        state: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Interaction]:
        return self._repository.list(type=type, state=state, limit=limit, offset=offset)

    def thread_for_message(self, message_sid: str) -> str | None:
        return self._repository.thread_for_message(message_sid)

    # ------------------------------------------------------------------
    # Event application

    def apply(self, event: WebhookEvent) -> list[Transition]:
        """Apply ``event`` and everything it cascades into.

        Returns the transitions in the order they happened; the first one is
        the transition of the interaction the event was addressed to. Raises
        :class:`OrphanEventError` when that interaction does not exist and the
        event cannot create it.
        """

        target_id = event.interaction_id
        if event.kind is EventKind.MESSAGE_STATUS:
            thread_id = self._repository.thread_for_message(event.payload["message_sid"])
            if thread_id is None:
                raise OrphanEventError(event.interaction_id, event.kind.value)
            target_id = thread_id

        transition = self._apply_one(target_id, event)
        transitions = [transition]
        for effect in transition.effects:
            if effect.kind is EffectKind.SPAWN_VOICEMAIL:
                spawned = self._spawn_voicemail(transition.interaction)
                if spawned is not None:
                    transitions.append(spawned)
        for effect in transition.effects:
            if effect.kind is EffectKind.FORWARD:
                forwarded = self._forward(effect.data["target_id"], event)
                if forwarded is not None:
                    transitions.append(forwarded)
        return transitions

    def update(
        self, interaction_id: str, mutate: Callable[[Interaction], None]
    ) -> Interaction | None:
        """Change bookkeeping fields (contact, queue, task, worker) under the lock."""

        with self._locks.hold(interaction_id):
            interaction = self._repository.get(interaction_id)
            if interaction is None:
                return None
            mutate(interaction)
            interaction.updated_at = self._clock()
            self._repository.save(interaction)
            return interaction

    def _apply_one(self, interaction_id: str, event: WebhookEvent) -> Transition:
        with self._locks.hold(interaction_id):
            current = self._repository.get(interaction_id)
            transition = state_machine.apply(current, event, self._clock())
            if transition.changed:
                self._repository.save(transition.interaction)
        if not transition.changed:
            logger.debug(
                "No transition for %s on %s in state %s",
                event.kind.value,
                interaction_id,
                transition.previous_state,
            )
        return transition

    def _spawn_voicemail(self, call: Interaction) -> Transition | None:
        if not isinstance(call, Call) or call.voicemail_id is None:
            return None
        with self._locks.hold(call.voicemail_id):
            if self._repository.get(call.voicemail_id) is not None:
                return None
            transition = state_machine.spawn_voicemail(call, self._clock())
            self._repository.save(transition.interaction)
        return transition

    def _forward(self, target_id: str, event: WebhookEvent) -> Transition | None:
        forwarded = WebhookEvent(
            interaction_id=target_id,
            kind=event.kind,
            payload=event.payload,
            received_at=event.received_at,
        )
        try:
            return self._apply_one(target_id, forwarded)
        except OrphanEventError:
            logger.warning(
                "Dropping %s for missing voicemail %s", event.kind.value, target_id
            )
            return None
