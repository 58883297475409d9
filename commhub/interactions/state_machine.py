"""Per-kind transition tables for calls, voicemails and message threads.

:func:`apply` is pure: it never touches storage, it copies the interaction it
is given and reports the new snapshot together with the side effects the
caller must carry out. Edges not listed in a table are no-ops; metadata
(duration, recording, transcription) attaches in every state without
changing the state classification.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..core.errors import OrphanEventError
from .models import (
    MESSAGE_TERMINAL_STATES,
    Call,
    CallState,
    Direction,
    EventKind,
    Interaction,
    Message,
    MessageState,
    MessageThread,
    ThreadState,
    Voicemail,
    VoicemailState,
    WebhookEvent,
    voicemail_id_for,
)


class Outcome(str, Enum):
    CREATED = "created"
    TRANSITIONED = "transitioned"
    ATTACHED = "attached"
    NOOP = "noop"


class EffectKind(str, Enum):
    ROUTE = "route"
    BROADCAST = "broadcast"
    LOG_ACTIVITY = "log_activity"
    CLOSE_TASK = "close_task"
    SPAWN_VOICEMAIL = "spawn_voicemail"
    FORWARD = "forward"


@dataclass(frozen=True)
class SideEffect:
    kind: EffectKind
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Transition:
    interaction: Interaction
    previous_state: str | None
    outcome: Outcome
    effects: list[SideEffect] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.outcome is not Outcome.NOOP


CALL_EDGES: dict[CallState, dict[EventKind, CallState]] = {
    CallState.RINGING: {
        EventKind.ANSWERED: CallState.IN_PROGRESS,
        EventKind.COMPLETED: CallState.COMPLETED,
        EventKind.NO_ANSWER: CallState.NO_ANSWER,
        EventKind.VOICEMAIL: CallState.VOICEMAIL,
        EventKind.FAILED: CallState.FAILED,
    },
    CallState.IN_PROGRESS: {
        EventKind.COMPLETED: CallState.COMPLETED,
        EventKind.FAILED: CallState.FAILED,
    },
    CallState.VOICEMAIL: {
        EventKind.COMPLETED: CallState.COMPLETED,
        EventKind.RECORDING_READY: CallState.COMPLETED,
        EventKind.FAILED: CallState.FAILED,
    },
    CallState.COMPLETED: {},
    CallState.NO_ANSWER: {},
    CallState.FAILED: {},
}

VOICEMAIL_EDGES: dict[VoicemailState, frozenset[EventKind]] = {
    VoicemailState.RECORDING: frozenset(
        {EventKind.RECORDING_READY, EventKind.TRANSCRIPTION_READY}
    ),
    VoicemailState.TRANSCRIBING: frozenset({EventKind.TRANSCRIPTION_READY}),
    VoicemailState.READY: frozenset(),
    VoicemailState.TRANSCRIPTION_FAILED: frozenset(),
}

MESSAGE_EDGES: dict[MessageState, frozenset[MessageState]] = {
    MessageState.QUEUED: frozenset(
        {MessageState.SENT, MessageState.DELIVERED, MessageState.FAILED}
    ),
    MessageState.SENT: frozenset({MessageState.DELIVERED, MessageState.FAILED}),
    MessageState.DELIVERED: frozenset(),
    MessageState.FAILED: frozenset(),
}


def apply(
    interaction: Interaction | None,
    event: WebhookEvent,
    now: datetime | None = None,
) -> Transition:
    """Return the transition ``event`` causes on ``interaction``.

    ``interaction`` is ``None`` when the id has never been seen; only
    ``ringing`` and ``message-received`` may create one, anything else raises
    :class:`OrphanEventError`.
    """

    now = now or datetime.now(timezone.utc)
    if interaction is None:
        if event.kind is EventKind.RINGING:
            return _create_call(event, now)
        if event.kind is EventKind.MESSAGE_RECEIVED:
            return _create_thread(event, now)
        raise OrphanEventError(event.interaction_id, event.kind.value)

    current = copy.deepcopy(interaction)
    if isinstance(current, Call):
        return _apply_call(current, event, now)
    if isinstance(current, Voicemail):
        return _apply_voicemail(current, event, now)
    if isinstance(current, MessageThread):
        return _apply_thread(current, event, now)
    raise TypeError(f"Unsupported interaction type: {type(interaction).__name__}")


def spawn_voicemail(call: Call, now: datetime | None = None) -> Transition:
    """Create the voicemail interaction for a call diverted to voicemail."""

    now = now or datetime.now(timezone.utc)
    voicemail = Voicemail(
        id=call.voicemail_id or voicemail_id_for(call.id),
        direction=call.direction,
        from_address=call.from_address,
        to_address=call.to_address,
        state=VoicemailState.RECORDING.value,
        created_at=now,
        updated_at=now,
        contact_id=call.contact_id,
        topic=call.topic,
        text_signal=call.text_signal,
        call_id=call.id,
    )
    return Transition(
        interaction=voicemail,
        previous_state=None,
        outcome=Outcome.CREATED,
        effects=[
            SideEffect(EffectKind.BROADCAST, {"event": "interaction.created"}),
            SideEffect(EffectKind.ROUTE, {"interaction_id": voicemail.id}),
        ],
    )


def settled_effects(interaction: Interaction, event: WebhookEvent) -> list[SideEffect]:
    """Idempotent effects owed by an interaction that already took ``event``.

    A redelivered event is a no-op for the state machine, but the delivery
    that saved the state may have failed before its effects ran. Closing the
    task and creating the activity log both tolerate repetition, so they are
    issued again.
    """

    if isinstance(interaction, (Call, Voicemail)):
        return _closing_effects(interaction) if interaction.is_terminal else []
    if isinstance(interaction, MessageThread):
        message = interaction.find_message(event.payload.get("message_sid", ""))
        if message is None:
            return []
        if message.direction is Direction.INBOUND or message.state in MESSAGE_TERMINAL_STATES:
            return [_sms_log(message)]
    return []


def _closing_effects(interaction: Call | Voicemail) -> list[SideEffect]:
    if isinstance(interaction, Call):
        return [
            SideEffect(EffectKind.CLOSE_TASK, {"interaction_id": interaction.id}),
            SideEffect(
                EffectKind.LOG_ACTIVITY,
                {"kind": "call", "subject_id": interaction.id, "outcome": interaction.state},
            ),
        ]
    return [
        SideEffect(
            EffectKind.LOG_ACTIVITY,
            {"kind": "voicemail", "subject_id": interaction.id, "outcome": interaction.state},
        )
    ]


def _sms_log(message: Message) -> SideEffect:
    return SideEffect(
        EffectKind.LOG_ACTIVITY,
        {"kind": "sms", "subject_id": message.sid, "outcome": message.state.value},
    )


# ----------------------------------------------------------------------
# Calls


def _create_call(event: WebhookEvent, now: datetime) -> Transition:
    payload = event.payload
    direction = Direction(payload.get("direction", Direction.INBOUND.value))
    call = Call(
        id=event.interaction_id,
        direction=direction,
        from_address=payload["from_address"],
        to_address=payload["to_address"],
        state=CallState.RINGING.value,
        created_at=now,
        updated_at=now,
        topic=payload.get("topic"),
        text_signal=payload.get("text_signal"),
    )
    effects = [SideEffect(EffectKind.BROADCAST, {"event": "interaction.created"})]
    if direction is Direction.INBOUND:
        effects.append(SideEffect(EffectKind.ROUTE, {"interaction_id": call.id}))
    return Transition(call, None, Outcome.CREATED, effects)


def _apply_call(call: Call, event: WebhookEvent, now: datetime) -> Transition:
    previous = CallState(call.state)
    effects: list[SideEffect] = []

    forwarded = call.voicemail_id is not None and event.kind in (
        EventKind.RECORDING_READY,
        EventKind.TRANSCRIPTION_READY,
    )
    if forwarded:
        effects.append(SideEffect(EffectKind.FORWARD, {"target_id": call.voicemail_id}))
        attached = False
    else:
        attached = _attach_call_metadata(call, event)

    target = CALL_EDGES[previous].get(event.kind)
    if target is None:
        if not attached:
            return Transition(call, previous.value, Outcome.NOOP, effects)
        call.updated_at = now
        effects.append(SideEffect(EffectKind.BROADCAST, {"event": "interaction.updated"}))
        return Transition(call, previous.value, Outcome.ATTACHED, effects)

    call.state = target.value
    call.updated_at = now
    effects.append(SideEffect(EffectKind.BROADCAST, {"event": "interaction.updated"}))
    if target is CallState.VOICEMAIL:
        call.voicemail_id = voicemail_id_for(call.id)
        effects.append(SideEffect(EffectKind.SPAWN_VOICEMAIL, {"call_id": call.id}))
        effects.append(SideEffect(EffectKind.CLOSE_TASK, {"interaction_id": call.id}))
    if call.is_terminal:
        effects.extend(_closing_effects(call))
    return Transition(call, previous.value, Outcome.TRANSITIONED, effects)


def _attach_call_metadata(call: Call, event: WebhookEvent) -> bool:
    payload = event.payload
    changed = False
    duration = payload.get("duration_seconds")
    if duration is not None and call.duration_seconds is None:
        call.duration_seconds = int(duration)
        changed = True
    if event.kind is EventKind.RECORDING_READY:
        url = payload.get("recording_url")
        if url and url != call.recording_url:
            call.recording_url = url
            call.recording_sid = payload.get("recording_sid")
            changed = True
    if event.kind is EventKind.TRANSCRIPTION_READY:
        text = payload.get("transcription_text")
        if text and text != call.transcription:
            call.transcription = text
            changed = True
    return changed


# ----------------------------------------------------------------------
# Voicemails


def _apply_voicemail(
    voicemail: Voicemail, event: WebhookEvent, now: datetime
) -> Transition:
    previous = VoicemailState(voicemail.state)
    payload = event.payload
    effects: list[SideEffect] = []
    attached = False

    if event.kind is EventKind.RECORDING_READY:
        url = payload.get("recording_url")
        if url and url != voicemail.audio_url:
            voicemail.audio_url = url
            voicemail.recording_sid = payload.get("recording_sid")
            attached = True
        duration = payload.get("duration_seconds")
        if duration is not None and voicemail.duration_seconds is None:
            voicemail.duration_seconds = int(duration)
            attached = True
    elif event.kind is EventKind.TRANSCRIPTION_READY:
        text = payload.get("transcription_text")
        if text and text != voicemail.transcription:
            voicemail.transcription = text
            attached = True

    target: VoicemailState | None = None
    if event.kind in VOICEMAIL_EDGES[previous]:
        if event.kind is EventKind.RECORDING_READY:
            target = VoicemailState.TRANSCRIBING
        elif payload.get("transcription_status") == "failed":
            target = VoicemailState.TRANSCRIPTION_FAILED
        else:
            target = VoicemailState.READY

    if target is None:
        if not attached:
            return Transition(voicemail, previous.value, Outcome.NOOP, effects)
        voicemail.updated_at = now
        effects.append(SideEffect(EffectKind.BROADCAST, {"event": "interaction.updated"}))
        return Transition(voicemail, previous.value, Outcome.ATTACHED, effects)

    voicemail.state = target.value
    voicemail.updated_at = now
    effects.append(SideEffect(EffectKind.BROADCAST, {"event": "interaction.updated"}))
    if voicemail.is_terminal:
        effects.extend(_closing_effects(voicemail))
    return Transition(voicemail, previous.value, Outcome.TRANSITIONED, effects)


# ----------------------------------------------------------------------
# Message threads


def _new_message(event: WebhookEvent, direction: Direction, now: datetime) -> Message:
    payload = event.payload
    if direction is Direction.INBOUND:
        state = MessageState.DELIVERED
    else:
        state = MessageState(payload.get("message_status") or MessageState.QUEUED.value)
    return Message(
        sid=payload["message_sid"],
        direction=direction,
        body=payload.get("body") or "",
        media_urls=list(payload.get("media_urls") or []),
        state=state,
        created_at=now,
        updated_at=now,
    )


def _message_effects(thread: MessageThread, message: Message) -> list[SideEffect]:
    effects = [SideEffect(EffectKind.BROADCAST, {"event": "message.received"})]
    if message.direction is Direction.INBOUND:
        effects.append(SideEffect(EffectKind.ROUTE, {"interaction_id": thread.id}))
        effects.append(_sms_log(message))
    return effects


def _create_thread(event: WebhookEvent, now: datetime) -> Transition:
    payload = event.payload
    direction = Direction(payload.get("direction", Direction.INBOUND.value))
    message = _new_message(event, direction, now)
    thread = MessageThread(
        id=event.interaction_id,
        direction=direction,
        from_address=payload["from_address"],
        to_address=payload["to_address"],
        state=ThreadState.OPEN.value,
        created_at=now,
        updated_at=now,
        topic=payload.get("topic"),
        text_signal=message.body or None,
        messages=[message],
    )
    effects = _message_effects(thread, message)
    effects[0] = SideEffect(EffectKind.BROADCAST, {"event": "interaction.created"})
    return Transition(thread, None, Outcome.CREATED, effects)


def _apply_thread(
    thread: MessageThread, event: WebhookEvent, now: datetime
) -> Transition:
    payload = event.payload
    if event.kind is EventKind.MESSAGE_RECEIVED:
        if thread.find_message(payload["message_sid"]) is not None:
            return Transition(thread, thread.state, Outcome.NOOP)
        direction = Direction(payload.get("direction", Direction.INBOUND.value))
        message = _new_message(event, direction, now)
        thread.messages.append(message)
        if message.direction is Direction.INBOUND and message.body:
            thread.text_signal = message.body
        thread.updated_at = now
        return Transition(
            thread, thread.state, Outcome.ATTACHED, _message_effects(thread, message)
        )

    if event.kind is not EventKind.MESSAGE_STATUS:
        return Transition(thread, thread.state, Outcome.NOOP)

    message = thread.find_message(payload["message_sid"])
    if message is None:
        return Transition(thread, thread.state, Outcome.NOOP)
    target = MessageState(payload["message_status"])
    if target not in MESSAGE_EDGES[message.state]:
        return Transition(thread, thread.state, Outcome.NOOP)

    message.state = target
    message.updated_at = now
    if payload.get("error_code"):
        message.error_code = str(payload["error_code"])
    thread.updated_at = now
    effects = [SideEffect(EffectKind.BROADCAST, {"event": "message.status"})]
    if target in MESSAGE_TERMINAL_STATES:
        effects.append(_sms_log(message))
    return Transition(thread, thread.state, Outcome.TRANSITIONED, effects)
