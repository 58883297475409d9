"""Domain models for calls, message threads and voicemails."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class InteractionType(str, Enum):
    CALL = "call"
    MESSAGE_THREAD = "message_thread"
    VOICEMAIL = "voicemail"


class CallState(str, Enum):
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    VOICEMAIL = "voicemail"
    COMPLETED = "completed"
    NO_ANSWER = "no_answer"
    FAILED = "failed"


CALL_TERMINAL_STATES = frozenset(
    {CallState.COMPLETED, CallState.NO_ANSWER, CallState.FAILED}
)


class VoicemailState(str, Enum):
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    READY = "ready"
    TRANSCRIPTION_FAILED = "transcription_failed"


VOICEMAIL_TERMINAL_STATES = frozenset(
    {VoicemailState.READY, VoicemailState.TRANSCRIPTION_FAILED}
)


class ThreadState(str, Enum):
    OPEN = "open"


class MessageState(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


MESSAGE_TERMINAL_STATES = frozenset({MessageState.DELIVERED, MessageState.FAILED})


class EventKind(str, Enum):
    """Every event the state machines understand.

    Provider webhooks map onto these; ``VOICEMAIL`` is only raised internally
    when routing diverts a ringing call.
    """

    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    VOICEMAIL = "voicemail"
    RECORDING_READY = "recording-ready"
    TRANSCRIPTION_READY = "transcription-ready"
    MESSAGE_RECEIVED = "message-received"
    MESSAGE_STATUS = "message-status"


CREATING_KINDS = frozenset({EventKind.RINGING, EventKind.MESSAGE_RECEIVED})


@dataclass
class WebhookEvent:
    """A provider event after parsing and normalization.

    ``interaction_id`` is the provider correlation id: the call sid for voice
    events, the thread id for inbound messages and the message sid for
    message status callbacks.
    """

    interaction_id: str
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=_utcnow)


@dataclass
class Message:
    sid: str
    direction: Direction
    body: str = ""
    media_urls: list[str] = field(default_factory=list)
    state: MessageState = MessageState.QUEUED
    error_code: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Interaction:
    """Fields shared by every interaction kind."""

    type: ClassVar[InteractionType]

    id: str
    direction: Direction
    from_address: str
    to_address: str
    state: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    contact_id: str | None = None
    assigned_worker_id: str | None = None
    queue: str | None = None
    task_id: str | None = None
    topic: str | None = None
    text_signal: str | None = None

    @property
    def is_terminal(self) -> bool:
        return False

    @property
    def customer_address(self) -> str:
        """The counterparty's address, whichever way the interaction flows."""

        if self.direction is Direction.INBOUND:
            return self.from_address
        return self.to_address

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return _jsonable(data)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Interaction":
        cls = INTERACTION_CLASSES[InteractionType(data["type"])]
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Interaction":
        names = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in names}
        values["direction"] = Direction(values["direction"])
        for key in ("created_at", "updated_at"):
            values[key] = _parse_datetime(values.get(key))
        return cls(**values)


@dataclass
class Call(Interaction):
    type: ClassVar[InteractionType] = InteractionType.CALL

    duration_seconds: int | None = None
    recording_url: str | None = None
    recording_sid: str | None = None
    transcription: str | None = None
    voicemail_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return CallState(self.state) in CALL_TERMINAL_STATES


@dataclass
class Voicemail(Interaction):
    type: ClassVar[InteractionType] = InteractionType.VOICEMAIL

    call_id: str | None = None
    audio_url: str | None = None
    recording_sid: str | None = None
    duration_seconds: int | None = None
    transcription: str | None = None

    @property
    def is_terminal(self) -> bool:
        return VoicemailState(self.state) in VOICEMAIL_TERMINAL_STATES


@dataclass
class MessageThread(Interaction):
    type: ClassVar[InteractionType] = InteractionType.MESSAGE_THREAD

    messages: list[Message] = field(default_factory=list)

    def find_message(self, sid: str) -> Message | None:
        for message in self.messages:
            if message.sid == sid:
                return message
        return None

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "MessageThread":
        raw_messages = data.get("messages") or []
        thread = super()._from_dict({**data, "messages": []})
        for raw in raw_messages:
            thread.messages.append(
                Message(
                    sid=raw["sid"],
                    direction=Direction(raw["direction"]),
                    body=raw.get("body") or "",
                    media_urls=list(raw.get("media_urls") or []),
                    state=MessageState(raw["state"]),
                    error_code=raw.get("error_code"),
                    created_at=_parse_datetime(raw.get("created_at")),
                    updated_at=_parse_datetime(raw.get("updated_at")),
                )
            )
        return thread


INTERACTION_CLASSES: dict[InteractionType, type[Interaction]] = {
    InteractionType.CALL: Call,
    InteractionType.MESSAGE_THREAD: MessageThread,
    InteractionType.VOICEMAIL: Voicemail,
}


def thread_id_for(customer_address: str, line_address: str) -> str:
    """Every message between the same two numbers lands in one thread."""

    return f"thread:{customer_address}:{line_address}"


def voicemail_id_for(call_id: str) -> str:
    return f"{call_id}-VM"


def _parse_datetime(value: Any) -> datetime:
    if value is None:
        return _utcnow()
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value
