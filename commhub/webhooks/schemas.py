"""Provider form payloads and their translation into :class:`WebhookEvent`."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import WebhookValidationError
from ..core.phone import normalize_phone
from ..interactions.models import (
    Direction,
    EventKind,
    MessageState,
    WebhookEvent,
    thread_id_for,
)

CALL_STATUS_EVENTS: dict[str, EventKind] = {
    "queued": EventKind.RINGING,
    "initiated": EventKind.RINGING,
    "ringing": EventKind.RINGING,
    "in-progress": EventKind.ANSWERED,
    "completed": EventKind.COMPLETED,
    "no-answer": EventKind.NO_ANSWER,
    "busy": EventKind.FAILED,
    "failed": EventKind.FAILED,
    "canceled": EventKind.FAILED,
}

MESSAGE_STATUSES: dict[str, MessageState] = {
    "accepted": MessageState.QUEUED,
    "scheduled": MessageState.QUEUED,
    "queued": MessageState.QUEUED,
    "sending": MessageState.QUEUED,
    "receiving": MessageState.QUEUED,
    "sent": MessageState.SENT,
    "delivered": MessageState.DELIVERED,
    "partially_delivered": MessageState.DELIVERED,
    "received": MessageState.DELIVERED,
    "read": MessageState.DELIVERED,
    "undelivered": MessageState.FAILED,
    "failed": MessageState.FAILED,
    "canceled": MessageState.FAILED,
}


def normalize_address(value: str) -> str:
    """E.164 for phone numbers; browser client identities pass through."""

    if value.startswith("client:"):
        return value
    return normalize_phone(value)


def _direction(raw: str | None) -> str:
    if raw and raw.lower().startswith("outbound"):
        return Direction.OUTBOUND.value
    return Direction.INBOUND.value


class _ProviderForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class VoiceForm(_ProviderForm):
    call_sid: str = Field(alias="CallSid", min_length=1, max_length=255)
    from_address: str = Field(alias="From", min_length=1)
    to_address: str = Field(alias="To", min_length=1)
    direction: str | None = Field(default=None, alias="Direction")
    topic: str | None = Field(default=None, alias="Topic")
    speech_result: str | None = Field(default=None, alias="SpeechResult")


class CallStatusForm(_ProviderForm):
    call_sid: str = Field(alias="CallSid", min_length=1, max_length=255)
    call_status: str = Field(alias="CallStatus")
    from_address: str | None = Field(default=None, alias="From")
    to_address: str | None = Field(default=None, alias="To")
    direction: str | None = Field(default=None, alias="Direction")
    call_duration: int | None = Field(default=None, alias="CallDuration", ge=0)

    @field_validator("call_status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        value = value.lower()
        if value not in CALL_STATUS_EVENTS:
            raise ValueError(f"Unknown call status {value!r}")
        return value


class RecordingForm(_ProviderForm):
    call_sid: str = Field(alias="CallSid", min_length=1, max_length=255)
    recording_sid: str = Field(alias="RecordingSid", min_length=1)
    recording_url: str = Field(alias="RecordingUrl")
    recording_status: str = Field(default="completed", alias="RecordingStatus")
    recording_duration: int | None = Field(default=None, alias="RecordingDuration", ge=0)

    @field_validator("recording_url")
    @classmethod
    def _https_only(cls, value: str) -> str:
        if not value.lower().startswith("https://"):
            raise ValueError("Recording URL must use https")
        return value


class TranscriptionForm(_ProviderForm):
    call_sid: str = Field(alias="CallSid", min_length=1, max_length=255)
    transcription_sid: str | None = Field(default=None, alias="TranscriptionSid")
    transcription_text: str | None = Field(default=None, alias="TranscriptionText")
    transcription_status: str = Field(default="completed", alias="TranscriptionStatus")


class MessageForm(_ProviderForm):
    message_sid: str = Field(alias="MessageSid", min_length=1, max_length=255)
    from_address: str = Field(alias="From", min_length=1)
    to_address: str = Field(alias="To", min_length=1)
    body: str = Field(default="", alias="Body", max_length=1600)
    num_media: int = Field(default=0, alias="NumMedia", ge=0, le=10)


class MessageStatusForm(_ProviderForm):
    message_sid: str = Field(alias="MessageSid", min_length=1, max_length=255)
    message_status: str = Field(alias="MessageStatus")
    error_code: str | None = Field(default=None, alias="ErrorCode")

    @field_validator("message_status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        value = value.lower()
        if value not in MESSAGE_STATUSES:
            raise ValueError(f"Unknown message status {value!r}")
        return value


# ----------------------------------------------------------------------
# Translation


def _validate(model: type[_ProviderForm], params: Mapping[str, str]) -> Any:
    data = dict(params)
    # Messaging webhooks may only carry the legacy SmsSid.
    if "MessageSid" not in data and "SmsSid" in data:
        data["MessageSid"] = data["SmsSid"]
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise WebhookValidationError(errors) from exc


def _addresses(from_value: str, to_value: str) -> tuple[str, str]:
    try:
        return normalize_address(from_value), normalize_address(to_value)
    except ValueError as exc:
        raise WebhookValidationError(str(exc)) from exc


def parse_voice(params: Mapping[str, str]) -> WebhookEvent:
    form = _validate(VoiceForm, params)
    from_address, to_address = _addresses(form.from_address, form.to_address)
    payload: dict[str, Any] = {
        "direction": _direction(form.direction),
        "from_address": from_address,
        "to_address": to_address,
    }
    if form.topic:
        payload["topic"] = form.topic.lower()
    if form.speech_result:
        payload["text_signal"] = form.speech_result
    return WebhookEvent(form.call_sid, EventKind.RINGING, payload)


def parse_status(params: Mapping[str, str]) -> WebhookEvent:
    form = _validate(CallStatusForm, params)
    kind = CALL_STATUS_EVENTS[form.call_status]
    payload: dict[str, Any] = {"call_status": form.call_status}
    if kind is EventKind.RINGING:
        if not form.from_address or not form.to_address:
            raise WebhookValidationError("From and To are required for a new call")
        from_address, to_address = _addresses(form.from_address, form.to_address)
        payload.update(
            direction=_direction(form.direction),
            from_address=from_address,
            to_address=to_address,
        )
    if form.call_duration is not None:
        payload["duration_seconds"] = form.call_duration
    return WebhookEvent(form.call_sid, kind, payload)


def parse_recording(params: Mapping[str, str]) -> WebhookEvent | None:
    """``None`` for recordings that are not finished yet."""

    form = _validate(RecordingForm, params)
    if form.recording_status.lower() != "completed":
        return None
    payload: dict[str, Any] = {
        "recording_sid": form.recording_sid,
        "recording_url": form.recording_url,
    }
    if form.recording_duration is not None:
        payload["duration_seconds"] = form.recording_duration
    return WebhookEvent(form.call_sid, EventKind.RECORDING_READY, payload)


def parse_transcription(params: Mapping[str, str]) -> WebhookEvent:
    form = _validate(TranscriptionForm, params)
    status = "failed" if form.transcription_status.lower() == "failed" else "completed"
    payload: dict[str, Any] = {"transcription_status": status}
    if form.transcription_sid:
        payload["transcription_sid"] = form.transcription_sid
    if form.transcription_text:
        payload["transcription_text"] = form.transcription_text
    return WebhookEvent(form.call_sid, EventKind.TRANSCRIPTION_READY, payload)


def parse_message(params: Mapping[str, str]) -> WebhookEvent:
    form = _validate(MessageForm, params)
    customer, line = _addresses(form.from_address, form.to_address)
    media_urls = [
        params[f"MediaUrl{index}"]
        for index in range(form.num_media)
        if params.get(f"MediaUrl{index}")
    ]
    payload: dict[str, Any] = {
        "direction": Direction.INBOUND.value,
        "message_sid": form.message_sid,
        "from_address": customer,
        "to_address": line,
        "body": form.body,
        "media_urls": media_urls,
    }
    return WebhookEvent(thread_id_for(customer, line), EventKind.MESSAGE_RECEIVED, payload)


def parse_message_status(params: Mapping[str, str]) -> WebhookEvent:
    form = _validate(MessageStatusForm, params)
    payload: dict[str, Any] = {
        "message_sid": form.message_sid,
        "message_status": MESSAGE_STATUSES[form.message_status].value,
    }
    if form.error_code:
        payload["error_code"] = form.error_code
    return WebhookEvent(form.message_sid, EventKind.MESSAGE_STATUS, payload)


PARSERS: dict[str, Callable[[Mapping[str, str]], WebhookEvent | None]] = {
    "voice": parse_voice,
    "status": parse_status,
    "recording": parse_recording,
    "transcription": parse_transcription,
    "message": parse_message,
    "message-status": parse_message_status,
}


class WebhookResult(BaseModel):
    """JSON body returned by the non-TwiML webhook endpoints."""

    status: str
    interaction_id: str | None = None
    event: str | None = None
