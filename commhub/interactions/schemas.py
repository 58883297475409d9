"""Pydantic schemas for the interaction query API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .models import Interaction


class MessageOut(BaseModel):
    sid: str
    direction: str
    body: str = ""
    media_urls: list[str] = Field(default_factory=list)
    state: str
    error_code: str | None = None
    created_at: datetime
    updated_at: datetime


class InteractionOut(BaseModel):
    id: str
    type: str
    direction: str
    from_address: str
    to_address: str
    state: str
    is_terminal: bool
    created_at: datetime
    updated_at: datetime
    contact_id: str | None = None
    assigned_worker_id: str | None = None
    queue: str | None = None
    task_id: str | None = None
    topic: str | None = None
    text_signal: str | None = None
    duration_seconds: int | None = None
    recording_url: str | None = None
    transcription: str | None = None
    voicemail_id: str | None = None
    call_id: str | None = None
    audio_url: str | None = None
    messages: list[MessageOut] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, interaction: Interaction) -> "InteractionOut":
        data = interaction.to_dict()
        data["is_terminal"] = interaction.is_terminal
        return cls.model_validate(data)


class InteractionList(BaseModel):
    items: list[InteractionOut]
    total: int


class OutboundMessageRequest(BaseModel):
    """A message the presentation layer already handed to the provider."""

    sid: str = Field(min_length=1, max_length=255)
    from_address: str = Field(description="Line the message was sent from")
    to_address: str = Field(description="Customer address")
    body: str = Field(default="", max_length=1600)
    media_urls: list[str] = Field(default_factory=list)
    status: str = "queued"
