"""Pydantic records shared across the conversation engine."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

SessionStep = Literal["init", "in_conversation", "awaiting_operator"]
HandoffStatus = Literal["active", "closed"]


class OfferedSlot(BaseModel):
    """A bookable slot previously shown to the patient.

    ``label`` is the human-readable date ("Martes, 20 de enero") and is the
    source of truth for the weekday; ``date`` is the canonical
    ``YYYY-MM-DD`` used for booking.
    """

    label: str
    time: str
    date: str


class Session(BaseModel):
    """Short-lived conversation state, one per conversation key."""

    model_config = ConfigDict(extra="forbid")

    step: SessionStep = "init"
    data: dict[str, Any] = Field(default_factory=dict)
    transcript: list[dict[str, Any]] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    appointment_id: int | None = None
    offered_slots: list[OfferedSlot] = Field(default_factory=list)
    last_activity: float = 0.0
    processing: bool = False
    processing_since: float | None = None


class Handoff(BaseModel):
    """A human operator taking over one conversation."""

    id: str
    client_id: str
    operator_id: str
    client_name: str = ""
    reason: str = ""
    status: HandoffStatus = "active"
    created_at: float
    last_activity: float
    closed_at: float | None = None


class LoggedMessage(BaseModel):
    role: Literal["user", "assistant", "agent"]
    text: str
    timestamp: float
    media: dict[str, Any] | None = None


class Profile(BaseModel):
    """Long-lived patient record; survives session expiry."""

    user_id: str
    document_number: str | None = None
    user_name: str | None = None
    messages: list[LoggedMessage] = Field(default_factory=list)
    updated_at: float = 0.0


class MediaAttachment(BaseModel):
    type: str
    media_id: str
    mime_type: str | None = None
    caption: str | None = None
    filename: str | None = None


class InboundMessage(BaseModel):
    """One inbound WhatsApp event, reduced to what the router needs."""

    sender: str
    type: str
    message_id: str | None = None
    text: str | None = None
    media: MediaAttachment | None = None
    button_payload: str | None = None
    contact_name: str | None = None

    @property
    def is_media(self) -> bool:
        return self.media is not None
