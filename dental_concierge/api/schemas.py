"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from dental_concierge.models import Handoff, LoggedMessage


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "dental-concierge"
    degraded_storage: bool = False


class InterveneRequest(BaseModel):
    """Operator takes over a conversation from the dashboard."""

    client_id: str = Field(..., min_length=5, max_length=20, description="Client phone, digits only")
    reason: str = Field("", max_length=500)


class ClientRequest(BaseModel):
    client_id: str = Field(..., min_length=5, max_length=20)


class SendMessageRequest(BaseModel):
    client_id: str = Field(..., min_length=5, max_length=20)
    text: str = Field(..., min_length=1, max_length=4096, description="Relayed verbatim")


class SendMediaRequest(BaseModel):
    client_id: str = Field(..., min_length=5, max_length=20)
    filename: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=3, max_length=100)
    content_base64: str = Field(..., min_length=1, description="File content, base64-encoded")
    caption: str | None = Field(None, max_length=1024)


class StartConversationRequest(BaseModel):
    """Proactive outreach through an approved WhatsApp template."""

    client_id: str = Field(..., min_length=5, max_length=20)
    template_name: str = Field(..., min_length=1, max_length=512)
    language_code: str = "es"
    parameters: list[str] = Field(default_factory=list)


class OperatorConfigRequest(BaseModel):
    operator_phone_number: str = Field(..., min_length=5, max_length=20)


class HandoffResponse(BaseModel):
    handoff: Handoff


class HandoffListResponse(BaseModel):
    handoffs: list[Handoff]


class ConversationResponse(BaseModel):
    client_id: str
    user_name: str | None = None
    document_number: str | None = None
    intervention_active: bool = False
    messages: list[LoggedMessage]


class StatusResponse(BaseModel):
    status: str = "ok"
    detail: str = ""
