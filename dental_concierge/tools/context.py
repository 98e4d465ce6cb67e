"""Per-turn state handed to every tool handler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dental_concierge.config import PHONE_COUNTRY_CODE
from dental_concierge.models import Session
from dental_concierge.services.dentalink_client import DentalinkClient
from dental_concierge.services.handoff import HandoffService
from dental_concierge.services.operator_config import OperatorDirectory
from dental_concierge.services.session_store import SessionStore
from dental_concierge.services.whatsapp_client import Transport


@dataclass
class ToolContext:
    key: str
    session: Session
    sessions: SessionStore
    scheduling: DentalinkClient
    handoffs: HandoffService
    operators: OperatorDirectory
    transport: Transport
    now: datetime
    user_text: str = ""
    recent_user_texts: list[str] = field(default_factory=list)

    @property
    def document_number(self) -> str | None:
        return self.session.data.get("document_number")

    @property
    def user_name(self) -> str:
        return self.session.data.get("user_name") or ""

    @property
    def local_phone(self) -> str:
        """The conversation key as a local number (no ``+``, no country code)."""
        phone = self.key.lstrip("+")
        if PHONE_COUNTRY_CODE and phone.startswith(PHONE_COUNTRY_CODE):
            phone = phone[len(PHONE_COUNTRY_CODE):]
        return phone

    async def update_session(self, **partial: Any) -> Session:
        self.session = await self.sessions.merge_update(self.key, partial)
        return self.session

    async def update_data(self, **values: Any) -> Session:
        self.session = await self.sessions.merge_data(self.key, values)
        return self.session
