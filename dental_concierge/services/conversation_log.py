"""Long-lived patient profile and visible message log.

One ``profiles/<conversation key>`` document per patient.  It never
expires, so the patient's name and document number survive session
expiry and are re-injected into new transcripts.  Only visible text is
logged (user, assistant, agent); tool traffic and internal context never
appear here.

Every operation is best-effort: failures are logged and swallowed so the
user-visible reply never depends on the log.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from dental_concierge.models import LoggedMessage, MediaAttachment, Profile
from dental_concierge.services.document_store import DocumentStore, FallbackDocumentStore

logger = logging.getLogger(__name__)

COLLECTION = "profiles"
MAX_LOGGED_MESSAGES = 500


class ConversationLog:
    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = FallbackDocumentStore(store, name="Conversation log")
        self._clock = clock

    async def _append(
        self,
        key: str,
        messages: Sequence[LoggedMessage],
        *,
        document_number: str | None = None,
        user_name: str | None = None,
    ) -> None:
        now = self._clock()

        def _mutate(current: dict[str, Any] | None) -> dict[str, Any]:
            profile = Profile.model_validate(current) if current else Profile(user_id=key)
            profile.messages = (profile.messages + list(messages))[-MAX_LOGGED_MESSAGES:]
            if document_number:
                profile.document_number = document_number
            if user_name:
                profile.user_name = user_name
            profile.updated_at = now
            return profile.model_dump(mode="json")

        try:
            await self._store.atomic_update(COLLECTION, key, _mutate)
        except Exception:
            logger.exception("Could not write conversation log for %s", key)

    async def log_exchange(
        self,
        key: str,
        turns: Sequence[tuple[str, str]],
        *,
        document_number: str | None = None,
        user_name: str | None = None,
    ) -> None:
        """Append ``(role, text)`` pairs and refresh the profile fields."""
        now = self._clock()
        messages = [
            LoggedMessage(role=role, text=text, timestamp=now)
            for role, text in turns
            if text
        ]
        await self._append(
            key, messages, document_number=document_number, user_name=user_name,
        )

    async def log_message(
        self, key: str, role: str, text: str, *, user_name: str | None = None,
    ) -> None:
        await self.log_exchange(key, [(role, text)], user_name=user_name)

    async def log_media(self, key: str, role: str, media: MediaAttachment) -> None:
        message = LoggedMessage(
            role=role,
            text=media.caption or f"[{media.type}]",
            timestamp=self._clock(),
            media=media.model_dump(mode="json"),
        )
        await self._append(key, [message])

    async def get_profile(self, key: str) -> Profile | None:
        try:
            doc = await self._store.get(COLLECTION, key)
        except Exception:
            logger.exception("Could not read profile for %s", key)
            return None
        return Profile.model_validate(doc) if doc else None

    async def get_conversation(self, key: str, limit: int = 100) -> list[LoggedMessage]:
        profile = await self.get_profile(key)
        return profile.messages[-limit:] if profile else []
