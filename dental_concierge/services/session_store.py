"""TTL-bounded conversation sessions on top of the document store.

A session is *logically* expired once ``last_activity`` is older than the
TTL: reads report it absent and delete it, writes start from a fresh
session.  The long-lived patient profile lives elsewhere
(``conversation_log.py``) and is not affected by expiry.

If the durable store fails, the error is logged once and the store
switches to a process-local ``InMemoryDocumentStore`` for the rest of the
process lifetime.  Callers never see a storage exception.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from dental_concierge.config import SESSION_TTL_MINUTES
from dental_concierge.models import Session
from dental_concierge.services.document_store import (
    DocumentStore,
    DocumentStoreError,
    InMemoryDocumentStore,
)

logger = logging.getLogger(__name__)

COLLECTION = "sessions"
# A processing flag older than this belongs to a crashed turn
STALE_PROCESSING_SECONDS = 120


class SessionStore:
    def __init__(
        self,
        store: DocumentStore,
        *,
        ttl_seconds: float = SESSION_TTL_MINUTES * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._degraded = False

    @property
    def degraded(self) -> bool:
        """``True`` once the store has fallen back to process memory."""
        return self._degraded

    # ── Internal helpers ─────────────────────────────────────────────

    def _is_expired(self, doc: dict[str, Any], now: float) -> bool:
        return now - doc.get("last_activity", 0.0) > self._ttl_seconds

    def _live_or_fresh(self, doc: dict[str, Any] | None, now: float) -> Session:
        if doc is None or self._is_expired(doc, now):
            return Session(last_activity=now)
        return Session.model_validate(doc)

    def _fall_back(self, exc: Exception) -> None:
        if not self._degraded:
            logger.error(
                "Session store unavailable (%s); using in-memory sessions "
                "for the rest of this process", exc,
            )
            self._degraded = True
            self._store = InMemoryDocumentStore()

    async def _update(self, key: str, mutator) -> dict[str, Any]:
        try:
            return await self._store.atomic_update(COLLECTION, key, mutator)
        except DocumentStoreError as exc:
            self._fall_back(exc)
            return await self._store.atomic_update(COLLECTION, key, mutator)

    # ── Public API ───────────────────────────────────────────────────

    async def get(self, key: str) -> Session | None:
        """Return the live session for *key*, or ``None``.

        An expired session is removed as a side effect.
        """
        try:
            doc = await self._store.get(COLLECTION, key)
        except DocumentStoreError as exc:
            self._fall_back(exc)
            doc = await self._store.get(COLLECTION, key)

        if doc is None:
            return None
        if self._is_expired(doc, self._clock()):
            logger.info("Session %s expired; removing", key)
            await self.remove(key)
            return None
        return Session.model_validate(doc)

    async def create_if_absent(self, key: str) -> Session:
        """Return the live session, creating a fresh one if needed."""
        now = self._clock()

        def _create(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is not None and not self._is_expired(current, now):
                return current
            return Session(last_activity=now).model_dump(mode="json")

        return Session.model_validate(await self._update(key, _create))

    async def merge_update(self, key: str, partial: dict[str, Any]) -> Session:
        """Shallow-merge *partial* into the session and stamp ``last_activity``.

        *partial* may hold plain values or pydantic models (e.g.
        ``OfferedSlot``); it is validated against ``Session``.
        """
        now = self._clock()

        def _merge(current: dict[str, Any] | None) -> dict[str, Any]:
            session = self._live_or_fresh(current, now)
            merged = Session.model_validate(
                {**session.model_dump(), **partial, "last_activity": now},
            )
            return merged.model_dump(mode="json")

        return Session.model_validate(await self._update(key, _merge))

    async def merge_data(self, key: str, values: dict[str, Any], **partial: Any) -> Session:
        """Like ``merge_update`` but merges *values* into the ``data`` bag
        instead of replacing it."""
        now = self._clock()

        def _merge(current: dict[str, Any] | None) -> dict[str, Any]:
            session = self._live_or_fresh(current, now)
            merged = Session.model_validate({
                **session.model_dump(),
                **partial,
                "data": {**session.data, **values},
                "last_activity": now,
            })
            return merged.model_dump(mode="json")

        return Session.model_validate(await self._update(key, _merge))

    async def remove(self, key: str) -> None:
        try:
            await self._store.delete(COLLECTION, key)
        except DocumentStoreError as exc:
            self._fall_back(exc)
            await self._store.delete(COLLECTION, key)

    # ── Processing flag (duplicate-delivery suppression) ─────────────

    async def try_begin_processing(self, key: str) -> Session | None:
        """Claim the processing flag for *key*.

        Returns the session when claimed, or ``None`` when another turn is
        already in progress.  A flag older than ``STALE_PROCESSING_SECONDS``
        is taken over.
        """
        now = self._clock()
        claimed = False

        def _claim(current: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal claimed
            session = self._live_or_fresh(current, now)
            busy = (
                session.processing
                and session.processing_since is not None
                and now - session.processing_since < STALE_PROCESSING_SECONDS
            )
            if busy:
                claimed = False
                return session.model_dump(mode="json")
            claimed = True
            session.processing = True
            session.processing_since = now
            session.last_activity = now
            return session.model_dump(mode="json")

        doc = await self._update(key, _claim)
        if not claimed:
            logger.info("Session %s is already being processed; dropping turn", key)
            return None
        return Session.model_validate(doc)

    async def end_processing(self, key: str) -> None:
        await self.merge_update(key, {"processing": False, "processing_since": None})
