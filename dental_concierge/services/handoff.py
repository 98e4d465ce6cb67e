"""Human-operator handoff records.

A conversation is either bot-controlled (no active handoff) or
operator-controlled (exactly one active handoff).  The active record lives
in the ``handoff_clients`` document for the client, so creation is a single
atomic read-modify-write: concurrent ``create_handoff`` calls for the same
client yield one record, and later calls get it back unchanged.  Closed
records are archived under ``handoffs/<id>``.

Handoffs never expire on their own; only an operator closes them.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from dental_concierge.models import Handoff
from dental_concierge.services.document_store import DocumentStore, FallbackDocumentStore

logger = logging.getLogger(__name__)

CLIENTS = "handoff_clients"
ARCHIVE = "handoffs"


class HandoffService:
    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = FallbackDocumentStore(store, name="Handoff")
        self._clock = clock

    async def create_handoff(
        self,
        client_id: str,
        operator_id: str,
        client_name: str = "",
        reason: str = "",
    ) -> tuple[Handoff, bool]:
        """Open a handoff for *client_id*, or return the active one.

        Returns ``(handoff, created)``.
        """
        now = self._clock()
        outcome: dict[str, Any] = {}

        def _claim(current: dict[str, Any] | None) -> dict[str, Any]:
            active = (current or {}).get("active")
            if active:
                outcome["record"], outcome["created"] = active, False
                return current
            record = Handoff(
                id=uuid.uuid4().hex,
                client_id=client_id,
                operator_id=operator_id,
                client_name=client_name,
                reason=reason,
                created_at=now,
                last_activity=now,
            ).model_dump(mode="json")
            outcome["record"], outcome["created"] = record, True
            return {**(current or {}), "client_id": client_id, "active": record}

        await self._store.atomic_update(CLIENTS, client_id, _claim)
        handoff = Handoff.model_validate(outcome["record"])
        if outcome["created"]:
            logger.info(
                "Handoff %s opened for %s (operator %s)", handoff.id, client_id, operator_id,
            )
        else:
            logger.info("Handoff already active for %s; reusing %s", client_id, handoff.id)
        return handoff, outcome["created"]

    async def get_active_by_client(self, client_id: str) -> Handoff | None:
        doc = await self._store.get(CLIENTS, client_id)
        if doc and doc.get("active"):
            return Handoff.model_validate(doc["active"])
        return None

    async def list_active(self) -> list[Handoff]:
        """Active handoffs, most recently active first."""
        docs = await self._store.scan(CLIENTS)
        active = [Handoff.model_validate(d["active"]) for d in docs if d.get("active")]
        return sorted(active, key=lambda h: h.last_activity, reverse=True)

    async def get_active_by_operator(self, operator_id: str) -> Handoff | None:
        """The operator's most recently active handoff."""
        for handoff in await self.list_active():
            if handoff.operator_id == operator_id:
                return handoff
        return None

    async def touch(self, client_id: str) -> None:
        """Stamp ``last_activity`` on the active handoff, if any."""
        now = self._clock()

        def _touch(current: dict[str, Any] | None) -> dict[str, Any]:
            if not current or not current.get("active"):
                return current or {"client_id": client_id, "active": None}
            return {**current, "active": {**current["active"], "last_activity": now}}

        await self._store.atomic_update(CLIENTS, client_id, _touch)

    async def close(self, client_id: str) -> Handoff | None:
        """Close the active handoff for *client_id*.  Returns it, or ``None``."""
        now = self._clock()
        closed: dict[str, Any] = {}

        def _close(current: dict[str, Any] | None) -> dict[str, Any]:
            closed.clear()
            if not current or not current.get("active"):
                return current or {"client_id": client_id, "active": None}
            closed.update(current["active"], status="closed", closed_at=now, last_activity=now)
            return {**current, "active": None}

        await self._store.atomic_update(CLIENTS, client_id, _close)
        if not closed:
            return None
        handoff = Handoff.model_validate(closed)
        await self._store.atomic_update(ARCHIVE, handoff.id, lambda _: dict(closed))
        logger.info("Handoff %s closed for %s", handoff.id, client_id)
        return handoff

    async def close_all_for_operator(self, operator_id: str) -> list[Handoff]:
        closed: list[Handoff] = []
        for handoff in await self.list_active():
            if handoff.operator_id != operator_id:
                continue
            result = await self.close(handoff.client_id)
            if result is not None:
                closed.append(result)
        return closed
