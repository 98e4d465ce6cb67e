"""Tests for TTL-bounded sessions and the processing flag."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from dental_concierge.models import OfferedSlot
from dental_concierge.services.document_store import DocumentStoreError, InMemoryDocumentStore
from dental_concierge.services.session_store import STALE_PROCESSING_SECONDS, SessionStore
from tests.conftest import FakeClock


def _store(clock: FakeClock, backend=None) -> SessionStore:
    return SessionStore(backend or InMemoryDocumentStore(), ttl_seconds=30 * 60, clock=clock)


class TestExpiry:
    @pytest.mark.asyncio
    async def test_session_absent_after_31_minutes(self, clock):
        sessions = _store(clock)
        await sessions.merge_data("573001", {"document_number": "1020304050"})

        clock.advance(31 * 60)

        assert await sessions.get("573001") is None

    @pytest.mark.asyncio
    async def test_session_alive_within_ttl(self, clock):
        sessions = _store(clock)
        await sessions.create_if_absent("573001")
        clock.advance(29 * 60)
        assert await sessions.get("573001") is not None

    @pytest.mark.asyncio
    async def test_write_after_expiry_starts_fresh(self, clock):
        sessions = _store(clock)
        await sessions.merge_data("573001", {"user_name": "Ana"})
        clock.advance(31 * 60)

        session = await sessions.merge_update("573001", {"pending": ["hola"]})

        assert session.data == {}
        assert session.pending == ["hola"]

    @pytest.mark.asyncio
    async def test_every_write_refreshes_last_activity(self, clock):
        sessions = _store(clock)
        await sessions.create_if_absent("k")
        clock.advance(20 * 60)
        await sessions.merge_update("k", {"step": "in_conversation"})
        clock.advance(20 * 60)
        assert await sessions.get("k") is not None


class TestMerge:
    @pytest.mark.asyncio
    async def test_merge_update_accepts_models(self, clock):
        sessions = _store(clock)
        slot = OfferedSlot(label="Martes, 20 de enero", time="10:00", date="2026-01-20")
        session = await sessions.merge_update("k", {"offered_slots": [slot]})
        assert session.offered_slots == [slot]

    @pytest.mark.asyncio
    async def test_merge_data_keeps_other_keys(self, clock):
        sessions = _store(clock)
        await sessions.merge_data("k", {"user_name": "Ana"})
        session = await sessions.merge_data("k", {"document_number": "123456"}, step="awaiting_operator")
        assert session.data == {"user_name": "Ana", "document_number": "123456"}
        assert session.step == "awaiting_operator"


class TestProcessingFlag:
    @pytest.mark.asyncio
    async def test_second_claim_is_refused(self, clock):
        sessions = _store(clock)
        assert await sessions.try_begin_processing("k") is not None
        assert await sessions.try_begin_processing("k") is None

    @pytest.mark.asyncio
    async def test_claim_after_release(self, clock):
        sessions = _store(clock)
        await sessions.try_begin_processing("k")
        await sessions.end_processing("k")
        assert await sessions.try_begin_processing("k") is not None

    @pytest.mark.asyncio
    async def test_stale_flag_is_taken_over(self, clock):
        sessions = _store(clock)
        await sessions.try_begin_processing("k")
        clock.advance(STALE_PROCESSING_SECONDS + 1)
        assert await sessions.try_begin_processing("k") is not None


class TestDegradation:
    @pytest.mark.asyncio
    async def test_falls_back_to_memory_once(self, clock, caplog):
        broken = InMemoryDocumentStore()
        broken.atomic_update = AsyncMock(side_effect=DocumentStoreError("down"))
        broken.get = AsyncMock(side_effect=DocumentStoreError("down"))
        sessions = _store(clock, broken)

        await sessions.merge_data("k", {"user_name": "Ana"})
        session = await sessions.get("k")

        assert sessions.degraded is True
        assert session.data["user_name"] == "Ana"
        fallbacks = [r for r in caplog.records if "in-memory sessions" in r.getMessage()]
        assert len(fallbacks) == 1
