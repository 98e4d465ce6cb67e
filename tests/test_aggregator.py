"""Tests for the per-conversation debounce buffer."""

from __future__ import annotations

import asyncio

import pytest

from dental_concierge.services.aggregator import MessageAggregator, ends_turn
from dental_concierge.services.document_store import InMemoryDocumentStore
from dental_concierge.services.session_store import SessionStore

DELAY = 0.05


def _aggregator() -> tuple[MessageAggregator, SessionStore]:
    sessions = SessionStore(InMemoryDocumentStore())
    return MessageAggregator(sessions, delay_seconds=DELAY), sessions


class _Recorder:
    def __init__(self, error: Exception | None = None) -> None:
        self.flushed: list[str] = []
        self.error = error

    async def __call__(self, text: str) -> None:
        self.flushed.append(text)
        if self.error is not None:
            raise self.error


class TestEndsTurn:
    @pytest.mark.parametrize("text", ["Hola.", "¿Tienen cita?", "Gracias!", "ok.  "])
    def test_terminal_punctuation(self, text):
        assert ends_turn(text) is True

    @pytest.mark.parametrize("text", ["hola", "quiero una cita,", "10:30", ""])
    def test_no_terminal_punctuation(self, text):
        assert ends_turn(text) is False


class TestDebounce:
    @pytest.mark.asyncio
    async def test_fragments_flush_once_joined_by_spaces(self):
        aggregator, _ = _aggregator()
        recorder = _Recorder()

        await aggregator.enqueue("k", "hola", recorder)
        await aggregator.enqueue("k", "quiero una cita", recorder)
        await asyncio.sleep(DELAY * 4)
        await aggregator.aclose()

        assert recorder.flushed == ["hola quiero una cita"]

    @pytest.mark.asyncio
    async def test_new_fragment_rearms_timer(self):
        aggregator, _ = _aggregator()
        recorder = _Recorder()

        await aggregator.enqueue("k", "hola", recorder)
        await asyncio.sleep(DELAY / 2)
        await aggregator.enqueue("k", "para mañana", recorder)
        await asyncio.sleep(DELAY / 2 + 0.01)
        assert recorder.flushed == []

        await asyncio.sleep(DELAY * 3)
        await aggregator.aclose()
        assert recorder.flushed == ["hola para mañana"]

    @pytest.mark.asyncio
    async def test_terminal_punctuation_flushes_immediately(self):
        aggregator, sessions = _aggregator()
        recorder = _Recorder()

        await aggregator.enqueue("k", "hola", recorder)
        await aggregator.enqueue("k", "quiero una cita.", recorder)

        assert recorder.flushed == ["hola quiero una cita."]
        assert aggregator.has_pending_timer("k") is False

        await asyncio.sleep(DELAY * 3)
        assert recorder.flushed == ["hola quiero una cita."]
        assert (await sessions.get("k")).pending == []

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        aggregator, _ = _aggregator()
        recorder_a, recorder_b = _Recorder(), _Recorder()

        await aggregator.enqueue("a", "hola", recorder_a)
        await aggregator.enqueue("b", "buenas.", recorder_b)

        assert recorder_b.flushed == ["buenas."]
        assert recorder_a.flushed == []
        await asyncio.sleep(DELAY * 3)
        await aggregator.aclose()
        assert recorder_a.flushed == ["hola"]


class TestSerialization:
    @pytest.mark.asyncio
    async def test_concurrent_fragments_keep_order_and_flush_once(self):
        aggregator, sessions = _aggregator()
        recorder = _Recorder()

        await asyncio.gather(*(aggregator.enqueue("k", f"m{i}", recorder) for i in range(8)))
        await asyncio.sleep(DELAY * 4)
        await aggregator.aclose()

        assert recorder.flushed == [" ".join(f"m{i}" for i in range(8))]
        assert (await sessions.get("k")).pending == []

    @pytest.mark.asyncio
    async def test_flush_during_flush_is_skipped(self):
        aggregator, sessions = _aggregator()
        flushed: list[str] = []

        async def on_flush(text: str) -> None:
            flushed.append(text)
            await sessions.merge_update("k", {"pending": ["otra"]})
            await aggregator._flush("k", on_flush)

        await aggregator.enqueue("k", "hola.", on_flush)
        await aggregator.aclose()

        assert flushed == ["hola."]
        assert (await sessions.get("k")).pending == ["otra"]


class TestFailure:
    @pytest.mark.asyncio
    async def test_failed_flush_is_not_rebuffered(self):
        aggregator, sessions = _aggregator()
        recorder = _Recorder(error=RuntimeError("llm down"))

        await aggregator.enqueue("k", "hola.", recorder)
        await asyncio.sleep(DELAY * 3)

        assert recorder.flushed == ["hola."]
        assert (await sessions.get("k")).pending == []

    @pytest.mark.asyncio
    async def test_cancel_drops_timer(self):
        aggregator, _ = _aggregator()
        recorder = _Recorder()

        await aggregator.enqueue("k", "hola", recorder)
        aggregator.cancel("k")
        await asyncio.sleep(DELAY * 3)

        assert recorder.flushed == []
        assert aggregator.has_pending_timer("k") is False
