"""Per-conversation debounce buffer for inbound messages.

WhatsApp users often split one thought over several messages ("hola" /
"quiero una cita" / "para mañana").  The aggregator collects fragments in
the session's ``pending`` buffer and hands the joined text to the
orchestrator once the user pauses:

* a fragment ending in ``.``, ``!`` or ``?`` flushes immediately;
* otherwise a flush timer (10 s by default) is re-armed, replacing any
  earlier timer for the same key.

Every operation for a key (enqueue, timer flush) runs through a per-key
task chain, so buffer reads and writes never interleave and a coalesced
turn is delivered at most once.  If ``on_flush`` raises, the error is
logged and the text is **not** re-buffered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from dental_concierge.config import MESSAGE_BATCH_SECONDS
from dental_concierge.services.session_store import SessionStore

logger = logging.getLogger(__name__)

FlushCallback = Callable[[str], Awaitable[Any]]

TERMINAL_PUNCTUATION = (".", "!", "?")


def ends_turn(text: str) -> bool:
    """Return ``True`` when *text* ends in terminal punctuation."""
    return text.strip().endswith(TERMINAL_PUNCTUATION)


class MessageAggregator:
    def __init__(
        self,
        sessions: SessionStore,
        *,
        delay_seconds: float = MESSAGE_BATCH_SECONDS,
    ) -> None:
        self._sessions = sessions
        self._delay = delay_seconds
        self._tails: dict[str, asyncio.Task] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._flushing: set[str] = set()
        self._timer_tasks: set[asyncio.Task] = set()

    # ── Per-key serialization ────────────────────────────────────────

    async def _serialized(self, key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run *operation* after every earlier operation for *key* settled."""
        previous = self._tails.get(key)

        async def _run():
            if previous is not None:
                await asyncio.wait({previous})
            return await operation()

        task = asyncio.get_running_loop().create_task(_run())
        self._tails[key] = task
        try:
            return await task
        finally:
            if self._tails.get(key) is task:
                del self._tails[key]

    # ── Public API ───────────────────────────────────────────────────

    async def enqueue(self, key: str, text: str, on_flush: FlushCallback) -> None:
        """Buffer *text* for *key*; flush now or (re)arm the flush timer."""
        await self._serialized(key, lambda: self._append(key, text, on_flush))

    def cancel(self, key: str) -> None:
        """Drop any pending flush timer for *key* (the buffer is kept)."""
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def has_pending_timer(self, key: str) -> bool:
        return key in self._timers

    async def aclose(self) -> None:
        """Cancel every timer and wait for in-flight flushes."""
        for key in list(self._timers):
            self.cancel(key)
        pending = list(self._timer_tasks) + list(self._tails.values())
        if pending:
            await asyncio.wait(pending)

    # ── Internal ─────────────────────────────────────────────────────

    async def _append(self, key: str, text: str, on_flush: FlushCallback) -> None:
        session = await self._sessions.create_if_absent(key)
        await self._sessions.merge_update(key, {"pending": [*session.pending, text]})

        if ends_turn(text):
            await self._flush(key, on_flush)
            return

        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self._delay, self._on_timer, key, on_flush)
        logger.debug("Buffered fragment for %s; flush in %.1fs", key, self._delay)

    def _on_timer(self, key: str, on_flush: FlushCallback) -> None:
        self._timers.pop(key, None)
        task = asyncio.get_running_loop().create_task(
            self._serialized(key, lambda: self._flush(key, on_flush)),
        )
        self._timer_tasks.add(task)
        task.add_done_callback(self._timer_tasks.discard)

    async def _flush(self, key: str, on_flush: FlushCallback) -> None:
        if key in self._flushing:
            logger.debug("Flush already in progress for %s; skipping", key)
            return

        self._flushing.add(key)
        try:
            self.cancel(key)
            session = await self._sessions.get(key)
            if session is None or not session.pending:
                return

            full_text = " ".join(session.pending)
            await self._sessions.merge_update(key, {"pending": []})
            logger.info(
                "Flushing %d fragment(s) for %s", len(session.pending), key,
            )
            try:
                await on_flush(full_text)
            except Exception:
                logger.exception("Flush callback failed for %s; message dropped", key)
        finally:
            self._flushing.discard(key)
