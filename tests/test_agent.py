"""Tests for the dialogue graph and the turn orchestrator.

Covers:
  - Routing after the chatbot node (tool / escalate / end)
  - The tool caller's single-decision contract
  - Full turns with a scripted model: tool loop, stuck-loop escalation,
    LLM failure, slot-acceptance shortcut, known-patient restore
"""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langgraph.graph import END

from dental_concierge.agent import (
    APOLOGY,
    HOLD_MESSAGE,
    DialogueOrchestrator,
    FinalText,
    ToolCaller,
    ToolRequest,
    call_signature,
    route_after_chatbot,
)
from dental_concierge.history import CONTEXT_MARKER, deserialize
from dental_concierge.services.conversation_log import ConversationLog
from dental_concierge.services.document_store import InMemoryDocumentStore
from dental_concierge.services.handoff import HandoffService
from dental_concierge.services.operator_config import OperatorDirectory
from dental_concierge.services.session_store import SessionStore
from tests.conftest import ScriptedCaller

KEY = "573001112233"
OPERATOR = "573009998877"
NOW = datetime(2026, 1, 19, 8, 0)  # Monday

BLOCKS = [
    {"date": "2026-01-19", "start": "10:00", "end": "11:00"},
    {"date": "2026-01-20", "start": "10:00", "end": "11:00"},
    {"date": "2026-01-21", "start": "10:00", "end": "11:00"},
]


# ── Helpers ──────────────────────────────────────────────────────────


def _request(name: str, args: dict | None = None, call_id: str = "call_1") -> AIMessage:
    return AIMessage(
        content="",
        tool_calls=[{"name": name, "args": args or {}, "id": call_id, "type": "tool_call"}],
    )


class _Harness:
    """Orchestrator wired to in-memory collaborators."""

    def __init__(self, caller, scheduling, transport, *, operator=OPERATOR, max_iterations=8):
        self.store = InMemoryDocumentStore()
        self.sessions = SessionStore(self.store)
        self.handoffs = HandoffService(self.store)
        self.log = ConversationLog(self.store)
        self.caller = caller
        self.transport = transport
        self.orchestrator = DialogueOrchestrator(
            sessions=self.sessions,
            scheduling=scheduling,
            handoffs=self.handoffs,
            operators=OperatorDirectory(self.store, fallback_identity=operator),
            transport=transport,
            conversation_log=self.log,
            caller=caller,
            max_iterations=max_iterations,
            clock=lambda: NOW,
        )

    async def turn(self, text: str) -> str | None:
        reply = await self.orchestrator.handle_turn(KEY, text)
        await self.orchestrator.drain()
        return reply

    async def session(self):
        return await self.sessions.get(KEY)


# ── TestRouteAfterChatbot ────────────────────────────────────────────


class TestRouteAfterChatbot:
    def _state(self, last, iterations=0, executed=None):
        return {
            "messages": [HumanMessage(content="hola"), last],
            "iterations": iterations,
            "executed": executed or [],
        }

    def test_plain_reply_ends_turn(self):
        assert route_after_chatbot(self._state(AIMessage(content="¡Hola!"))) == END

    def test_tool_request_goes_to_tools(self):
        assert route_after_chatbot(self._state(_request("get_appointments"))) == "tools"

    def test_ceiling_escalates(self):
        state = self._state(_request("get_appointments"), iterations=3)
        assert route_after_chatbot(state, max_iterations=3) == "escalate"

    def test_repeated_request_escalates(self):
        call = _request("find_patient_by_document", {"document_number": "123456"})
        state = self._state(call, iterations=1, executed=[call_signature(call.tool_calls[0])])
        assert route_after_chatbot(state) == "escalate"

    def test_same_tool_with_new_arguments_allowed(self):
        first = _request("get_available_time_slots", {"date": "2026-01-20"})
        again = _request("get_available_time_slots", {"date": "2026-01-21"})
        state = self._state(again, iterations=1, executed=[call_signature(first.tool_calls[0])])
        assert route_after_chatbot(state) == "tools"

    def test_signature_ignores_argument_order(self):
        a = {"name": "x", "args": {"a": 1, "b": 2}}
        b = {"name": "x", "args": {"b": 2, "a": 1}}
        assert call_signature(a) == call_signature(b)


# ── TestToolCaller ───────────────────────────────────────────────────


class TestToolCaller:
    def _caller(self, response=None, error=None):
        bound = MagicMock()
        bound.ainvoke = AsyncMock(return_value=response, side_effect=error)
        llm = MagicMock()
        llm.bind_tools.return_value = bound
        return ToolCaller(llm=llm), llm, bound

    @pytest.mark.asyncio
    async def test_text_reply(self):
        caller, llm, bound = self._caller(AIMessage(content=" ¡Hola! "))
        outcome = await caller.complete("sistema", [HumanMessage(content="hola")], [{"name": "t"}])

        assert outcome == FinalText(text="¡Hola!")
        llm.bind_tools.assert_called_once_with([{"name": "t"}])
        sent = bound.ainvoke.await_args.args[0]
        assert sent[0].content == "sistema"
        assert sent[1].content == "hola"

    @pytest.mark.asyncio
    async def test_only_first_tool_call_honoured(self):
        response = AIMessage(content="", tool_calls=[
            {"name": "get_appointments", "args": {}, "id": "a", "type": "tool_call"},
            {"name": "cancel_appointment", "args": {}, "id": "b", "type": "tool_call"},
        ])
        caller, _, _ = self._caller(response)
        outcome = await caller.complete("s", [], [])
        assert outcome == ToolRequest(name="get_appointments", parameters={}, call_id="a")

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        caller, _, _ = self._caller(error=RuntimeError("overloaded"))
        with pytest.raises(RuntimeError):
            await caller.complete("s", [], [])


# ── TestDialogueTurns ────────────────────────────────────────────────


class TestDialogueTurns:
    @pytest.mark.asyncio
    async def test_plain_reply_is_sent_and_stored(self, scheduling, transport):
        h = _Harness(ScriptedCaller(FinalText("¡Hola! Soy Paola.")), scheduling, transport)

        reply = await h.turn("hola")

        assert reply == "¡Hola! Soy Paola."
        assert transport.to(KEY) == ["¡Hola! Soy Paola."]
        session = await h.session()
        assert session.step == "in_conversation"
        assert session.processing is False
        assert [m.content for m in deserialize(session.transcript)] == ["hola", "¡Hola! Soy Paola."]

    @pytest.mark.asyncio
    async def test_tool_loop_feeds_result_back(self, scheduling, transport):
        scheduling.get_available_slots.return_value = BLOCKS
        caller = ScriptedCaller(
            ToolRequest("get_available_time_slots", {}, "call_1"),
            FinalText("Tengo el lunes 19 o el martes 20 a las 10:00 am."),
        )
        h = _Harness(caller, scheduling, transport)

        reply = await h.turn("Necesito una cita")

        assert reply.startswith("Tengo el lunes")
        last_seen = caller.calls[1]["transcript"][-1]
        assert isinstance(last_seen, ToolMessage)
        assert "Horarios disponibles" in last_seen.content
        session = await h.session()
        assert [s.date for s in session.offered_slots] == ["2026-01-19", "2026-01-20", "2026-01-21"]
        stored = deserialize(session.transcript)
        assert [type(m).__name__ for m in stored] == [
            "HumanMessage", "AIMessage", "ToolMessage", "AIMessage",
        ]

    @pytest.mark.asyncio
    async def test_slot_acceptance_books_without_model(self, scheduling, transport):
        scheduling.get_available_slots.return_value = BLOCKS
        scheduling.find_patient_by_document.return_value = {"id": 5, "nombre": "Ana"}
        caller = ScriptedCaller(
            ToolRequest("get_available_time_slots", {}, "call_1"),
            FinalText("Tengo el lunes 19 o el martes 20 a las 10:00 am."),
        )
        h = _Harness(caller, scheduling, transport)
        await h.turn("Necesito una cita, mi cédula es 1020304050")

        with patch("dental_concierge.agent.metrics") as turn_metrics:
            reply = await h.turn("el lunes a las 10am")

        turn_metrics.record_event.assert_called_once_with("Turn", outcome="direct_booking")
        assert reply.startswith("¡Listo! Cita agendada para el Lunes, 19 de enero")
        assert len(caller.calls) == 2
        patient_id, day, time, _ = scheduling.create_appointment.await_args.args
        assert (patient_id, day, time) == (5, "2026-01-19", "10:00")
        session = await h.session()
        assert session.offered_slots == []
        assert session.appointment_id == 9001

    @pytest.mark.asyncio
    async def test_failed_shortcut_falls_back_to_model(self, scheduling, transport):
        scheduling.get_available_slots.return_value = BLOCKS
        caller = ScriptedCaller(
            ToolRequest("get_available_time_slots", {}, "call_1"),
            FinalText("Tengo el lunes 19 o el martes 20."),
            FinalText("¿Me compartes tu número de documento?"),
        )
        h = _Harness(caller, scheduling, transport)
        await h.turn("Necesito una cita")

        reply = await h.turn("el martes a las 10am")

        assert reply == "¿Me compartes tu número de documento?"
        scheduling.create_appointment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repeated_request_escalates(self, scheduling, transport):
        caller = ScriptedCaller(
            ToolRequest("find_patient_by_document", {"document_number": "123456"}, "call_1"),
            ToolRequest("find_patient_by_document", {"document_number": "123456"}, "call_2"),
        )
        h = _Harness(caller, scheduling, transport)

        reply = await h.turn("mi documento es 123456")

        assert reply == HOLD_MESSAGE
        assert scheduling.find_patient_by_document.await_count == 1
        assert await h.handoffs.get_active_by_client(KEY) is not None
        assert len(transport.to(OPERATOR)) == 1
        stored = deserialize((await h.session()).transcript)
        assert isinstance(stored[-2], ToolMessage) and stored[-2].tool_call_id == "call_2"

    @pytest.mark.asyncio
    async def test_iteration_ceiling_escalates(self, scheduling, transport):
        caller = ScriptedCaller(
            ToolRequest("get_available_time_slots", {}, "call_1"),
            ToolRequest("get_available_time_slots", {"date": "2026-01-20"}, "call_2"),
            ToolRequest("get_available_time_slots", {"date": "2026-01-21"}, "call_3"),
        )
        h = _Harness(caller, scheduling, transport, max_iterations=2)

        reply = await h.turn("quiero una cita")

        assert reply == HOLD_MESSAGE
        assert scheduling.get_available_slots.await_count == 2
        assert len(caller.calls) == 3

    @pytest.mark.asyncio
    async def test_default_ceiling_escalates_with_user_turn_in_view(self, scheduling, transport):
        requests = [
            ToolRequest("get_available_time_slots", {"date": f"2026-01-{day}"}, f"call_{day}")
            for day in range(20, 31)
        ]
        caller = ScriptedCaller(*requests)
        h = _Harness(caller, scheduling, transport, max_iterations=10)

        reply = await h.turn("quiero una cita")

        assert reply == HOLD_MESSAGE
        assert scheduling.get_available_slots.await_count == 10
        assert len(caller.calls) == 11
        for call in caller.calls:
            assert call["transcript"][0].content == "quiero una cita"
        assert await h.handoffs.get_active_by_client(KEY) is not None

    @pytest.mark.asyncio
    async def test_shortcut_skipped_once_appointment_exists(self, scheduling, transport):
        caller = ScriptedCaller(FinalText("¿Quieres mover tu cita al lunes a las 10:00 am?"))
        h = _Harness(caller, scheduling, transport)
        await h.sessions.merge_data(
            KEY,
            {"document_number": "1020304050"},
            appointment_id=777,
            offered_slots=[
                {"label": "Lunes, 19 de enero", "time": "10:00", "date": "2026-01-19"},
                {"label": "Martes, 20 de enero", "time": "10:00", "date": "2026-01-20"},
            ],
        )

        reply = await h.turn("el lunes a las 10am")

        assert reply == "¿Quieres mover tu cita al lunes a las 10:00 am?"
        scheduling.create_appointment.assert_not_awaited()
        assert len(caller.calls) == 1
        assert (await h.session()).appointment_id == 777

    @pytest.mark.asyncio
    async def test_escalation_without_operator_apologises(self, scheduling, transport):
        caller = ScriptedCaller(
            ToolRequest("get_appointments", {}, "call_1"),
            ToolRequest("get_appointments", {}, "call_2"),
        )
        h = _Harness(caller, scheduling, transport, operator="")
        assert await h.turn("mis citas") == APOLOGY

    @pytest.mark.asyncio
    async def test_llm_failure_apologises(self, scheduling, transport):
        h = _Harness(ScriptedCaller(RuntimeError("overloaded")), scheduling, transport)

        reply = await h.turn("hola")

        assert reply == APOLOGY
        assert transport.to(KEY) == [APOLOGY]
        assert (await h.session()).processing is False

    @pytest.mark.asyncio
    async def test_concurrent_turn_is_dropped(self, scheduling, transport):
        caller = ScriptedCaller(FinalText("hola"))
        h = _Harness(caller, scheduling, transport)
        await h.sessions.try_begin_processing(KEY)

        assert await h.turn("hola") is None
        assert caller.calls == []
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_document_number_remembered(self, scheduling, transport):
        h = _Harness(ScriptedCaller(FinalText("Gracias")), scheduling, transport)
        await h.turn("mi cédula es 1020304050")
        assert (await h.session()).data["document_number"] == "1020304050"

    @pytest.mark.asyncio
    async def test_known_patient_restored_from_profile(self, scheduling, transport):
        caller = ScriptedCaller(FinalText("¡Hola Ana!"))
        h = _Harness(caller, scheduling, transport)
        await h.log.log_exchange(
            KEY, [("user", "hola")], document_number="1020304050", user_name="Ana Pérez",
        )

        await h.turn("hola de nuevo")

        transcript = caller.calls[0]["transcript"]
        assert transcript[0].content.startswith(CONTEXT_MARKER)
        assert "1020304050" in transcript[0].content
        # The context pair is never written back
        stored = deserialize((await h.session()).transcript)
        assert all(CONTEXT_MARKER not in m.content for m in stored)

    @pytest.mark.asyncio
    async def test_exchange_logged_to_profile(self, scheduling, transport):
        h = _Harness(ScriptedCaller(FinalText("¡Hola!")), scheduling, transport)
        await h.turn("hola")
        profile = await h.log.get_profile(KEY)
        assert [(m.role, m.text) for m in profile.messages] == [
            ("user", "hola"), ("assistant", "¡Hola!"),
        ]
