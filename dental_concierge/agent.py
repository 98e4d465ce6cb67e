"""LangGraph-based dialogue orchestrator for the clinic's WhatsApp line.

Architecture:
  One patient turn runs a small LangGraph StateGraph:

    1. **chatbot**   — compacts the transcript, builds the system prompt
                       and asks Claude for either a reply or ONE tool call
    2. **tools**     — persists the transcript, runs the requested tool
                       through the dispatch table, persists again
    3. **escalate**  — exit for stuck loops: answers the pending request,
                       hands the conversation to the human operator

  Routing:
    chatbot → (tool call?)            → tools → chatbot (loop)
            → (ceiling hit / repeat?) → escalate → END
            → (plain text?)           → END

  Per-turn collaborators (session, Dentalink, transport...) travel in
  ``config["configurable"]["turn"]`` as a ``ToolContext``; nothing is kept
  in a checkpointer because the durable transcript lives on the session.

``DialogueOrchestrator.handle_turn`` wraps the graph with the processing
flag, the known-patient memory and the slot-acceptance shortcut, and never
raises.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from dental_concierge.config import (
    ANTHROPIC_API_KEY,
    EXTERNAL_CALL_TIMEOUT_SECONDS,
    MAX_OUTPUT_TOKENS,
    MAX_TOOL_ITERATIONS,
    MODEL_NAME,
)
from dental_concierge.dates import clinic_now
from dental_concierge.history import (
    compact,
    deserialize,
    is_context_turn,
    serialize,
    text_of,
    to_storage,
)
from dental_concierge.models import Session
from dental_concierge.prompts import get_system_prompt
from dental_concierge.services.clinic_info import ClinicInfoProvider, requires_clinic_info
from dental_concierge.services.conversation_log import ConversationLog
from dental_concierge.services.dentalink_client import DentalinkClient
from dental_concierge.services.handoff import HandoffService
from dental_concierge.services.metrics import metrics
from dental_concierge.services.operator_config import OperatorDirectory
from dental_concierge.services.session_store import SessionStore
from dental_concierge.services.slot_matcher import match_slot
from dental_concierge.services.whatsapp_client import Transport
from dental_concierge.tools.context import ToolContext
from dental_concierge.tools.human_agent import escalate_to_operator
from dental_concierge.tools.registry import dispatch, tool_schemas
from dental_concierge.tools.results import failure, is_failure
from dental_concierge.tools.scheduling import book_slot

logger = logging.getLogger(__name__)

APOLOGY = "Lo siento, tuve un problema procesando tu mensaje. ¿Puedes intentarlo de nuevo?"
HOLD_MESSAGE = (
    "Un momento por favor, te estoy comunicando con una persona del equipo "
    "que continuará la conversación."
)

_DOCUMENT_RE = re.compile(r"\b\d{6,10}\b")
_RECENT_USER_TEXTS = 5


# ── LLM tool caller ──────────────────────────────────────────────────


@dataclass
class FinalText:
    text: str


@dataclass
class ToolRequest:
    name: str
    parameters: dict[str, Any]
    call_id: str


def _build_llm() -> ChatAnthropic:
    """Build the Claude chat model; tools are bound per call."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,  # Low temperature for consistent, factual responses
        max_tokens=MAX_OUTPUT_TOKENS,
    )


class ToolCaller:
    """Thin wrapper turning a chat-model response into a single decision."""

    def __init__(self, llm: ChatAnthropic | None = None) -> None:
        self._llm = llm or _build_llm()

    async def complete(
        self,
        system_prompt: str,
        transcript: Sequence[AnyMessage],
        tools: list[dict[str, Any]],
    ) -> FinalText | ToolRequest:
        bound = self._llm.bind_tools(tools)
        t0 = time.perf_counter()
        try:
            response = await bound.ainvoke([SystemMessage(content=system_prompt), *transcript])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "llm_invoke",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
        logger.debug("LLM responded in %.0fms", elapsed)

        if response.tool_calls:
            if len(response.tool_calls) > 1:
                logger.info(
                    "LLM requested %d tools; honouring only %s",
                    len(response.tool_calls), response.tool_calls[0]["name"],
                )
            call = response.tool_calls[0]
            return ToolRequest(
                name=call["name"],
                parameters=call.get("args") or {},
                call_id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            )
        return FinalText(text=text_of(response).strip())


# ── State schema ─────────────────────────────────────────────────────


class DialogueState(TypedDict):
    """State flowing through one turn of the graph.

    ``iterations`` counts executed tools and ``executed`` holds their
    ``name + arguments`` signatures, both reset every turn.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    iterations: int
    executed: list[str]


def _turn(config: RunnableConfig) -> ToolContext:
    return config["configurable"]["turn"]


def _pending_call(state: DialogueState) -> dict[str, Any] | None:
    last = state["messages"][-1] if state["messages"] else None
    if isinstance(last, AIMessage) and last.tool_calls:
        return last.tool_calls[0]
    return None


def call_signature(call: dict[str, Any]) -> str:
    args = json.dumps(call.get("args") or {}, sort_keys=True, ensure_ascii=False)
    return f"{call['name']}:{args}"


async def persist_transcript(ctx: ToolContext, messages: Sequence[AnyMessage]) -> None:
    await ctx.update_session(transcript=serialize(to_storage(messages)))


# ── Nodes ────────────────────────────────────────────────────────────


def _make_chatbot_node(caller: ToolCaller, clinic_info: ClinicInfoProvider | None):
    """Create the node that asks the model for the next step."""
    schemas = tool_schemas()

    async def chatbot_node(state: DialogueState, config: RunnableConfig) -> dict:
        ctx = _turn(config)
        transcript = compact(
            state["messages"],
            user_name=ctx.user_name,
            document_number=ctx.document_number,
        )
        info = None
        if clinic_info is not None and requires_clinic_info(ctx.user_text, ctx.recent_user_texts):
            info = await clinic_info.get_content()
        prompt = get_system_prompt(info, ctx.now)

        try:
            outcome = await caller.complete(prompt, transcript, schemas)
        except Exception:
            logger.exception("LLM call failed for %s", ctx.key)
            return {"messages": [AIMessage(content=APOLOGY)]}

        if isinstance(outcome, ToolRequest):
            logger.info("LLM requested %s for %s", outcome.name, ctx.key)
            request = AIMessage(
                content="",
                tool_calls=[{
                    "name": outcome.name,
                    "args": outcome.parameters,
                    "id": outcome.call_id,
                    "type": "tool_call",
                }],
            )
            return {"messages": [request]}
        return {"messages": [AIMessage(content=outcome.text or APOLOGY)]}

    return chatbot_node


def _make_tools_node(tool_timeout: float):
    """Create the node that executes the pending tool request."""

    async def tools_node(state: DialogueState, config: RunnableConfig) -> dict:
        ctx = _turn(config)
        call = _pending_call(state)
        # Checkpoint with the request so a crash mid-tool leaves a trace
        await persist_transcript(ctx, state["messages"])

        result = await dispatch(call["name"], call.get("args") or {}, ctx, timeout=tool_timeout)
        answer = ToolMessage(content=result, tool_call_id=call["id"], name=call["name"])

        await persist_transcript(ctx, [*state["messages"], answer])
        return {
            "messages": [answer],
            "iterations": state["iterations"] + 1,
            "executed": [*state["executed"], call_signature(call)],
        }

    return tools_node


def _make_escalate_node():
    """Create the node that hands a stuck conversation to a person."""

    async def escalate_node(state: DialogueState, config: RunnableConfig) -> dict:
        ctx = _turn(config)
        call = _pending_call(state)
        logger.warning(
            "Tool loop for %s stopped after %d tools (last request %s); escalating",
            ctx.key, state["iterations"], call["name"],
        )
        answer = ToolMessage(
            content=failure("unavailable", "La conversación se transfirió a una persona."),
            tool_call_id=call["id"],
            name=call["name"],
        )
        handoff = await escalate_to_operator(
            client_id=ctx.key,
            client_name=ctx.user_name,
            reason="El asistente no pudo completar la solicitud",
            handoffs=ctx.handoffs,
            operators=ctx.operators,
            transport=ctx.transport,
            sessions=ctx.sessions,
            trigger="stuck_loop",
        )
        reply = HOLD_MESSAGE if handoff is not None else APOLOGY
        return {"messages": [answer, AIMessage(content=reply)]}

    return escalate_node


# ── Conditional edges ────────────────────────────────────────────────


def route_after_chatbot(state: DialogueState, max_iterations: int = MAX_TOOL_ITERATIONS) -> str:
    """Send a tool request to ``tools`` unless the loop looks stuck."""
    call = _pending_call(state)
    if call is None:
        return END
    if state["iterations"] >= max_iterations:
        return "escalate"
    if call_signature(call) in state["executed"]:
        return "escalate"
    return "tools"


# ── Graph assembly ───────────────────────────────────────────────────


def create_dialogue_graph(
    caller: ToolCaller,
    clinic_info: ClinicInfoProvider | None = None,
    *,
    max_iterations: int = MAX_TOOL_ITERATIONS,
    tool_timeout: float = EXTERNAL_CALL_TIMEOUT_SECONDS,
):
    """Build and compile the per-turn tool loop.

    Invoke with::

        await graph.ainvoke(
            {"messages": transcript, "iterations": 0, "executed": []},
            config={"configurable": {"turn": tool_context}},
        )
    """
    graph = StateGraph(DialogueState)

    graph.add_node("chatbot", _make_chatbot_node(caller, clinic_info))
    graph.add_node("tools", _make_tools_node(tool_timeout))
    graph.add_node("escalate", _make_escalate_node())

    graph.set_entry_point("chatbot")
    graph.add_conditional_edges(
        "chatbot",
        lambda state: route_after_chatbot(state, max_iterations),
        {"tools": "tools", "escalate": "escalate", END: END},
    )
    graph.add_edge("tools", "chatbot")
    graph.add_edge("escalate", END)

    compiled = graph.compile()
    logger.debug(
        "Dialogue graph compiled — model: %s, tools: %d, ceiling: %d",
        MODEL_NAME, len(tool_schemas()), max_iterations,
    )
    return compiled


# ── Orchestrator ─────────────────────────────────────────────────────


class DialogueOrchestrator:
    """Runs one coalesced patient turn end to end."""

    def __init__(
        self,
        *,
        sessions: SessionStore,
        scheduling: DentalinkClient,
        handoffs: HandoffService,
        operators: OperatorDirectory,
        transport: Transport,
        conversation_log: ConversationLog,
        clinic_info: ClinicInfoProvider | None = None,
        caller: ToolCaller | None = None,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        tool_timeout: float = EXTERNAL_CALL_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = clinic_now,
    ) -> None:
        self._sessions = sessions
        self._scheduling = scheduling
        self._handoffs = handoffs
        self._operators = operators
        self._transport = transport
        self._log = conversation_log
        self._clock = clock
        self._recursion_limit = max_iterations * 2 + 5
        self._graph = create_dialogue_graph(
            caller or ToolCaller(),
            clinic_info,
            max_iterations=max_iterations,
            tool_timeout=tool_timeout,
        )
        self._background: set[asyncio.Task] = set()

    async def handle_turn(self, key: str, text: str) -> str | None:
        """Process one coalesced user turn and send the reply.

        Returns the reply text, or ``None`` when the turn was dropped
        because another turn for *key* is still running.
        """
        session = await self._sessions.try_begin_processing(key)
        if session is None:
            metrics.record_event("Turn", outcome="dropped")
            return None

        try:
            return await self._run_turn(key, text, session)
        except Exception:
            logger.exception("Turn for %s failed", key)
            metrics.record_event("Turn", outcome="failed")
            await self._deliver(key, APOLOGY)
            return APOLOGY
        finally:
            await self._sessions.end_processing(key)

    async def drain(self) -> None:
        """Wait for background conversation-log writes."""
        if self._background:
            await asyncio.wait(set(self._background))

    # ── Internal ─────────────────────────────────────────────────────

    async def _run_turn(self, key: str, text: str, session: Session) -> str:
        transcript = deserialize(session.transcript)
        if not transcript:
            session = await self._load_profile(key, session)

        partial: dict[str, Any] = {}
        if session.step == "init":
            partial["step"] = "in_conversation"
        document = _DOCUMENT_RE.search(text)
        if document and document.group(0) != session.data.get("document_number"):
            logger.info("Document number detected in message from %s", key)
            session = await self._sessions.merge_data(
                key, {"document_number": document.group(0)}, **partial,
            )
        elif partial:
            session = await self._sessions.merge_update(key, partial)

        ctx = ToolContext(
            key=key,
            session=session,
            sessions=self._sessions,
            scheduling=self._scheduling,
            handoffs=self._handoffs,
            operators=self._operators,
            transport=self._transport,
            now=self._clock(),
            user_text=text,
            recent_user_texts=[
                text_of(m) for m in transcript
                if isinstance(m, HumanMessage) and not is_context_turn(m)
            ][-_RECENT_USER_TEXTS:],
        )

        reply = await self._accept_offered_slot(ctx, text)
        if reply is not None:
            outcome = "direct_booking"
            messages = [*transcript, HumanMessage(content=text), AIMessage(content=reply)]
        else:
            result = await self._graph.ainvoke(
                {
                    "messages": [*transcript, HumanMessage(content=text)],
                    "iterations": 0,
                    "executed": [],
                },
                config={"configurable": {"turn": ctx}, "recursion_limit": self._recursion_limit},
            )
            messages = result["messages"]
            reply = text_of(messages[-1]).strip() or APOLOGY
            outcome = "escalated" if reply == HOLD_MESSAGE else "replied"

        await persist_transcript(ctx, messages)
        await self._deliver(key, reply)
        self._log_in_background(key, text, reply, ctx)
        metrics.record_event("Turn", outcome=outcome)
        return reply

    async def _load_profile(self, key: str, session: Session) -> Session:
        if session.data.get("document_number"):
            return session
        profile = await self._log.get_profile(key)
        if profile is None or not profile.document_number:
            return session
        logger.info("Known patient %s; restoring profile", key)
        return await self._sessions.merge_data(key, {
            "document_number": profile.document_number,
            "user_name": profile.user_name or "",
        })

    async def _accept_offered_slot(self, ctx: ToolContext, text: str) -> str | None:
        """Book directly when the text names one of the offered slots."""
        session = ctx.session
        if not session.offered_slots or session.appointment_id is not None:
            return None
        slot = match_slot(text, session.offered_slots)
        if slot is None:
            return None

        logger.info("Message from %s matches offered slot %s %s", ctx.key, slot.date, slot.time)
        result = await book_slot(ctx, slot.date, slot.time, ctx.document_number)
        if is_failure(result):
            logger.warning("Direct booking for %s failed (%s); asking the LLM", ctx.key, result)
            return None
        return f"¡Listo! {result} Te esperamos."

    async def _deliver(self, key: str, reply: str) -> None:
        try:
            await self._transport.send_text(key, reply)
        except Exception:
            logger.exception("Could not deliver reply to %s", key)

    def _log_in_background(self, key: str, text: str, reply: str, ctx: ToolContext) -> None:
        task = asyncio.get_running_loop().create_task(
            self._log.log_exchange(
                key,
                [("user", text), ("assistant", reply)],
                document_number=ctx.document_number,
                user_name=ctx.user_name or None,
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
