"""Transcript compaction and storage projection.

The transcript is a list of LangChain messages:

* ``HumanMessage``          — user text
* ``AIMessage``             — assistant text, or a single tool request
                              (``tool_calls`` with exactly one entry)
* ``ToolMessage``           — the result for the preceding request

Before every LLM call the transcript goes through ``compact``:

1. ``remove_orphans``  — drop tool requests without their result and
   results without their request (an interrupted turn leaves these).
2. ``inject_context``  — prepend a known-patient context pair once.
3. ``truncate``        — keep the context pair plus the most recent turns.

``compact`` is idempotent.  What is written to durable storage is a
different projection (``to_storage``) that drops the context pair and
shrinks bulky tool results.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Any

from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    HumanMessage,
    ToolMessage,
    messages_from_dict,
    messages_to_dict,
)

from dental_concierge.config import MAX_HISTORY_TURNS

logger = logging.getLogger(__name__)

CONTEXT_MARKER = "[CONTEXTO INTERNO]"
CONTEXT_ACK = "Entendido, ya conozco a este paciente y no le pediré de nuevo su documento."
STORED_TURNS = 30
SUMMARY_THRESHOLD = 200
NEXT_APPOINTMENT_MARKER = "Próxima cita"

_JSON_LIST_RE = re.compile(r"\[.*\]", re.DOTALL)


# ── Turn predicates ──────────────────────────────────────────────────


def tool_call_id(message: AnyMessage) -> str | None:
    """Return the call id of a tool request, or ``None`` for other turns."""
    if isinstance(message, AIMessage) and message.tool_calls:
        return message.tool_calls[0]["id"]
    return None


def is_context_turn(message: AnyMessage) -> bool:
    if isinstance(message, HumanMessage):
        return isinstance(message.content, str) and message.content.startswith(CONTEXT_MARKER)
    if isinstance(message, AIMessage):
        return message.content == CONTEXT_ACK and not message.tool_calls
    return False


def _has_context_pair(turns: Sequence[AnyMessage]) -> bool:
    return (
        len(turns) >= 2
        and isinstance(turns[0], HumanMessage)
        and is_context_turn(turns[0])
        and is_context_turn(turns[1])
    )


def _is_user_text(message: AnyMessage) -> bool:
    return isinstance(message, HumanMessage) and not is_context_turn(message)


def text_of(message: AnyMessage) -> str:
    """Plain text of a message whose content may be a list of blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = [
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in content
    ]
    return "".join(parts)


# ── Compaction steps ─────────────────────────────────────────────────


def remove_orphans(turns: Sequence[AnyMessage]) -> list[AnyMessage]:
    """Drop unmatched tool requests and tool results."""
    cleaned: list[AnyMessage] = []
    for i, turn in enumerate(turns):
        call_id = tool_call_id(turn)
        if call_id is not None:
            nxt = turns[i + 1] if i + 1 < len(turns) else None
            if not (isinstance(nxt, ToolMessage) and nxt.tool_call_id == call_id):
                logger.warning("Dropping orphaned tool request %s at position %d", call_id, i)
                continue
        if isinstance(turn, ToolMessage):
            prev = cleaned[-1] if cleaned else None
            if prev is None or tool_call_id(prev) != turn.tool_call_id:
                logger.warning(
                    "Dropping orphaned tool result %s at position %d", turn.tool_call_id, i,
                )
                continue
        cleaned.append(turn)
    return cleaned


def context_pair(user_name: str, document_number: str) -> list[AnyMessage]:
    return [
        HumanMessage(
            content=(
                f"{CONTEXT_MARKER} Paciente conocido: {user_name}, "
                f"documento {document_number}."
            )
        ),
        AIMessage(content=CONTEXT_ACK),
    ]


def inject_context(
    turns: Sequence[AnyMessage],
    user_name: str | None,
    document_number: str | None,
) -> list[AnyMessage]:
    """Prepend the known-patient pair unless it is already present."""
    if not (user_name and document_number):
        return list(turns)
    if any(is_context_turn(t) for t in turns if isinstance(t, HumanMessage)):
        return list(turns)
    return context_pair(user_name, document_number) + list(turns)


def truncate(turns: Sequence[AnyMessage], cap: int = MAX_HISTORY_TURNS) -> list[AnyMessage]:
    """Keep the leading context pair plus the newest turns, within *cap*.

    The kept window always starts at a user text turn so a tool pair is
    never split by the cut.  When a single turn ran more tool calls than
    fit, that turn's user message is kept and followed by its newest
    complete tool pairs.
    """
    if len(turns) <= cap:
        return list(turns)

    head = list(turns[:2]) if _has_context_pair(turns) else []
    body = list(turns[len(head):])
    room = cap - len(head)
    window = body[-room:] if room > 0 else []
    start = next((i for i, turn in enumerate(window) if _is_user_text(turn)), None)
    if start is not None:
        return head + window[start:]

    anchor = next((turn for turn in reversed(body) if _is_user_text(turn)), None)
    if anchor is None:
        while window and isinstance(window[0], ToolMessage):
            window.pop(0)
        return head + window

    window = body[-(room - 1):] if room > 1 else []
    while window and isinstance(window[0], ToolMessage):
        window.pop(0)
    logger.debug("Turn exceeds the history cap; keeping its user message and %d turns", len(window))
    return head + [anchor] + window


def compact(
    turns: Sequence[AnyMessage],
    *,
    user_name: str | None = None,
    document_number: str | None = None,
    cap: int = MAX_HISTORY_TURNS,
) -> list[AnyMessage]:
    """LLM-facing projection of the transcript.  Idempotent."""
    result = remove_orphans(turns)
    result = inject_context(result, user_name, document_number)
    return truncate(result, cap)


# ── Storage projection ───────────────────────────────────────────────


def summarize_tool_result(tool_name: str | None, content: str) -> str:
    """Shrink a tool result for durable storage."""
    if len(content) < SUMMARY_THRESHOLD:
        return content

    if tool_name == "get_available_time_slots":
        match = _JSON_LIST_RE.search(content)
        if match:
            try:
                slots = json.loads(match.group(0))
                return f"Se ofrecieron {len(slots)} horarios disponibles."
            except ValueError:
                pass
        return "Se consultó la disponibilidad."
    if tool_name == "get_appointments":
        if NEXT_APPOINTMENT_MARKER in content:
            return content
        return "Se consultaron las citas del paciente."
    if tool_name in ("create_appointment", "update_appointment", "create_patient",
                     "find_patient_by_document"):
        return content
    return content[:SUMMARY_THRESHOLD] + "..."


def to_storage(turns: Sequence[AnyMessage], keep: int = STORED_TURNS) -> list[AnyMessage]:
    """Storage-facing projection: no context turns, summarised tool results.

    Always returns new message objects.
    """
    projected: list[AnyMessage] = []
    for turn in turns:
        if is_context_turn(turn):
            continue
        if isinstance(turn, ToolMessage):
            summary = summarize_tool_result(turn.name, text_of(turn))
            projected.append(turn.model_copy(update={"content": summary}))
        else:
            projected.append(turn.model_copy())

    projected = projected[-keep:]
    while projected and isinstance(projected[0], ToolMessage):
        projected.pop(0)
    return projected


# ── Serialization ────────────────────────────────────────────────────


def serialize(turns: Sequence[AnyMessage]) -> list[dict[str, Any]]:
    return messages_to_dict(list(turns))


def deserialize(data: Sequence[dict[str, Any]]) -> list[AnyMessage]:
    return messages_from_dict(list(data))


def last_user_text(turns: Sequence[AnyMessage]) -> str:
    for turn in reversed(turns):
        if isinstance(turn, HumanMessage) and not is_context_turn(turn):
            return text_of(turn)
    return ""
