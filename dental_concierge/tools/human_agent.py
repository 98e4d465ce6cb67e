"""Escalation to the human operator.

``escalate_to_operator`` is shared by every path that hands a conversation
to a person: the ``request_human_agent`` tool, far-future booking
requests, the orchestrator's stuck-loop exit, inbound media and accepted
outreach templates.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from dental_concierge.config import DASHBOARD_URL
from dental_concierge.models import Handoff
from dental_concierge.services.handoff import HandoffService
from dental_concierge.services.metrics import metrics
from dental_concierge.services.operator_config import OperatorDirectory
from dental_concierge.services.session_store import SessionStore
from dental_concierge.services.whatsapp_client import Transport
from dental_concierge.tools.context import ToolContext
from dental_concierge.tools.results import failure

logger = logging.getLogger(__name__)


class RequestHumanAgentArgs(BaseModel):
    reason: str = Field(
        ..., min_length=1, description="Short reason the patient needs a person.",
    )


def operator_notification(handoff: Handoff) -> str:
    who = handoff.client_name or "Paciente"
    lines = [
        "🔔 Un paciente necesita atención humana",
        f"Cliente: {who} (+{handoff.client_id})",
    ]
    if handoff.reason:
        lines.append(f"Motivo: {handoff.reason}")
    lines.append(
        "Responde aquí y tu mensaje se reenviará al paciente. "
        "Escribe /cerrar para devolver la conversación al bot."
    )
    if DASHBOARD_URL:
        lines.append(f"Panel: {DASHBOARD_URL}")
    return "\n".join(lines)


async def escalate_to_operator(
    *,
    client_id: str,
    client_name: str,
    reason: str,
    handoffs: HandoffService,
    operators: OperatorDirectory,
    transport: Transport,
    sessions: SessionStore,
    trigger: str = "request",
) -> Handoff | None:
    """Open (or reuse) a handoff and notify the operator.

    *trigger* names what caused the escalation in the handoff metrics.
    Returns ``None`` when no operator is configured.
    """
    operator = await operators.get_operator_identity()
    if operator is None:
        logger.error("No operator configured; cannot hand off %s", client_id)
        return None

    handoff, created = await handoffs.create_handoff(client_id, operator, client_name, reason)
    if created:
        metrics.record_event("Handoff", trigger=trigger)
        try:
            await transport.send_text(operator, operator_notification(handoff))
        except Exception:
            logger.exception("Could not notify operator %s about %s", operator, client_id)

    await sessions.merge_data(
        client_id,
        {"pending_intervention": True, "intervention_reason": reason},
        step="awaiting_operator",
    )
    return handoff


async def request_human_agent(ctx: ToolContext, args: RequestHumanAgentArgs) -> str:
    handoff = await escalate_to_operator(
        client_id=ctx.key,
        client_name=ctx.user_name,
        reason=args.reason,
        handoffs=ctx.handoffs,
        operators=ctx.operators,
        transport=ctx.transport,
        sessions=ctx.sessions,
    )
    if handoff is None:
        return failure(
            "unavailable",
            "No hay un agente humano configurado. Discúlpate y ofrece seguir ayudando.",
        )
    ctx.session = await ctx.sessions.create_if_absent(ctx.key)
    return (
        "Se notificó a un agente humano, que continuará la conversación. "
        "Dile al paciente que en breve una persona le escribirá."
    )
