"""Routing of inbound WhatsApp messages.

Every parsed message goes through ``InboundRouter.handle``:

* the operator's messages drive the handoff (relay, ``/cerrar``);
* a patient under an active handoff is logged for the operator only;
* media and accepted outreach templates escalate to the operator;
* everything else is buffered by the aggregator and reaches the
  orchestrator as one coalesced turn.
"""

from __future__ import annotations

import logging
import re

from dental_concierge.agent import DialogueOrchestrator
from dental_concierge.models import InboundMessage
from dental_concierge.services.aggregator import MessageAggregator
from dental_concierge.services.conversation_log import ConversationLog
from dental_concierge.services.handoff import HandoffService
from dental_concierge.services.operator_config import OperatorDirectory, normalize_identity
from dental_concierge.services.session_store import SessionStore
from dental_concierge.services.slot_matcher import strip_accents
from dental_concierge.services.whatsapp_client import Transport
from dental_concierge.tools.human_agent import escalate_to_operator

logger = logging.getLogger(__name__)

CLOSE_COMMANDS = ("/close", "/cerrar")
_OUTREACH_ACCEPT_RE = re.compile(r"\b(acepto|confirmo|si|me interesa|quiero|yes|accept)\b")
_OUTREACH_DECLINE_RE = re.compile(r"\b(no|not|cancelar|rechazo)\b")

MEDIA_ACK = (
    "Recibimos tu archivo. Una persona del equipo lo revisará y te responderá "
    "por este medio en breve."
)
BOT_BACK = "La conversación con nuestro equipo ha terminado. Si necesitas algo más, aquí estoy para ayudarte."
OPERATOR_HELP = (
    "No tienes conversaciones activas. Cuando un paciente necesite atención "
    "te avisaré por aquí. Escribe /cerrar para terminar una conversación."
)


def accepts_outreach(payload: str | None) -> bool:
    """``True`` when a template button payload accepts the outreach."""
    if not payload:
        return False
    normalized = strip_accents(payload.lower().strip())
    if _OUTREACH_DECLINE_RE.search(normalized):
        return False
    return bool(_OUTREACH_ACCEPT_RE.search(normalized))


class InboundRouter:
    def __init__(
        self,
        *,
        sessions: SessionStore,
        aggregator: MessageAggregator,
        orchestrator: DialogueOrchestrator,
        handoffs: HandoffService,
        operators: OperatorDirectory,
        transport: Transport,
        conversation_log: ConversationLog,
    ) -> None:
        self._sessions = sessions
        self._aggregator = aggregator
        self._orchestrator = orchestrator
        self._handoffs = handoffs
        self._operators = operators
        self._transport = transport
        self._log = conversation_log

    async def handle(self, message: InboundMessage) -> None:
        sender = normalize_identity(message.sender)
        if not sender:
            logger.warning("Dropping inbound message without a sender")
            return

        if await self._operators.is_operator(sender):
            await self._handle_operator(sender, message)
            return

        if message.is_media:
            await self._handle_media(sender, message)
            return

        if message.button_payload and accepts_outreach(message.button_payload):
            logger.info("Client %s accepted an outreach template", sender)
            await self._escalate(
                sender, message.contact_name or "", "Respondió a un mensaje de la clínica", "outreach",
            )
            await self._log.log_message(sender, "user", message.text or message.button_payload)
            return

        text = (message.text or "").strip()
        if not text:
            logger.info("Ignoring empty %s message from %s", message.type, sender)
            return

        if await self._handoffs.get_active_by_client(sender) is not None:
            await self._record_for_operator(sender, text)
            return

        await self._aggregator.enqueue(sender, text, self._flush_callback(sender))

    # ── Patient side ─────────────────────────────────────────────────

    def _flush_callback(self, sender: str):
        async def _on_flush(combined: str) -> None:
            # An operator may have taken over while the fragments were buffered
            if await self._handoffs.get_active_by_client(sender) is not None:
                await self._record_for_operator(sender, combined)
                return
            await self._orchestrator.handle_turn(sender, combined)

        return _on_flush

    async def _record_for_operator(self, sender: str, text: str) -> None:
        logger.info("Handoff active for %s; message kept for the operator", sender)
        await self._log.log_message(sender, "user", text)
        await self._handoffs.touch(sender)

    async def _handle_media(self, sender: str, message: InboundMessage) -> None:
        logger.info("Client %s sent %s; escalating", sender, message.type)
        await self._log.log_media(sender, "user", message.media)
        if await self._handoffs.get_active_by_client(sender) is not None:
            await self._handoffs.touch(sender)
            return
        await self._send(sender, MEDIA_ACK)
        await self._escalate(
            sender, message.contact_name or "", f"El paciente envió un archivo ({message.type})", "media",
        )

    async def _escalate(self, sender: str, name: str, reason: str, trigger: str) -> None:
        session = await self._sessions.get(sender)
        client_name = (session.data.get("user_name") if session else None) or name
        self._aggregator.cancel(sender)
        await escalate_to_operator(
            client_id=sender,
            client_name=client_name,
            reason=reason,
            handoffs=self._handoffs,
            operators=self._operators,
            transport=self._transport,
            sessions=self._sessions,
            trigger=trigger,
        )

    # ── Operator side ────────────────────────────────────────────────

    async def _handle_operator(self, operator: str, message: InboundMessage) -> None:
        text = (message.text or "").strip()
        if text.lower() in CLOSE_COMMANDS:
            await self.close_for_operator(operator)
            return

        handoff = await self._handoffs.get_active_by_operator(operator)
        if handoff is None or not text:
            await self._send(operator, OPERATOR_HELP)
            return

        await self.relay_to_client(handoff.client_id, text)

    async def relay_to_client(self, client_id: str, text: str) -> None:
        """Send operator text verbatim to the client and log it as ``agent``."""
        await self._transport.send_text(client_id, text)
        await self._log.log_message(client_id, "agent", text)
        await self._handoffs.touch(client_id)
        logger.info("Operator message relayed to %s", client_id)

    async def close_for_operator(self, operator: str) -> int:
        closed = await self._handoffs.close_all_for_operator(operator)
        for handoff in closed:
            await self.return_to_bot(handoff.client_id)
        await self._send(operator, f"Se cerraron {len(closed)} conversaciones. El bot vuelve a responder.")
        return len(closed)

    async def return_to_bot(self, client_id: str) -> None:
        """Tell the client the bot is back and leave ``awaiting_operator``."""
        await self._sessions.merge_data(
            client_id,
            {"pending_intervention": False, "intervention_reason": None},
            step="in_conversation",
        )
        await self._send(client_id, BOT_BACK)

    async def _send(self, to: str, body: str) -> None:
        try:
            await self._transport.send_text(to, body)
        except Exception:
            logger.exception("Could not send message to %s", to)
