"""Builds the concierge object graph shared by the server and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dental_concierge.agent import DialogueOrchestrator, ToolCaller
from dental_concierge.config import DYNAMODB_TABLE, SESSION_TTL_MINUTES
from dental_concierge.inbound import InboundRouter
from dental_concierge.services.aggregator import MessageAggregator
from dental_concierge.services.clinic_info import ClinicInfoProvider
from dental_concierge.services.conversation_log import ConversationLog
from dental_concierge.services.dentalink_client import DentalinkClient
from dental_concierge.services.document_store import (
    DocumentStore,
    DynamoDBDocumentStore,
    InMemoryDocumentStore,
)
from dental_concierge.services.handoff import HandoffService
from dental_concierge.services.operator_config import OperatorDirectory
from dental_concierge.services.session_store import SessionStore
from dental_concierge.services.whatsapp_client import Transport, WhatsAppClient

logger = logging.getLogger(__name__)


@dataclass
class Concierge:
    store: DocumentStore
    sessions: SessionStore
    handoffs: HandoffService
    operators: OperatorDirectory
    conversation_log: ConversationLog
    scheduling: DentalinkClient
    clinic_info: ClinicInfoProvider
    transport: Transport
    aggregator: MessageAggregator
    orchestrator: DialogueOrchestrator
    router: InboundRouter

    async def aclose(self) -> None:
        await self.aggregator.aclose()
        await self.orchestrator.drain()
        await self.scheduling.aclose()
        await self.clinic_info.aclose()
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()


def build_store() -> DocumentStore:
    """DynamoDB when ``DYNAMODB_TABLE`` is set, process memory otherwise."""
    if DYNAMODB_TABLE:
        logger.info("Using DynamoDB table %s", DYNAMODB_TABLE)
        return DynamoDBDocumentStore(
            DYNAMODB_TABLE,
            ttl_seconds={"sessions": SESSION_TTL_MINUTES * 60},
        )
    logger.info("DYNAMODB_TABLE not set; using the in-memory store")
    return InMemoryDocumentStore()


def create_concierge(
    *,
    transport: Transport | None = None,
    store: DocumentStore | None = None,
    scheduling: DentalinkClient | None = None,
    caller: ToolCaller | None = None,
) -> Concierge:
    store = store or build_store()
    transport = transport or WhatsAppClient()
    scheduling = scheduling or DentalinkClient()

    sessions = SessionStore(store)
    handoffs = HandoffService(store)
    operators = OperatorDirectory(store)
    conversation_log = ConversationLog(store)
    clinic_info = ClinicInfoProvider()
    aggregator = MessageAggregator(sessions)
    orchestrator = DialogueOrchestrator(
        sessions=sessions,
        scheduling=scheduling,
        handoffs=handoffs,
        operators=operators,
        transport=transport,
        conversation_log=conversation_log,
        clinic_info=clinic_info,
        caller=caller,
    )
    router = InboundRouter(
        sessions=sessions,
        aggregator=aggregator,
        orchestrator=orchestrator,
        handoffs=handoffs,
        operators=operators,
        transport=transport,
        conversation_log=conversation_log,
    )
    return Concierge(
        store=store,
        sessions=sessions,
        handoffs=handoffs,
        operators=operators,
        conversation_log=conversation_log,
        scheduling=scheduling,
        clinic_info=clinic_info,
        transport=transport,
        aggregator=aggregator,
        orchestrator=orchestrator,
        router=router,
    )
