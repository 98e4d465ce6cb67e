"""FastAPI route definitions: WhatsApp webhook and operator dashboard API."""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from dental_concierge.api.schemas import (
    ClientRequest,
    ConversationResponse,
    HandoffListResponse,
    HandoffResponse,
    HealthResponse,
    InterveneRequest,
    OperatorConfigRequest,
    SendMediaRequest,
    SendMessageRequest,
    StartConversationRequest,
    StatusResponse,
)
from dental_concierge.config import APP_SECRET, VERIFY_TOKEN
from dental_concierge.models import InboundMessage
from dental_concierge.services.metrics import metrics
from dental_concierge.services.operator_config import normalize_identity
from dental_concierge.services.whatsapp_client import parse_webhook_payload, verify_signature
from dental_concierge.wiring import Concierge

logger = logging.getLogger(__name__)

router = APIRouter()
webhook_router = APIRouter()

INTERVENTION_NOTICE = "Hola, te escribe una persona del equipo de la clínica. ¿En qué te puedo ayudar?"


def _get_concierge(request: Request) -> Concierge:
    """Retrieve the concierge from app state.

    It is built once during the FastAPI lifespan (see ``server.py``).
    """
    concierge = getattr(request.app.state, "concierge", None)
    if concierge is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return concierge


def require_operator_token(authorization: str | None = Header(None)) -> None:
    """Dashboard calls carry ``Authorization: Bearer <VERIFY_TOKEN>``."""
    if not VERIFY_TOKEN:
        raise HTTPException(status_code=503, detail="Dashboard access is not configured.")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token, VERIFY_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid or missing token.")


def _client_key(raw: str) -> str:
    key = normalize_identity(raw)
    if not key:
        raise HTTPException(status_code=422, detail="client_id must contain digits.")
    return key


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    concierge = getattr(request.app.state, "concierge", None)
    degraded = bool(concierge and concierge.sessions.degraded)
    return HealthResponse(degraded_storage=degraded)


# ── WhatsApp webhook ─────────────────────────────────────────────────


@webhook_router.get("/webhook")
async def verify_webhook(
    mode: str | None = Query(None, alias="hub.mode"),
    token: str | None = Query(None, alias="hub.verify_token"),
    challenge: str | None = Query(None, alias="hub.challenge"),
):
    """Meta's subscription handshake."""
    if mode == "subscribe" and VERIFY_TOKEN and token == VERIFY_TOKEN:
        logger.info("Webhook verified")
        return PlainTextResponse(challenge or "")
    logger.warning("Webhook verification failed (mode=%s)", mode)
    raise HTTPException(status_code=403, detail="Verification failed.")


async def _route_safely(concierge: Concierge, message: InboundMessage) -> None:
    try:
        await concierge.router.handle(message)
    except Exception:
        logger.exception("Failed to handle inbound message %s", message.message_id)


@webhook_router.post("/webhook")
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    """Acknowledge immediately; routing happens after the response."""
    concierge = _get_concierge(request)
    raw = await request.body()
    if APP_SECRET and not verify_signature(
        raw, request.headers.get("X-Hub-Signature-256"), APP_SECRET,
    ):
        logger.warning("Rejected webhook with an invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature.")

    try:
        body = json.loads(raw or b"{}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Body must be JSON.") from e

    message = parse_webhook_payload(body)
    if message is not None:
        background_tasks.add_task(_route_safely, concierge, message)
    return {"status": "ok"}


# ── Operator dashboard ───────────────────────────────────────────────

dashboard = APIRouter(prefix="/dashboard", dependencies=[Depends(require_operator_token)])


@dashboard.post("/intervene", response_model=HandoffResponse)
async def intervene(body: InterveneRequest, request: Request):
    """Operator takes over a conversation."""
    concierge = _get_concierge(request)
    client_id = _client_key(body.client_id)
    operator = await concierge.operators.get_operator_identity()
    if operator is None:
        raise HTTPException(status_code=503, detail="No operator is configured.")

    session = await concierge.sessions.get(client_id)
    client_name = (session.data.get("user_name") if session else "") or ""
    handoff, created = await concierge.handoffs.create_handoff(
        client_id, operator, client_name, body.reason or "Intervención desde el panel",
    )
    if not created:
        raise HTTPException(status_code=409, detail="An intervention is already active.")
    metrics.record_event("Handoff", trigger="dashboard")

    concierge.aggregator.cancel(client_id)
    await concierge.sessions.merge_data(
        client_id,
        {"pending_intervention": True, "intervention_reason": handoff.reason},
        step="awaiting_operator",
    )
    try:
        await concierge.transport.send_text(client_id, INTERVENTION_NOTICE)
    except Exception:
        logger.exception("Could not notify %s about the intervention", client_id)
    return HandoffResponse(handoff=handoff)


@dashboard.post("/close-intervention", response_model=HandoffResponse)
async def close_intervention(body: ClientRequest, request: Request):
    concierge = _get_concierge(request)
    client_id = _client_key(body.client_id)
    handoff = await concierge.handoffs.close(client_id)
    if handoff is None:
        raise HTTPException(status_code=404, detail="No active intervention for this client.")
    await concierge.router.return_to_bot(client_id)
    return HandoffResponse(handoff=handoff)


@dashboard.post("/send-message", response_model=StatusResponse)
async def send_message(body: SendMessageRequest, request: Request):
    concierge = _get_concierge(request)
    client_id = _client_key(body.client_id)
    try:
        await concierge.router.relay_to_client(client_id, body.text)
    except Exception as e:
        logger.exception("Dashboard message to %s failed", client_id)
        raise HTTPException(status_code=502, detail="The message could not be delivered.") from e
    return StatusResponse(detail="sent")


@dashboard.post("/send-media", response_model=StatusResponse)
async def send_media(body: SendMediaRequest, request: Request):
    concierge = _get_concierge(request)
    client_id = _client_key(body.client_id)
    sender = getattr(concierge.transport, "send_media_upload_then_send", None)
    if sender is None:
        raise HTTPException(status_code=501, detail="The transport cannot send media.")
    try:
        content = base64.b64decode(body.content_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=422, detail="content_base64 is not valid base64.") from e

    try:
        media_id = await sender(
            client_id, content, body.mime_type, body.filename, caption=body.caption,
        )
    except Exception as e:
        logger.exception("Dashboard media to %s failed", client_id)
        raise HTTPException(status_code=502, detail="The file could not be delivered.") from e

    await concierge.conversation_log.log_message(
        client_id, "agent", body.caption or f"[{body.filename}]",
    )
    await concierge.handoffs.touch(client_id)
    return StatusResponse(detail=media_id)


@dashboard.post("/start-conversation", response_model=StatusResponse)
async def start_conversation(body: StartConversationRequest, request: Request):
    """Send an approved template to open a conversation outside the 24h window."""
    concierge = _get_concierge(request)
    client_id = _client_key(body.client_id)
    sender = getattr(concierge.transport, "send_template", None)
    if sender is None:
        raise HTTPException(status_code=501, detail="The transport cannot send templates.")
    try:
        await sender(client_id, body.template_name, body.language_code, body.parameters)
    except Exception as e:
        logger.exception("Template %s to %s failed", body.template_name, client_id)
        raise HTTPException(status_code=502, detail="The template could not be sent.") from e

    await concierge.conversation_log.log_message(
        client_id, "agent", f"[plantilla {body.template_name}]",
    )
    return StatusResponse(detail="sent")


@dashboard.get("/handoffs", response_model=HandoffListResponse)
async def list_handoffs(request: Request):
    concierge = _get_concierge(request)
    return HandoffListResponse(handoffs=await concierge.handoffs.list_active())


@dashboard.get("/conversations/{client_id}", response_model=ConversationResponse)
async def get_conversation(
    client_id: str,
    request: Request,
    limit: int = Query(100, ge=1, le=500),
):
    concierge = _get_concierge(request)
    key = _client_key(client_id)
    profile = await concierge.conversation_log.get_profile(key)
    if profile is None:
        raise HTTPException(status_code=404, detail="Unknown conversation.")
    active = await concierge.handoffs.get_active_by_client(key)
    return ConversationResponse(
        client_id=key,
        user_name=profile.user_name,
        document_number=profile.document_number,
        intervention_active=active is not None,
        messages=profile.messages[-limit:],
    )


@dashboard.put("/config", response_model=StatusResponse)
async def update_config(body: OperatorConfigRequest, request: Request):
    """Change the operator phone number without a redeploy."""
    concierge = _get_concierge(request)
    await concierge.operators.update(operator_phone_number=body.operator_phone_number)
    return StatusResponse(detail="updated")


router.include_router(dashboard)
