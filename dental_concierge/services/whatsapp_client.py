"""WhatsApp Cloud API transport: outbound sends, webhook parsing and
signature verification.

Graph API docs: https://developers.facebook.com/docs/whatsapp/cloud-api
Outbound calls go to ``/<version>/<phone number id>/messages`` (and
``/media`` for uploads) with a Bearer token.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from typing import Any, Protocol

import httpx

from dental_concierge.config import (
    GRAPH_API_VERSION,
    WHATSAPP_PHONE_NUMBER_ID,
    WHATSAPP_TOKEN,
)
from dental_concierge.models import InboundMessage, MediaAttachment
from dental_concierge.services.metrics import metrics

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 30.0

MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")
# Recipient not in the allowed list (test numbers)
ERROR_RECIPIENT_NOT_ALLOWED = 131026


class Transport(Protocol):
    """What the conversation engine needs from a messaging channel."""

    async def send_text(self, to: str, body: str) -> None: ...


class WhatsAppAPIError(Exception):
    """Raised when a Graph API call fails after all retries."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: int | None = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class WhatsAppClient:
    def __init__(
        self,
        token: str | None = None,
        phone_number_id: str | None = None,
        *,
        api_version: str = GRAPH_API_VERSION,
    ):
        self._phone_number_id = phone_number_id or WHATSAPP_PHONE_NUMBER_ID
        self._client = httpx.AsyncClient(
            base_url=f"https://graph.facebook.com/{api_version}",
            headers={"Authorization": f"Bearer {token or WHATSAPP_TOKEN}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _post(
        self,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """POST with exponential-backoff retries on timeouts and 5xx."""
        url = f"/{self._phone_number_id}{path}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                with metrics.track("whatsapp", f"POST {path}"):
                    response = await self._client.post(
                        url, json=json_body, data=data, files=files,
                    )
                    if response.status_code >= 400:
                        error = _graph_error(response)
                        raise WhatsAppAPIError(
                            f"Graph API error {response.status_code}: {error.get('message', response.text)}",
                            status_code=response.status_code,
                            error_code=error.get("code"),
                        )
                return response.json()
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "WhatsApp API attempt %d/%d failed (%s)", attempt, MAX_RETRIES, type(exc).__name__,
                )
            except WhatsAppAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "WhatsApp API server error on attempt %d/%d", attempt, MAX_RETRIES,
                    )
                else:
                    if exc.error_code == ERROR_RECIPIENT_NOT_ALLOWED:
                        logger.error("Recipient is not in the allowed list for this number")
                    raise

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise WhatsAppAPIError(
            f"WhatsApp API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    # ── Outbound ─────────────────────────────────────────────────────

    async def send_text(self, to: str, body: str) -> None:
        await self._post(
            "/messages",
            json_body={
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"body": body},
            },
        )
        logger.info("WhatsApp: text sent to %s", to)

    async def upload_media(self, content: bytes, mime_type: str, filename: str) -> str:
        """Upload a file and return its media id."""
        data = await self._post(
            "/media",
            data={"messaging_product": "whatsapp", "type": mime_type},
            files={"file": (filename, content, mime_type)},
        )
        return data["id"]

    async def send_media(
        self,
        to: str,
        media_type: str,
        media_id: str,
        *,
        caption: str | None = None,
        filename: str | None = None,
    ) -> None:
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"Unsupported media type: {media_type}")
        media: dict[str, Any] = {"id": media_id}
        if caption and media_type in ("image", "video", "document"):
            media["caption"] = caption
        if filename and media_type == "document":
            media["filename"] = filename
        await self._post(
            "/messages",
            json_body={
                "messaging_product": "whatsapp",
                "to": to,
                "type": media_type,
                media_type: media,
            },
        )
        logger.info("WhatsApp: %s sent to %s", media_type, to)

    async def send_media_upload_then_send(
        self,
        to: str,
        content: bytes,
        mime_type: str,
        filename: str,
        *,
        caption: str | None = None,
    ) -> str:
        media_type = media_type_for(mime_type)
        media_id = await self.upload_media(content, mime_type, filename)
        await self.send_media(to, media_type, media_id, caption=caption, filename=filename)
        return media_id

    async def send_template(
        self,
        to: str,
        template_name: str,
        language_code: str = "es",
        parameters: list[str] | None = None,
    ) -> None:
        template: dict[str, Any] = {"name": template_name, "language": {"code": language_code}}
        if parameters:
            template["components"] = [{
                "type": "body",
                "parameters": [{"type": "text", "text": value} for value in parameters],
            }]
        await self._post(
            "/messages",
            json_body={
                "messaging_product": "whatsapp",
                "to": to,
                "type": "template",
                "template": template,
            },
        )
        logger.info("WhatsApp: template %s sent to %s", template_name, to)


def _graph_error(response: httpx.Response) -> dict[str, Any]:
    try:
        return response.json().get("error") or {}
    except ValueError:
        return {}


def media_type_for(mime_type: str) -> str:
    """Map a MIME type to the WhatsApp message type."""
    major = mime_type.split("/")[0]
    if major in ("image", "video", "audio"):
        return major
    return "document"


# ── Inbound ──────────────────────────────────────────────────────────


def parse_webhook_payload(body: dict[str, Any]) -> InboundMessage | None:
    """Extract the first user message from a webhook body.

    Returns ``None`` for status callbacks and anything without a message.
    """
    try:
        value = body["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        return None

    messages = value.get("messages") or []
    if not messages:
        return None
    message = messages[0]
    contacts = value.get("contacts") or [{}]
    contact_name = (contacts[0].get("profile") or {}).get("name")

    msg_type = message.get("type", "")
    parsed: dict[str, Any] = {
        "sender": message.get("from", ""),
        "type": msg_type,
        "message_id": message.get("id"),
        "contact_name": contact_name,
    }
    if msg_type == "text":
        parsed["text"] = (message.get("text") or {}).get("body", "")
    elif msg_type in MEDIA_TYPES:
        media = message.get(msg_type) or {}
        parsed["media"] = MediaAttachment(
            type=msg_type,
            media_id=media.get("id", ""),
            mime_type=media.get("mime_type"),
            caption=media.get("caption"),
            filename=media.get("filename"),
        )
    elif msg_type == "button":
        button = message.get("button") or {}
        parsed["button_payload"] = button.get("payload")
        parsed["text"] = button.get("text")
    elif msg_type == "interactive":
        reply = (message.get("interactive") or {}).get("button_reply") or {}
        parsed["button_payload"] = reply.get("id")
        parsed["text"] = reply.get("title")
    return InboundMessage(**parsed)


def verify_signature(raw_body: bytes, signature_header: str | None, app_secret: str) -> bool:
    """Check ``X-Hub-Signature-256`` (``sha256=<hex hmac of the raw body>``)."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header.removeprefix("sha256="))
