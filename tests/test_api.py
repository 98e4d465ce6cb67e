"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from dental_concierge.agent import FinalText
from dental_concierge.server import app
from dental_concierge.services.document_store import InMemoryDocumentStore
from dental_concierge.wiring import create_concierge
from tests.conftest import RecordingTransport, ScriptedCaller

TOKEN = "panel-secret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
CLIENT = "573001112233"
OPERATOR = "573009998877"


def _webhook_body(sender: str, text: str) -> dict:
    return {
        "entry": [{
            "changes": [{
                "value": {
                    "contacts": [{"profile": {"name": "Ana"}}],
                    "messages": [{
                        "from": sender, "id": "wamid.1", "type": "text", "text": {"body": text},
                    }],
                },
            }],
        }],
    }


@pytest.fixture
def concierge(scheduling):
    """A concierge on in-memory storage with a scripted model."""
    return create_concierge(
        transport=RecordingTransport(),
        store=InMemoryDocumentStore(),
        scheduling=scheduling,
        caller=ScriptedCaller(FinalText("¡Hola! Soy Paola, ¿en qué te ayudo?")),
    )


@pytest.fixture
def client(concierge):
    """Test client whose lifespan installs the in-memory concierge."""
    with patch("dental_concierge.server.create_concierge", return_value=concierge), \
            patch("dental_concierge.api.routes.VERIFY_TOKEN", TOKEN), \
            patch("dental_concierge.api.routes.APP_SECRET", ""):
        with TestClient(app) as test_client:
            yield test_client


def _configure_operator(client: TestClient) -> None:
    response = client.put(
        "/api/dashboard/config", json={"operator_phone_number": OPERATOR}, headers=AUTH,
    )
    assert response.status_code == 200


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "dental-concierge"
        assert data["degraded_storage"] is False

    def test_request_id_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"


class TestWebhookVerification:
    def test_valid_token_returns_challenge(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": TOKEN, "hub.challenge": "4242",
        })
        assert response.status_code == 200
        assert response.text == "4242"

    def test_wrong_token_rejected(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "4242",
        })
        assert response.status_code == 403


class TestWebhookDelivery:
    def test_message_is_answered_by_the_bot(self, client, concierge):
        response = client.post("/webhook", json=_webhook_body(CLIENT, "Hola."))

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert concierge.transport.to(CLIENT) == ["¡Hola! Soy Paola, ¿en qué te ayudo?"]

    def test_status_callbacks_acknowledged(self, client, concierge):
        body = {"entry": [{"changes": [{"value": {"statuses": [{"status": "delivered"}]}}]}]}
        response = client.post("/webhook", json=body)
        assert response.status_code == 200
        assert concierge.transport.sent == []

    def test_non_json_body_rejected(self, client):
        response = client.post("/webhook", content=b"not json")
        assert response.status_code == 400

    def test_routing_errors_do_not_fail_the_request(self, client, concierge):
        concierge.router.handle = AsyncMock(side_effect=RuntimeError("boom"))
        response = client.post("/webhook", json=_webhook_body(CLIENT, "Hola."))
        assert response.status_code == 200

    def test_signature_required_when_secret_set(self, client):
        raw = json.dumps(_webhook_body(CLIENT, "Hola.")).encode()
        good = "sha256=" + hmac.new(b"app-secret", raw, hashlib.sha256).hexdigest()
        with patch("dental_concierge.api.routes.APP_SECRET", "app-secret"):
            rejected = client.post("/webhook", content=raw, headers={"X-Hub-Signature-256": "sha256=00"})
            accepted = client.post("/webhook", content=raw, headers={"X-Hub-Signature-256": good})
        assert rejected.status_code == 401
        assert accepted.status_code == 200


class TestDashboardAuth:
    def test_missing_token(self, client):
        assert client.get("/api/dashboard/handoffs").status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/api/dashboard/handoffs", headers={"Authorization": "Bearer x"})
        assert response.status_code == 401

    def test_unconfigured_token(self, client):
        with patch("dental_concierge.api.routes.VERIFY_TOKEN", ""):
            response = client.get("/api/dashboard/handoffs", headers=AUTH)
        assert response.status_code == 503


class TestIntervention:
    def test_intervene_then_close(self, client, concierge):
        _configure_operator(client)

        response = client.post(
            "/api/dashboard/intervene", json={"client_id": CLIENT, "reason": "Seguimiento"}, headers=AUTH,
        )
        assert response.status_code == 200
        assert response.json()["handoff"]["client_id"] == CLIENT
        assert len(concierge.transport.to(CLIENT)) == 1

        listed = client.get("/api/dashboard/handoffs", headers=AUTH).json()["handoffs"]
        assert [h["client_id"] for h in listed] == [CLIENT]

        closed = client.post("/api/dashboard/close-intervention", json={"client_id": CLIENT}, headers=AUTH)
        assert closed.status_code == 200
        assert closed.json()["handoff"]["status"] == "closed"
        assert client.get("/api/dashboard/handoffs", headers=AUTH).json()["handoffs"] == []

    def test_second_intervention_conflicts(self, client):
        _configure_operator(client)
        body = {"client_id": CLIENT}
        assert client.post("/api/dashboard/intervene", json=body, headers=AUTH).status_code == 200
        assert client.post("/api/dashboard/intervene", json=body, headers=AUTH).status_code == 409

    def test_intervene_without_operator(self, client):
        response = client.post("/api/dashboard/intervene", json={"client_id": CLIENT}, headers=AUTH)
        assert response.status_code == 503

    def test_close_without_intervention(self, client):
        response = client.post(
            "/api/dashboard/close-intervention", json={"client_id": CLIENT}, headers=AUTH,
        )
        assert response.status_code == 404

    def test_client_id_needs_digits(self, client):
        response = client.post(
            "/api/dashboard/close-intervention", json={"client_id": "abcdef"}, headers=AUTH,
        )
        assert response.status_code == 422


class TestOperatorMessages:
    def test_send_message_is_relayed_and_logged(self, client, concierge):
        response = client.post(
            "/api/dashboard/send-message", json={"client_id": CLIENT, "text": "Hola Ana"}, headers=AUTH,
        )
        assert response.status_code == 200
        assert concierge.transport.to(CLIENT) == ["Hola Ana"]

        conversation = client.get(f"/api/dashboard/conversations/{CLIENT}", headers=AUTH).json()
        assert conversation["messages"][-1]["role"] == "agent"

    def test_send_message_delivery_failure(self, client, concierge):
        concierge.transport.send_text = AsyncMock(side_effect=RuntimeError("down"))
        response = client.post(
            "/api/dashboard/send-message", json={"client_id": CLIENT, "text": "Hola"}, headers=AUTH,
        )
        assert response.status_code == 502

    def test_send_media_unsupported_transport(self, client):
        response = client.post("/api/dashboard/send-media", json={
            "client_id": CLIENT,
            "filename": "orden.pdf",
            "mime_type": "application/pdf",
            "content_base64": base64.b64encode(b"%PDF").decode(),
        }, headers=AUTH)
        assert response.status_code == 501

    def test_send_media_uploads(self, client, concierge):
        concierge.transport.send_media_upload_then_send = AsyncMock(return_value="media-9")
        response = client.post("/api/dashboard/send-media", json={
            "client_id": CLIENT,
            "filename": "orden.pdf",
            "mime_type": "application/pdf",
            "content_base64": base64.b64encode(b"%PDF").decode(),
            "caption": "Tu orden",
        }, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["detail"] == "media-9"
        args = concierge.transport.send_media_upload_then_send.await_args
        assert args.args == (CLIENT, b"%PDF", "application/pdf", "orden.pdf")

    def test_send_media_rejects_bad_base64(self, client, concierge):
        concierge.transport.send_media_upload_then_send = AsyncMock()
        response = client.post("/api/dashboard/send-media", json={
            "client_id": CLIENT,
            "filename": "x.pdf",
            "mime_type": "application/pdf",
            "content_base64": "%%%",
        }, headers=AUTH)
        assert response.status_code == 422

    def test_unknown_conversation(self, client):
        response = client.get("/api/dashboard/conversations/573000000000", headers=AUTH)
        assert response.status_code == 404
