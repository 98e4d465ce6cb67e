"""Shared test fixtures for the Dental Concierge test suite."""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("DENTALINK_API_KEY", "test-dentalink-key-456")
    os.environ.setdefault("WHATSAPP_TOKEN", "test-whatsapp-token-789")
    os.environ.setdefault("WHATSAPP_PHONE_NUMBER_ID", "100200300")
    os.environ.setdefault("OPERATOR_PHONE_NUMBER", "")
    os.environ.setdefault("DYNAMODB_TABLE", "")
    os.environ.setdefault("CLINIC_INFO_URL", "")


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport:
    """Transport double that records every outbound text."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_text(self, to: str, body: str) -> None:
        self.sent.append((to, body))

    def to(self, recipient: str) -> list[str]:
        return [body for to, body in self.sent if to == recipient]


class ScriptedCaller:
    """Tool caller double returning pre-baked decisions in order."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []

    async def complete(self, system_prompt, transcript, tools):
        self.calls.append({
            "system_prompt": system_prompt,
            "transcript": list(transcript),
            "tools": tools,
        })
        if not self.outcomes:
            raise AssertionError("ScriptedCaller ran out of outcomes")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def scheduling():
    """A DentalinkClient double with every coroutine mocked."""
    mock = MagicMock()
    mock.find_patient_by_document = AsyncMock(return_value=None)
    mock.create_patient = AsyncMock(return_value={"id": 501})
    mock.get_available_slots = AsyncMock(return_value=[])
    mock.create_appointment = AsyncMock(return_value={"id": 9001})
    mock.update_appointment = AsyncMock(return_value={"id": 9002})
    mock.get_patient_appointments = AsyncMock(return_value=[])
    mock.cancel_appointment = AsyncMock(return_value={})
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
