"""Tests for the clinic information document and the system prompt."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from dental_concierge.prompts import get_system_prompt
from dental_concierge.services.clinic_info import ClinicInfoProvider, requires_clinic_info
from tests.conftest import FakeClock

DOCUMENT = "Limpieza: $120.000\nDirección: Calle 10 # 20-30\nHorario: lunes a sábado"


def _http(*responses):
    client = MagicMock()
    client.get = AsyncMock(side_effect=list(responses))
    client.aclose = AsyncMock()
    return client


def _ok(text: str):
    response = MagicMock()
    response.text = text
    response.raise_for_status = MagicMock()
    return response


class TestRequiresClinicInfo:
    @pytest.mark.parametrize(
        "text", ["¿Cuánto cuesta una limpieza?", "dónde quedan", "¿qué horario tienen?"],
    )
    def test_information_questions(self, text):
        assert requires_clinic_info(text) is True

    def test_booking_turn_does_not_need_it(self):
        assert requires_clinic_info("el martes a las 10") is False

    def test_recent_messages_count(self):
        assert requires_clinic_info("y el martes?", ["hola", "cuál es el precio"]) is True
        assert requires_clinic_info("y el martes?", ["precio", "hola", "ok"]) is False


class TestClinicInfoProvider:
    @pytest.mark.asyncio
    async def test_document_is_cached(self):
        http = _http(_ok(DOCUMENT))
        provider = ClinicInfoProvider("https://docs.test/export", http_client=http, clock=FakeClock())

        assert await provider.get_content() == DOCUMENT
        assert await provider.get_content() == DOCUMENT
        assert http.get.await_count == 1

    @pytest.mark.asyncio
    async def test_refreshed_after_ttl(self):
        clock = FakeClock()
        http = _http(_ok("v1"), _ok("v2"))
        provider = ClinicInfoProvider("https://docs.test/export", http_client=http, clock=clock)

        assert await provider.get_content() == "v1"
        clock.advance(30 * 60 + 1)
        assert await provider.get_content() == "v2"

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_last_copy(self):
        clock = FakeClock()
        http = _http(_ok("v1"), httpx.ConnectError("down"))
        provider = ClinicInfoProvider("https://docs.test/export", http_client=http, clock=clock)

        await provider.get_content()
        clock.advance(30 * 60 + 1)
        assert await provider.get_content() == "v1"

    @pytest.mark.asyncio
    async def test_invalidate_forces_fetch(self):
        http = _http(_ok("v1"), _ok("v2"))
        provider = ClinicInfoProvider("https://docs.test/export", http_client=http, clock=FakeClock())

        await provider.get_content()
        provider.invalidate()
        assert await provider.get_content() == "v2"

    @pytest.mark.asyncio
    async def test_no_url_configured(self):
        http = _http()
        provider = ClinicInfoProvider("", http_client=http)
        assert await provider.get_content() is None
        http.get.assert_not_awaited()


class TestSystemPrompt:
    NOW = datetime(2026, 1, 19, 8, 0)

    def test_includes_clinic_local_time(self):
        prompt = get_system_prompt(now=self.NOW)
        assert "lunes, 19 de enero de 2026, 08:00" in prompt
        assert "Paola" in prompt

    def test_clinic_info_only_when_given(self):
        assert "Información de la clínica" not in get_system_prompt(now=self.NOW)
        prompt = get_system_prompt(DOCUMENT, now=self.NOW)
        assert "Información de la clínica" in prompt
        assert "Calle 10 # 20-30" in prompt
