"""Clinic information document (prices, address, opening hours, services).

The clinic keeps this text in a shared document that staff edit directly;
we fetch its plain-text export (e.g. a Google Docs ``/export?format=txt``
URL) and cache it for 30 minutes.

Strategy: the document is only added to the system prompt when the recent
conversation asks for something it answers (``requires_clinic_info``), so
booking turns stay short and cheap.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

import httpx

from dental_concierge.config import CLINIC_INFO_URL
from dental_concierge.services.metrics import metrics
from dental_concierge.services.slot_matcher import strip_accents

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 30 * 60
FETCH_TIMEOUT_SECONDS = 10.0

_KEYWORDS = (
    "precio", "costo", "cuanto", "valor", "tarifa",
    "direccion", "ubicacion", "donde", "queda",
    "horario", "abren", "cierran",
    "servicio", "blanqueamiento", "carilla", "ortodoncia", "diseno", "limpieza",
    "telefono", "contacto", "llamar", "informacion",
)


def requires_clinic_info(text: str, recent_texts: Sequence[str] = ()) -> bool:
    """Return ``True`` when the latest or the last two messages ask about
    prices, location, hours or services."""
    haystack = " ".join([text, *list(recent_texts)[-2:]])
    haystack = strip_accents(haystack.lower())
    return any(keyword in haystack for keyword in _KEYWORDS)


class ClinicInfoProvider:
    def __init__(
        self,
        url: str = CLINIC_INFO_URL,
        *,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._ttl = ttl_seconds
        self._clock = clock
        self._client = http_client or httpx.AsyncClient(
            timeout=FETCH_TIMEOUT_SECONDS, follow_redirects=True,
        )
        self._content: str | None = None
        self._fetched_at = 0.0

    async def get_content(self) -> str | None:
        """Return the document text, or ``None`` if unavailable.

        A failed refresh keeps serving the last good copy.
        """
        if not self._url:
            return None
        now = self._clock()
        if self._content is not None and now - self._fetched_at < self._ttl:
            return self._content

        try:
            with metrics.track("clinic_info", "GET document"):
                response = await self._client.get(self._url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch clinic info (%s); using cached copy", exc)
            return self._content

        content = response.text.strip()
        if content:
            self._content, self._fetched_at = content, now
            logger.info("Clinic info refreshed (%d chars)", len(content))
        return self._content

    def invalidate(self) -> None:
        self._content = None
        self._fetched_at = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()
