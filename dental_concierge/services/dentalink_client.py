"""Async HTTP client for the Dentalink API with retry logic, timeout
handling, and an in-memory LRU cache.

Dentalink API docs: https://api.dentalink.healthatom.com/docs/
All requests carry ``Authorization: Token <api key>``.  Filters are passed
as a JSON-encoded ``q`` query parameter, e.g. ``{"rut": {"eq": "123"}}``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import date, datetime, timedelta
from typing import Any

import httpx

from dental_concierge.config import (
    DENTALINK_API_KEY,
    DENTALINK_BASE_URL,
    DENTALINK_CHAIR_ID,
    DENTALINK_CLINIC_ID,
    DENTALINK_DENTIST_ID,
)
from dental_concierge.services.cache import LRUCache
from dental_concierge.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

# ── Cache configuration ─────────────────────────────────────────────
PATIENT_TTL_SECONDS = 5 * 60
SLOTS_TTL_SECONDS = 2 * 60
_CK_PATIENT = "patient:"
_CK_SLOTS = "slots:"

# ── Scheduling rules ────────────────────────────────────────────────
APPOINTMENT_MINUTES = 60
SLOT_INTERVAL_MINUTES = 30
BOOKING_HORIZON_DAYS = 14
# weekday() → (open, close) in minutes since midnight; Sunday closed
BUSINESS_HOURS: dict[int, tuple[int, int]] = {
    **{day: (7 * 60, 20 * 60) for day in range(5)},
    5: (8 * 60, 12 * 60),
}

CANCELLED_STATE_ID = 1

# Dentalink appointment state id → category
APPOINTMENT_STATE_CATEGORIES: dict[int, str] = {
    1: "cancelled", 9: "cancelled", 10: "cancelled", 14: "cancelled",
    16: "cancelled", 18: "cancelled", 19: "cancelled",
    20: "confirmed", 17: "confirmed", 11: "confirmed", 3: "confirmed",
    15: "pending", 12: "pending", 13: "pending", 7: "pending",
    6: "in_progress", 5: "in_progress",
    2: "completed",
    8: "no_show",
}


def appointment_category(state_id: int | None) -> str:
    return APPOINTMENT_STATE_CATEGORIES.get(state_id or 0, "unknown")


def is_active_state(state_id: int | None) -> bool:
    return appointment_category(state_id) != "cancelled"


class DentalinkAPIError(Exception):
    """Raised when a Dentalink API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# ── Date validation ──────────────────────────────────────────────────


class DateCheck:
    OK = "ok"
    PAST = "past"
    TOO_FAR = "too_far"


def check_requested_date(requested: date, today: date) -> str:
    """Classify a requested booking date against the booking horizon."""
    if requested < today:
        return DateCheck.PAST
    if requested >= today + timedelta(days=BOOKING_HORIZON_DAYS):
        return DateCheck.TOO_FAR
    return DateCheck.OK


# ── Availability computation (pure) ──────────────────────────────────


def _minutes(hhmm: str) -> int:
    hour, minute = hhmm.split(":")[:2]
    return int(hour) * 60 + int(minute)


def _hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def booked_slot_keys(appointments: list[dict[str, Any]]) -> set[str]:
    """``"YYYY-MM-DD HH:MM"`` keys blocked by existing appointments.

    A one-hour appointment at 10:00 also blocks the 09:30 half-slot, since a
    block starting there would overlap it.
    """
    keys: set[str] = set()
    for appt in appointments:
        if not is_active_state(appt.get("id_estado")):
            continue
        start = _minutes(appt["hora_inicio"])
        keys.add(f"{appt['fecha']} {_hhmm(start)}")
        if start >= SLOT_INTERVAL_MINUTES:
            keys.add(f"{appt['fecha']} {_hhmm(start - SLOT_INTERVAL_MINUTES)}")
    return keys


def build_one_hour_blocks(
    agenda: dict[str, Any],
    booked: set[str],
    now: datetime,
    chair_id: str = DENTALINK_CHAIR_ID,
) -> list[dict[str, str]]:
    """Turn Dentalink's half-hour agenda into bookable one-hour blocks.

    *agenda* is the ``fechas`` object: ``{date: {"horas": {time:
    {"sillones": {chair_id: bool}}}}}``.  Half-slots are kept only for
    *chair_id*, inside business hours, in the future and not booked; two
    consecutive free half-slots form one block.
    """
    today = now.date().isoformat()
    now_hhmm = now.strftime("%H:%M")

    free: list[tuple[str, int]] = []
    for day, schedule in agenda.items():
        hours = BUSINESS_HOURS.get(date.fromisoformat(day).weekday())
        if hours is None:
            continue
        opens, closes = hours
        for time_str, slot in (schedule.get("horas") or {}).items():
            if (slot.get("sillones") or {}).get(chair_id) is not True:
                continue
            start = _minutes(time_str)
            if start < opens or start >= closes:
                continue
            if day == today and _hhmm(start) < now_hhmm:
                continue
            if f"{day} {_hhmm(start)}" in booked:
                continue
            free.append((day, start))

    free.sort()
    blocks: list[dict[str, str]] = []
    used: set[tuple[str, int]] = set()
    available = set(free)
    for day, start in free:
        if (day, start) in used:
            continue
        nxt = (day, start + SLOT_INTERVAL_MINUTES)
        if nxt in available and nxt not in used:
            used.update({(day, start), nxt})
            blocks.append({
                "date": day,
                "start": _hhmm(start),
                "end": _hhmm(start + APPOINTMENT_MINUTES),
            })
    return blocks


class DentalinkClient:
    """Thin async wrapper around the Dentalink REST API with automatic
    retries and an in-memory LRU cache.

    **Cache contract**

    Patient lookups are cached for five minutes and availability for two.
    Every booking write (create/update/cancel) drops all cached
    availability so the next query sees the change.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        cache: LRUCache | None = None,
        dentist_id: int = DENTALINK_DENTIST_ID,
        clinic_id: int = DENTALINK_CLINIC_ID,
    ):
        self._api_key = api_key or DENTALINK_API_KEY
        self._client = httpx.AsyncClient(
            base_url=base_url or DENTALINK_BASE_URL,
            headers={
                "Authorization": f"Token {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._cache = cache or LRUCache(default_ttl=PATIENT_TTL_SECONDS)
        self._dentist_id = dentist_id
        self._clinic_id = clinic_id

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path.split('?')[0]}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                with metrics.track("dentalink", operation):
                    response = await self._client.request(
                        method, path, params=params, json=json_body,
                    )
                    if response.status_code >= 500:
                        raise DentalinkAPIError(
                            f"Server error {response.status_code}: {response.text}",
                            status_code=response.status_code,
                        )
                    if response.status_code >= 400:
                        raise DentalinkAPIError(
                            f"Client error {response.status_code}: {response.text}",
                            status_code=response.status_code,
                        )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Dentalink API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except DentalinkAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Dentalink API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise DentalinkAPIError(
            f"Dentalink API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    @staticmethod
    def _query(filters: dict[str, Any]) -> dict[str, str]:
        return {"q": json.dumps({k: {"eq": v} for k, v in filters.items()})}

    def _invalidate_availability(self) -> None:
        count = self._cache.invalidate_prefix(_CK_SLOTS)
        if count:
            logger.debug("Cache: invalidated %d availability entries", count)

    # ── Patients ─────────────────────────────────────────────────────

    async def find_patient_by_document(self, document_number: str) -> dict[str, Any] | None:
        """Look a patient up by national id (Dentalink's ``rut`` field)."""
        cache_key = f"{_CK_PATIENT}{document_number}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached or None

        try:
            data = await self._request(
                "GET", "/pacientes", params=self._query({"rut": document_number}),
            )
        except DentalinkAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        patients = data.get("data") or []
        patient = patients[0] if patients else None
        # {} marks a cached miss
        self._cache.put(cache_key, patient or {})
        return patient

    async def create_patient(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/pacientes", json_body=payload)
        patient = data.get("data") or data
        if payload.get("rut"):
            self._cache.invalidate(f"{_CK_PATIENT}{payload['rut']}")
        logger.info("Dentalink: created patient %s", patient.get("id"))
        return patient

    # ── Availability ─────────────────────────────────────────────────

    async def _booked_keys(self, start: date, end: date) -> set[str]:
        booked: set[str] = set()
        day = start
        while day <= end:
            try:
                data = await self._request(
                    "GET",
                    "/citas",
                    params=self._query({
                        "fecha": day.isoformat(),
                        "id_dentista": self._dentist_id,
                        "id_sucursal": self._clinic_id,
                    }),
                )
                booked |= booked_slot_keys(data.get("data") or [])
            except DentalinkAPIError as exc:
                logger.warning("Could not read booked appointments for %s: %s", day, exc)
            day += timedelta(days=1)
        return booked

    async def get_available_slots(
        self,
        now: datetime,
        requested: date | None = None,
    ) -> list[dict[str, str]]:
        """One-hour blocks for *requested*, or for the next 13 days.

        Returns ``[{"date": "YYYY-MM-DD", "start": "HH:MM", "end": "HH:MM"}]``
        sorted by date and time.
        """
        start = requested or now.date()
        end = requested or now.date() + timedelta(days=BOOKING_HORIZON_DAYS - 1)
        cache_key = f"{_CK_SLOTS}{start.isoformat()}:{end.isoformat()}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        booked = await self._booked_keys(start, end)
        params = {
            "q": json.dumps({
                "fecha_inicio": {"eq": start.isoformat()},
                "fecha_fin": {"eq": end.isoformat()},
                "mostrar_detalles": {"eq": "1"},
            })
        }
        data = await self._request(
            "GET",
            f"/sucursales/{self._clinic_id}/dentistas/{self._dentist_id}/agendas",
            params=params,
        )
        agenda = (data.get("data") or {}).get("fechas") or {}
        blocks = build_one_hour_blocks(agenda, booked, now)
        logger.info("Dentalink: %d one-hour blocks between %s and %s", len(blocks), start, end)
        self._cache.put(cache_key, blocks, ttl=SLOTS_TTL_SECONDS)
        return blocks

    # ── Appointments ─────────────────────────────────────────────────

    async def create_appointment(
        self,
        patient_id: int,
        day: str,
        start: str,
        comment: str = "",
    ) -> dict[str, Any]:
        payload = {
            "id_dentista": self._dentist_id,
            "id_sucursal": self._clinic_id,
            "id_sillon": int(DENTALINK_CHAIR_ID),
            "id_paciente": int(patient_id),
            "fecha": day,
            "hora_inicio": start[:5],
            "duracion": APPOINTMENT_MINUTES,
            "comentario": comment.strip(),
            "videoconsulta": 0,
        }
        data = await self._request("POST", "/citas", json_body=payload)
        self._invalidate_availability()
        appointment = data.get("data") or data
        logger.info("Dentalink: booked %s %s for patient %s", day, start, patient_id)
        return appointment

    async def get_patient_appointments(
        self, patient_id: int, now: datetime,
    ) -> list[dict[str, Any]]:
        """Active appointments from *now* on, soonest first."""
        data = await self._request("GET", f"/pacientes/{patient_id}/citas")
        current = now.replace(tzinfo=None).isoformat(timespec="minutes")
        upcoming = []
        for appt in data.get("data") or []:
            starts = f"{appt['fecha']}T{appt['hora_inicio'][:5]}"
            if is_active_state(appt.get("id_estado")) and starts >= current:
                upcoming.append({
                    **appt,
                    "category": appointment_category(appt.get("id_estado")),
                })
        upcoming.sort(key=lambda a: (a["fecha"], a["hora_inicio"]))
        return upcoming

    async def update_appointment(
        self,
        appointment_id: int,
        day: str,
        start: str,
        comment: str | None = None,
    ) -> dict[str, Any]:
        """Move an appointment.  Dentalink issues a new appointment id."""
        payload = {
            "id_sesion": appointment_id,
            "id_dentista": self._dentist_id,
            "id_sillon": int(DENTALINK_CHAIR_ID),
            "fecha": day,
            "hora_inicio": start[:5],
            "duracion": APPOINTMENT_MINUTES,
            "buscar_especialidad": 0,
            "return_options": 0,
            "flag_notificar_cita": 1,
        }
        data = await self._request("POST", "/citas/changeDate", json_body=payload)
        self._invalidate_availability()
        appointment = data.get("data") or {}

        if comment and appointment.get("id"):
            try:
                await self._request(
                    "PUT", f"/citas/{appointment['id']}", json_body={"comentarios": comment},
                )
                appointment["comentarios"] = comment
            except DentalinkAPIError as exc:
                logger.warning("Could not copy comment to appointment %s: %s", appointment["id"], exc)
        return appointment

    async def cancel_appointment(
        self,
        appointment_id: int,
        comment: str = "Cita anulada por el paciente",
    ) -> dict[str, Any]:
        data = await self._request(
            "PUT",
            f"/citas/{appointment_id}",
            json_body={
                "id_estado": CANCELLED_STATE_ID,
                "comentarios": comment,
                "flag_notificar_anulacion": 1,
            },
        )
        self._invalidate_availability()
        logger.info("Dentalink: cancelled appointment %s", appointment_id)
        return data.get("data") or data


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: DentalinkClient | None = None
_client_lock = threading.Lock()


def get_dentalink_client() -> DentalinkClient:
    """Return a module-level DentalinkClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = DentalinkClient()
    return _client
