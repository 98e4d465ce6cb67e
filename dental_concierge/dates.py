"""Clinic-local date helpers and Spanish date labels."""

from __future__ import annotations

import re
from datetime import date, datetime
from zoneinfo import ZoneInfo

from dental_concierge.config import CLINIC_TIMEZONE

WEEKDAYS_ES = ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"]
MONTHS_ES = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def clinic_now() -> datetime:
    """Current wall-clock time in the clinic's timezone."""
    return datetime.now(ZoneInfo(CLINIC_TIMEZONE))


def clinic_today() -> date:
    return clinic_now().date()


def format_slot_label(day: date | str) -> str:
    """``2026-01-20`` → ``"Martes, 20 de enero"``."""
    if isinstance(day, str):
        day = date.fromisoformat(day)
    weekday = WEEKDAYS_ES[day.weekday()]
    return f"{weekday.capitalize()}, {day.day} de {MONTHS_ES[day.month - 1]}"


def format_clinic_datetime(moment: datetime) -> str:
    """``"lunes, 4 de noviembre de 2025, 14:30"`` for the system prompt."""
    weekday = WEEKDAYS_ES[moment.weekday()]
    month = MONTHS_ES[moment.month - 1]
    return f"{weekday}, {moment.day} de {month} de {moment.year}, {moment:%H:%M}"


def format_time_12h(hhmm: str) -> str:
    """``"14:00"`` → ``"2:00 pm"``."""
    hour, minute = (int(part) for part in hhmm.split(":")[:2])
    suffix = "am" if hour < 12 else "pm"
    hour12 = hour % 12 or 12
    return f"{hour12}:{minute:02d} {suffix}"


def normalize_birth_date(raw: str | None) -> str | None:
    """Normalise a user-typed birth date to ``YYYY-MM-DD``.

    Accepts ``/``, ``-`` and ``.`` separators.  Day-first is assumed when
    ambiguous (``05/03/1990`` → 5 March), which is the local convention.
    Unparseable input is returned unchanged so the backend can reject it.
    """
    if not raw:
        return None
    raw = raw.strip()
    if _ISO_DATE_RE.match(raw):
        return raw

    parts = re.split(r"[/.\-]", raw)
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return raw

    if len(parts[0]) == 4:
        year, first, second = parts
        # YYYY/DD/MM only when the middle number cannot be a month
        if int(first) > 12:
            day, month = first, second
        else:
            month, day = first, second
    elif len(parts[2]) == 4:
        first, second, year = parts
        if int(first) > 12:
            day, month = first, second
        elif int(second) > 12:
            month, day = first, second
        else:
            day, month = first, second
    else:
        day, month, year = parts
        if len(year) == 2:
            century = "19" if int(year) > clinic_today().year % 100 else "20"
            year = century + year

    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
