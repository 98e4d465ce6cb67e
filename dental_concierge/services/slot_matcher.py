"""Match free-text replies against previously offered slots.

Two entry points:

* ``match_slot(text, slots)`` powers the "el lunes a las 9am" shortcut: the
  patient answers an offer and we book without another LLM round-trip.
* ``correct_date_from_slots(...)`` runs after the model has picked a
  date + time and overrides a miscalculated date with the canonical date of
  the offered slot.

The weekday of a slot is always read from its human-readable label, never
recomputed from the canonical date.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Sequence
from typing import NamedTuple

from dental_concierge.models import OfferedSlot

logger = logging.getLogger(__name__)

_MERIDIEM = r"(?P<mer>a\.?\s?m\.?|p\.?\s?m\.?)"
_CLOCK = r"(?P<h>\d{1,2})(?::(?P<m>\d{2}))?"

# Ordered from most to least specific; the first hit wins.
_TIME_PATTERNS = [
    re.compile(rf"\b(?:a las|las|a la|at)\s+{_CLOCK}\s*{_MERIDIEM}?(?![\d:])"),
    re.compile(rf"(?<![\d:]){_CLOCK}\s*{_MERIDIEM}(?!\w)"),
    re.compile(rf"(?<![\d:]){_CLOCK}\s+de la\s+(?P<part>mañana|manana|tarde|noche)\b"),
    re.compile(r"(?<![\d:])(?P<h>\d{1,2}):(?P<m>\d{2})(?![\d:])"),
    re.compile(r"(?<![\d:/.\-])(?P<h>\d{1,2})(?![\d:/.\-])(?!\s+de\b)"),
]

_PM_ANYWHERE = re.compile(r"\bp\.?\s?m\b\.?|\bde la (?:tarde|noche)\b")

_WEEKDAYS = {
    "lunes": "lunes",
    "martes": "martes",
    "miercoles": "miercoles",
    "jueves": "jueves",
    "viernes": "viernes",
    "sabado": "sabado",
    "domingo": "domingo",
    "monday": "lunes",
    "tuesday": "martes",
    "wednesday": "miercoles",
    "thursday": "jueves",
    "friday": "viernes",
    "saturday": "sabado",
    "sunday": "domingo",
}
_WEEKDAY_RE = re.compile(r"\b(" + "|".join(_WEEKDAYS) + r")\b")


class TimeAndDay(NamedTuple):
    time: str
    weekday: str | None


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_weekday(name: str | None) -> str | None:
    if not name:
        return None
    key = strip_accents(name.strip().lower())
    return _WEEKDAYS.get(key, key)


def _extract_time(text: str) -> str | None:
    for pattern in _TIME_PATTERNS:
        for match in pattern.finditer(text):
            groups = match.groupdict()
            hour = int(groups["h"])
            minute = int(groups.get("m") or 0)
            meridiem = (groups.get("mer") or "").replace(".", "").replace(" ", "")
            part = groups.get("part")

            is_pm = meridiem == "pm" or part in ("tarde", "noche")
            if not meridiem and not part:
                is_pm = bool(_PM_ANYWHERE.search(text))
            if is_pm and hour < 12:
                hour += 12
            elif meridiem == "am" and hour == 12:
                hour = 0

            if hour > 23 or minute > 59:
                continue
            return f"{hour:02d}:{minute:02d}"
    return None


def extract_time_and_day(text: str) -> TimeAndDay | None:
    """Extract ``HH:MM`` and an optional weekday from *text*.

    Returns ``None`` when no time of day can be found.
    """
    lowered = text.lower()
    time = _extract_time(lowered)
    if time is None:
        return None
    weekday_match = _WEEKDAY_RE.search(strip_accents(lowered))
    weekday = normalize_weekday(weekday_match.group(1)) if weekday_match else None
    return TimeAndDay(time, weekday)


def slot_weekday(slot: OfferedSlot) -> str | None:
    """Weekday of *slot* taken from its label (``"Martes, 20 de enero"``)."""
    return normalize_weekday(slot.label.split(",")[0])


def match_slot(text: str, offered_slots: Sequence[OfferedSlot]) -> OfferedSlot | None:
    """Return the offered slot the patient is choosing, if unambiguous."""
    if not offered_slots:
        return None
    extracted = extract_time_and_day(text)
    if extracted is None:
        return None

    candidates = [slot for slot in offered_slots if slot.time == extracted.time]
    if not candidates:
        logger.debug("No offered slot at %s", extracted.time)
        return None
    if extracted.weekday is None:
        return candidates[0]

    for slot in candidates:
        if slot_weekday(slot) == extracted.weekday:
            return slot
    logger.debug("No offered slot on %s at %s", extracted.weekday, extracted.time)
    return None


def correct_date_from_slots(
    candidate_date: str,
    time: str,
    offered_slots: Sequence[OfferedSlot],
    original_text: str = "",
) -> str:
    """Ground a model-chosen date in the offered slot list.

    * no offered slot at *time*     → *candidate_date* unchanged
    * exactly one slot at *time*    → that slot's date
    * several slots at *time*       → the one whose weekday the patient
      named, else the earliest
    """
    matching = [slot for slot in offered_slots if slot.time == time]
    if not matching:
        return candidate_date

    chosen: OfferedSlot | None = None
    if len(matching) == 1:
        chosen = matching[0]
    else:
        extracted = extract_time_and_day(original_text) if original_text else None
        if extracted and extracted.weekday:
            chosen = next(
                (slot for slot in matching if slot_weekday(slot) == extracted.weekday),
                None,
            )
        if chosen is None:
            chosen = min(matching, key=lambda slot: (slot.date, slot.time))
            logger.warning(
                "Could not tell which of %d slots at %s was meant; using %s",
                len(matching), time, chosen.date,
            )

    if chosen.date != candidate_date:
        logger.warning(
            "Corrected appointment date %s → %s (slot %s %s)",
            candidate_date, chosen.date, chosen.label, chosen.time,
        )
    return chosen.date
