"""Scheduling tools over the Dentalink API.

Each handler returns a short Spanish string the model turns into a reply.
Collaborator failures become ``ERROR [<reason>]`` results (see
``results.py``); nothing here raises to the orchestrator except truly
unexpected bugs, which the dispatcher converts as well.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from datetime import date

from pydantic import BaseModel, Field

from dental_concierge.config import DENTIST_DISPLAY_NAME
from dental_concierge.dates import format_slot_label, format_time_12h, normalize_birth_date
from dental_concierge.history import NEXT_APPOINTMENT_MARKER
from dental_concierge.models import OfferedSlot
from dental_concierge.services.dentalink_client import (
    DateCheck,
    DentalinkAPIError,
    check_requested_date,
)
from dental_concierge.services.slot_matcher import (
    correct_date_from_slots,
    extract_time_and_day,
    strip_accents,
)
from dental_concierge.tools.context import ToolContext
from dental_concierge.tools.human_agent import escalate_to_operator
from dental_concierge.tools.results import failure

logger = logging.getLogger(__name__)

_DIGITS_RE = re.compile(r"^\d+$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")

SLOT_INSTRUCTIONS = (
    "INSTRUCCIONES:\n"
    "1. Muestra cada horario con el texto EXACTO de \"etiqueta\" "
    "(\"Martes, 20 de enero\" → \"Martes 20\"); nunca calcules el día del mes.\n"
    "2. Para agendar usa la \"fecha\" (YYYY-MM-DD) del horario elegido."
)

_REASON_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Diseño de sonrisa": ("diseno de sonrisa", "blanqueamiento", "carillas", "estetica dental"),
    "Limpieza": ("limpieza", "profilaxis", "higiene dental"),
    "Ortodoncia": ("ortodoncia", "brackets", "frenillos", "alineadores", "invisalign"),
    "Emergencia": ("urgencia", "emergencia", "urgente", "dolor fuerte"),
    "Dolor": ("dolor", "me duele", "duele"),
    "Extracción": ("extraccion", "sacar muela", "quitar muela", "cordal", "muela del juicio"),
    "Caries": ("caries", "calza", "resina", "empaste"),
    "Endodoncia": ("endodoncia", "conducto", "matar nervio"),
    "Prótesis": ("protesis", "corona", "puente", "implante"),
    "Periodoncia": ("encias", "sangrado", "periodontitis", "gingivitis"),
    "Revisión": ("revision", "chequeo", "control", "valoracion", "consulta general"),
}


def extract_reason(user_texts: Sequence[str]) -> str | None:
    """Best-effort appointment reason from the patient's recent messages."""
    for text in reversed(list(user_texts)[-10:]):
        haystack = strip_accents(text.lower())
        for category, keywords in _REASON_KEYWORDS.items():
            if any(keyword in haystack for keyword in keywords):
                return category
    return None


def _parse_date(raw: str) -> date | None:
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def _patient_name(patient: dict) -> str:
    return " ".join(p for p in (patient.get("nombre"), patient.get("apellidos")) if p).strip()


async def _resolve_patient(ctx: ToolContext, document_number: str | None) -> dict | None:
    document_number = document_number or ctx.document_number
    if not document_number:
        return None
    return await ctx.scheduling.find_patient_by_document(document_number)


async def book_slot(
    ctx: ToolContext,
    day: str,
    time: str,
    document_number: str | None,
    reason: str | None = None,
) -> str:
    """Create an appointment and clear the offered slots on success."""
    try:
        patient = await _resolve_patient(ctx, document_number)
    except DentalinkAPIError as exc:
        logger.warning("Patient lookup failed: %s", exc)
        return failure("unavailable", "No se pudo consultar el paciente. Intenta de nuevo.")
    if not patient or not patient.get("id"):
        return failure(
            "not-found",
            f"No existe un paciente con el documento {document_number or ctx.document_number}. "
            "Primero debes registrarlo con create_patient.",
        )

    comment = reason or extract_reason([*ctx.recent_user_texts, ctx.user_text]) or ""
    try:
        appointment = await ctx.scheduling.create_appointment(patient["id"], day, time, comment)
    except DentalinkAPIError as exc:
        logger.warning("Booking %s %s failed: %s", day, time, exc)
        if exc.status_code and 400 <= exc.status_code < 500:
            return failure(
                "no-longer-available",
                "Ese horario ya no está disponible. Ofrece consultar otros horarios.",
            )
        return failure("unavailable", "No se pudo agendar la cita en este momento.")

    await ctx.update_session(offered_slots=[], appointment_id=appointment.get("id"))
    if not ctx.user_name:
        await ctx.update_data(user_name=_patient_name(patient))
    return (
        f"Cita agendada para el {format_slot_label(day)} a las {format_time_12h(time)} "
        f"con {DENTIST_DISPLAY_NAME}."
    )


# ── find_patient_by_document ─────────────────────────────────────────


class FindPatientArgs(BaseModel):
    document_number: str = Field(..., description="Patient's national id, digits only.")


async def find_patient_by_document(ctx: ToolContext, args: FindPatientArgs) -> str:
    document_number = args.document_number.strip().replace(".", "").replace(" ", "")
    if not _DIGITS_RE.match(document_number):
        return failure(
            "invalid",
            f"\"{args.document_number}\" no es un número de documento válido; "
            "debe tener solo dígitos. Pide al paciente que lo verifique.",
        )
    try:
        patient = await ctx.scheduling.find_patient_by_document(document_number)
    except DentalinkAPIError as exc:
        logger.warning("Patient lookup failed: %s", exc)
        return failure("unavailable", "No se pudo consultar el paciente. Intenta de nuevo.")

    if not patient:
        await ctx.update_data(document_number=document_number)
        return failure(
            "not-found",
            f"No hay paciente con documento {document_number}. "
            "Pide nombre, apellidos, fecha de nacimiento y correo para registrarlo.",
        )

    name = _patient_name(patient)
    await ctx.update_data(document_number=document_number, user_name=name)
    return f"Paciente registrado: {name}."


# ── create_patient ───────────────────────────────────────────────────


class CreatePatientArgs(BaseModel):
    document_number: str = Field(..., description="National id, digits only.")
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    birth_date: str | None = Field(None, description="Birth date as the patient wrote it.")
    email: str | None = None


async def create_patient(ctx: ToolContext, args: CreatePatientArgs) -> str:
    if not _DIGITS_RE.match(args.document_number.strip()):
        return failure("invalid", "El número de documento debe tener solo dígitos.")

    payload = {
        "rut": args.document_number.strip(),
        "nombre": args.first_name.strip(),
        "apellidos": args.last_name.strip(),
        "celular": ctx.local_phone,
    }
    birth_date = normalize_birth_date(args.birth_date)
    if birth_date:
        payload["fecha_nacimiento"] = birth_date
    if args.email:
        payload["email"] = args.email.strip()

    try:
        patient = await ctx.scheduling.create_patient(payload)
    except DentalinkAPIError as exc:
        logger.warning("Patient creation failed: %s", exc)
        return failure(
            "unavailable",
            "No se pudo registrar al paciente. Verifica los datos con el paciente.",
        )

    name = f"{payload['nombre']} {payload['apellidos']}"
    await ctx.update_data(document_number=payload["rut"], user_name=name)
    return f"Paciente {name} registrado (id {patient.get('id')})."


# ── get_available_time_slots ─────────────────────────────────────────


class GetSlotsArgs(BaseModel):
    date: str | None = Field(
        None, description="Specific day YYYY-MM-DD; omit for the next two weeks.",
    )
    requested_datetime: str | None = Field(
        None,
        description="The patient's own words when they named an exact day AND time, "
        "e.g. 'el martes a las 10am'.",
    )


async def get_available_time_slots(ctx: ToolContext, args: GetSlotsArgs) -> str:
    requested: date | None = None
    if args.date:
        requested = _parse_date(args.date)
        if requested is None:
            return failure("invalid", f"Fecha inválida: {args.date}. Usa YYYY-MM-DD.")

        check = check_requested_date(requested, ctx.now.date())
        if check == DateCheck.PAST:
            return failure("invalid", "No se pueden agendar citas en el pasado. Pide una fecha futura.")
        if check == DateCheck.TOO_FAR:
            handoff = await escalate_to_operator(
                client_id=ctx.key,
                client_name=ctx.user_name,
                reason=f"Cita solicitada para {args.date} (más de 14 días)",
                handoffs=ctx.handoffs,
                operators=ctx.operators,
                transport=ctx.transport,
                sessions=ctx.sessions,
                trigger="far_date",
            )
            if handoff is None:
                return failure(
                    "unavailable",
                    "Solo se agenda con hasta 14 días de anticipación. Pide una fecha más cercana.",
                )
            return (
                "Las citas con más de 14 días de anticipación las gestiona una persona. "
                "Ya se notificó a un agente humano; díselo al paciente."
            )

    try:
        blocks = await ctx.scheduling.get_available_slots(ctx.now, requested)
    except DentalinkAPIError as exc:
        logger.warning("Availability query failed: %s", exc)
        return failure("unavailable", "No se pudo consultar la agenda en este momento.")

    if not blocks:
        when = format_slot_label(requested) if requested else "los próximos días"
        return failure("no-longer-available", f"No hay disponibilidad para {when}.")

    # Direct booking when the patient already named an exact date and time
    note = ""
    if requested and args.requested_datetime:
        extracted = extract_time_and_day(args.requested_datetime)
        if extracted is not None:
            match = next(
                (b for b in blocks if b["date"] == requested.isoformat() and b["start"] == extracted.time),
                None,
            )
            if match is not None and ctx.document_number:
                return await book_slot(ctx, match["date"], match["start"], ctx.document_number)
            if match is None:
                note = (
                    f"No hay disponibilidad a las {format_time_12h(extracted.time)} "
                    f"el {format_slot_label(requested)}.\n"
                )

    offered = [
        OfferedSlot(label=format_slot_label(b["date"]), time=b["start"], date=b["date"])
        for b in blocks
    ]
    await ctx.update_session(offered_slots=offered)
    listing = json.dumps(
        [{"etiqueta": s.label, "hora": s.time, "fecha": s.date} for s in offered],
        ensure_ascii=False,
    )
    return f"{note}Horarios disponibles:\n{listing}\n\n{SLOT_INSTRUCTIONS}"


# ── get_appointments ─────────────────────────────────────────────────


class GetAppointmentsArgs(BaseModel):
    document_number: str | None = Field(
        None, description="Patient's national id; defaults to the known patient.",
    )


async def get_appointments(ctx: ToolContext, args: GetAppointmentsArgs) -> str:
    document_number = args.document_number or ctx.document_number
    if not document_number:
        return failure("missing-parameters", "Falta el número de documento del paciente.")
    try:
        patient = await _resolve_patient(ctx, document_number)
        if not patient or not patient.get("id"):
            return failure("not-found", f"No existe un paciente con el documento {document_number}.")
        appointments = await ctx.scheduling.get_patient_appointments(patient["id"], ctx.now)
    except DentalinkAPIError as exc:
        logger.warning("Appointment lookup failed: %s", exc)
        return failure("unavailable", "No se pudieron consultar las citas en este momento.")

    if document_number != ctx.document_number:
        await ctx.update_data(document_number=document_number, user_name=_patient_name(patient))

    if not appointments:
        return "El paciente no tiene citas pendientes. Puede agendar una nueva."

    upcoming = sorted(appointments, key=lambda a: (a["fecha"], a["hora_inicio"]))
    nearest = upcoming[0]
    await ctx.update_session(appointment_id=nearest["id"])
    await ctx.update_data(current_appointment_comment=nearest.get("comentarios") or None)

    lines = [
        f"{NEXT_APPOINTMENT_MARKER}: {format_slot_label(nearest['fecha'])} a las "
        f"{format_time_12h(nearest['hora_inicio'])} (fecha {nearest['fecha']}, id {nearest['id']}).",
    ]
    for appt in upcoming[1:]:
        lines.append(
            f"Otra cita: {format_slot_label(appt['fecha'])} a las "
            f"{format_time_12h(appt['hora_inicio'])} (id {appt['id']})."
        )
    lines.append(
        f"Si el paciente quiere cambiarla al mismo día, consulta "
        f"get_available_time_slots con date=\"{nearest['fecha']}\"."
    )
    return "\n".join(lines)


# ── create_appointment ───────────────────────────────────────────────


class CreateAppointmentArgs(BaseModel):
    date: str = Field(..., description="Canonical date YYYY-MM-DD of the chosen slot.")
    time: str = Field(..., description="Start time HH:MM (24h) of the chosen slot.")
    document_number: str | None = None
    reason: str | None = Field(None, description="Reason for the visit, if known.")


async def create_appointment(ctx: ToolContext, args: CreateAppointmentArgs) -> str:
    if not _TIME_RE.match(args.time) or _parse_date(args.date) is None:
        return failure("invalid", "Usa date=YYYY-MM-DD y time=HH:MM.")
    day = correct_date_from_slots(args.date, args.time, ctx.session.offered_slots, ctx.user_text)
    return await book_slot(ctx, day, args.time, args.document_number, args.reason)


# ── update_appointment ───────────────────────────────────────────────


class UpdateAppointmentArgs(BaseModel):
    date: str | None = Field(None, description="New canonical date YYYY-MM-DD.")
    time: str | None = Field(None, description="New start time HH:MM (24h).")
    appointment_id: int | None = Field(
        None, description="Appointment id from get_appointments.",
    )


async def update_appointment(ctx: ToolContext, args: UpdateAppointmentArgs) -> str:
    appointment_id = ctx.session.appointment_id or args.appointment_id
    if not appointment_id or not args.date or not args.time:
        return failure(
            "missing-parameters",
            f"Se necesita id de cita ({appointment_id}), fecha ({args.date}) y hora ({args.time}). "
            "Llama primero get_appointments para obtener la cita.",
        )
    if not _TIME_RE.match(args.time) or _parse_date(args.date) is None:
        return failure("invalid", "Usa date=YYYY-MM-DD y time=HH:MM.")

    day = correct_date_from_slots(args.date, args.time, ctx.session.offered_slots, ctx.user_text)
    comment = ctx.session.data.get("current_appointment_comment")
    try:
        appointment = await ctx.scheduling.update_appointment(appointment_id, day, args.time, comment)
    except DentalinkAPIError as exc:
        logger.warning("Update of appointment %s failed: %s", appointment_id, exc)
        if exc.status_code == 404:
            return failure("not-found", "No se encontró la cita. Consulta de nuevo get_appointments.")
        if exc.status_code and 400 <= exc.status_code < 500:
            return failure("no-longer-available", "Ese horario ya no está disponible.")
        return failure("unavailable", "No se pudo modificar la cita en este momento.")

    new_id = appointment.get("id") or appointment_id
    await ctx.update_session(offered_slots=[], appointment_id=new_id)
    await ctx.update_data(current_appointment_comment=appointment.get("comentarios") or comment)
    return (
        f"Cita modificada para el {format_slot_label(day)} a las {format_time_12h(args.time)}."
    )


# ── cancel_appointment ───────────────────────────────────────────────


class CancelAppointmentArgs(BaseModel):
    appointment_id: int | None = Field(
        None, description="Appointment id from get_appointments.",
    )


async def cancel_appointment(ctx: ToolContext, args: CancelAppointmentArgs) -> str:
    appointment_id = ctx.session.appointment_id or args.appointment_id
    if not appointment_id:
        return failure(
            "missing-parameters",
            "No hay una cita identificada. Llama primero get_appointments.",
        )
    try:
        await ctx.scheduling.cancel_appointment(appointment_id)
    except DentalinkAPIError as exc:
        logger.warning("Cancellation of appointment %s failed: %s", appointment_id, exc)
        if exc.status_code == 404:
            return failure("not-found", "No se encontró la cita.")
        return failure("unavailable", "No se pudo cancelar la cita en este momento.")

    await ctx.update_session(appointment_id=None)
    await ctx.update_data(current_appointment_comment=None)
    return "Cita cancelada."
