"""Tool table and dispatcher.

The orchestrator only ever sees ``tool_schemas()`` and ``dispatch()``;
adding a tool means adding a handler and one ``ToolSpec`` entry here.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from dental_concierge.config import EXTERNAL_CALL_TIMEOUT_SECONDS
from dental_concierge.services.dentalink_client import DentalinkAPIError
from dental_concierge.tools import human_agent, scheduling
from dental_concierge.tools.context import ToolContext
from dental_concierge.tools.results import failure

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    FIND_PATIENT_BY_DOCUMENT = "find_patient_by_document"
    CREATE_PATIENT = "create_patient"
    GET_AVAILABLE_TIME_SLOTS = "get_available_time_slots"
    GET_APPOINTMENTS = "get_appointments"
    CREATE_APPOINTMENT = "create_appointment"
    UPDATE_APPOINTMENT = "update_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    REQUEST_HUMAN_AGENT = "request_human_agent"


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    args_model: type[BaseModel]
    handler: Callable[[ToolContext, Any], Awaitable[str]]


TOOLS: dict[str, ToolSpec] = {
    spec.name.value: spec
    for spec in (
        ToolSpec(
            ToolName.FIND_PATIENT_BY_DOCUMENT,
            "Look up a patient by national id. Use it before booking for an unknown patient.",
            scheduling.FindPatientArgs,
            scheduling.find_patient_by_document,
        ),
        ToolSpec(
            ToolName.CREATE_PATIENT,
            "Register a new patient once name, last name, birth date and email are known.",
            scheduling.CreatePatientArgs,
            scheduling.create_patient,
        ),
        ToolSpec(
            ToolName.GET_AVAILABLE_TIME_SLOTS,
            "List free one-hour slots, for a given date or for the next two weeks.",
            scheduling.GetSlotsArgs,
            scheduling.get_available_time_slots,
        ),
        ToolSpec(
            ToolName.GET_APPOINTMENTS,
            "List the patient's upcoming appointments. Call it before booking, "
            "moving or cancelling.",
            scheduling.GetAppointmentsArgs,
            scheduling.get_appointments,
        ),
        ToolSpec(
            ToolName.CREATE_APPOINTMENT,
            "Book the slot the patient chose, using the slot's canonical date.",
            scheduling.CreateAppointmentArgs,
            scheduling.create_appointment,
        ),
        ToolSpec(
            ToolName.UPDATE_APPOINTMENT,
            "Move the patient's existing appointment to a new slot.",
            scheduling.UpdateAppointmentArgs,
            scheduling.update_appointment,
        ),
        ToolSpec(
            ToolName.CANCEL_APPOINTMENT,
            "Cancel the patient's appointment after they confirm.",
            scheduling.CancelAppointmentArgs,
            scheduling.cancel_appointment,
        ),
        ToolSpec(
            ToolName.REQUEST_HUMAN_AGENT,
            "Hand the conversation to a human operator.",
            human_agent.RequestHumanAgentArgs,
            human_agent.request_human_agent,
        ),
    )
}


def tool_schemas() -> list[dict[str, Any]]:
    """Anthropic-style tool definitions for every registered tool."""
    return [
        {
            "name": spec.name.value,
            "description": spec.description,
            "input_schema": spec.args_model.model_json_schema(),
        }
        for spec in TOOLS.values()
    ]


async def dispatch(
    name: str,
    arguments: dict[str, Any],
    ctx: ToolContext,
    *,
    timeout: float = EXTERNAL_CALL_TIMEOUT_SECONDS,
) -> str:
    """Validate *arguments*, run the handler and return its text result.

    Never raises: every failure is mapped to an ``ERROR [...]`` string.
    """
    spec = TOOLS.get(name)
    if spec is None:
        logger.warning("Model requested unknown tool %r", name)
        return failure("invalid", f"La herramienta {name} no existe.")

    try:
        args = spec.args_model.model_validate(arguments or {})
    except ValidationError as exc:
        fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
        logger.info("Invalid arguments for %s: %s", name, fields)
        return failure("missing-parameters", f"Faltan o son inválidos: {fields}.")

    try:
        result = await asyncio.wait_for(spec.handler(ctx, args), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Tool %s timed out after %.0fs", name, timeout)
        return failure("unavailable", "El sistema tardó demasiado en responder.")
    except DentalinkAPIError as exc:
        logger.warning("Tool %s failed against Dentalink: %s", name, exc)
        return failure("unavailable", "El sistema de agenda no está disponible.")
    except Exception:
        logger.exception("Tool %s raised unexpectedly", name)
        return failure("unavailable", "Ocurrió un error inesperado.")

    logger.info("Tool %s → %s", name, result[:120])
    return result
