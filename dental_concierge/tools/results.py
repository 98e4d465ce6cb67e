"""Shape of negative tool results.

Failures start with ``ERROR [<reason>]`` so the model (and the logs) can
tell them apart from normal answers.
"""

from __future__ import annotations

from typing import Literal

FailureReason = Literal[
    "not-found",
    "no-longer-available",
    "missing-parameters",
    "unavailable",
    "invalid",
]


def failure(reason: FailureReason, message: str) -> str:
    return f"ERROR [{reason}]: {message}"


def is_failure(result: str) -> bool:
    return result.startswith("ERROR [")
