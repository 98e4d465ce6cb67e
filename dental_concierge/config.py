"""Settings for the Dental Concierge, read once at import time.

A secret is taken from the environment (``.env`` is loaded first) and, on
AWS, from the SSM SecureString ``/dental-concierge/<NAME>``.  Placeholder
values copied from ``.env.example`` (``your_...``) count as unset.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Lambda, ECS and App Runner all export this.
_RUNNING_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secrets ──────────────────────────────────────────────────────────

def _read_ssm(name: str) -> str | None:
    """SSM value for *name*, or ``None`` when it is missing or unreachable."""
    try:
        import boto3  # noqa: PLC0415 (only needed on AWS)

        response = boto3.client("ssm").get_parameter(
            Name=f"/dental-concierge/{name}", WithDecryption=True,
        )
    except Exception:
        logger.debug("No SSM parameter for %s", name)
        return None
    return response["Parameter"]["Value"]


def _optional_secret(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _RUNNING_ON_AWS:
        return _read_ssm(name) or default
    return default


def _require_env(name: str) -> str:
    value = _optional_secret(name)
    if not value:
        raise OSError(
            f"{name} is not configured: add it to .env, or to SSM as "
            f"/dental-concierge/{name} when deployed."
        )
    return value


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MAX_OUTPUT_TOKENS: int = int(os.getenv("MAX_OUTPUT_TOKENS", "1024"))

# ── Dentalink (scheduling backend) ──────────────────────────────────
DENTALINK_API_KEY: str = _require_env("DENTALINK_API_KEY")
DENTALINK_BASE_URL: str = os.getenv(
    "DENTALINK_BASE_URL", "https://api.dentalink.healthatom.com/api/v1",
)
DENTALINK_DENTIST_ID: int = int(os.getenv("DENTALINK_DENTIST_ID", "1"))
DENTALINK_CLINIC_ID: int = int(os.getenv("DENTALINK_CLINIC_ID", "1"))
DENTALINK_CHAIR_ID: str = os.getenv("DENTALINK_CHAIR_ID", "1")
DENTIST_DISPLAY_NAME: str = os.getenv("DENTIST_DISPLAY_NAME", "el doctor")

# ── WhatsApp Cloud API (transport) ──────────────────────────────────
WHATSAPP_TOKEN: str = _require_env("WHATSAPP_TOKEN")
WHATSAPP_PHONE_NUMBER_ID: str = _require_env("WHATSAPP_PHONE_NUMBER_ID")
GRAPH_API_VERSION: str = os.getenv("GRAPH_API_VERSION", "v21.0")
VERIFY_TOKEN: str = _optional_secret("VERIFY_TOKEN")
APP_SECRET: str = _optional_secret("APP_SECRET")
PHONE_COUNTRY_CODE: str = os.getenv("PHONE_COUNTRY_CODE", "57")

# ── Human operator ──────────────────────────────────────────────────
OPERATOR_PHONE_NUMBER: str = os.getenv("OPERATOR_PHONE_NUMBER", "")
DASHBOARD_URL: str = os.getenv("DASHBOARD_URL", "")

# ── Clinic information document (prices, location, hours) ──────────
CLINIC_INFO_URL: str = os.getenv("CLINIC_INFO_URL", "")
CLINIC_TIMEZONE: str = os.getenv("CLINIC_TIMEZONE", "America/Bogota")

# ── Storage ─────────────────────────────────────────────────────────
# Empty table name → process-local in-memory store (local dev, tests)
DYNAMODB_TABLE: str = os.getenv("DYNAMODB_TABLE", "")

# ── Conversation engine tuning ──────────────────────────────────────
SESSION_TTL_MINUTES: int = int(os.getenv("SESSION_TTL_MINUTES", "30"))
MESSAGE_BATCH_SECONDS: float = float(os.getenv("MESSAGE_BATCH_SECONDS", "10"))
MAX_HISTORY_TURNS: int = int(os.getenv("MAX_HISTORY_TURNS", "20"))
MAX_TOOL_ITERATIONS: int = int(os.getenv("MAX_TOOL_ITERATIONS", "10"))
EXTERNAL_CALL_TIMEOUT_SECONDS: float = float(
    os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "30"),
)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
