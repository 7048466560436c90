"""Centralized configuration for the SDR lead-qualification agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/sdr-agent/<VARIABLE_NAME>``.

Only the LLM key is mandatory.  Missing CRM or calendar credentials are not
an error: the corresponding adapter runs in *simulated mode* instead.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415  (lazy import, only needed on AWS)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/sdr-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str) -> str | None:
    """Return a config value from env-var or SSM, or ``None`` if unset.

    Placeholder values copied from ``.env.example`` (``your_...``) count as
    unset.
    """
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /sdr-agent/{name} (AWS)."
    )


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "2048"))
LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# ── Orchestration limits ────────────────────────────────────────────
MAX_TOOL_ITERATIONS: int = int(os.getenv("MAX_TOOL_ITERATIONS", "10"))
TURN_TIME_BUDGET_SECONDS: float = float(os.getenv("TURN_TIME_BUDGET_SECONDS", "90"))
SESSION_IDLE_TTL_SECONDS: int = int(os.getenv("SESSION_IDLE_TTL_SECONDS", "3600"))

# ── External HTTP calls ─────────────────────────────────────────────
REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15"))

# ── CRM (Pipefy) ────────────────────────────────────────────────────
PIPEFY_API_TOKEN: str | None = _optional_env("PIPEFY_API_TOKEN")
PIPEFY_PIPE_ID: str | None = _optional_env("PIPEFY_PIPE_ID")
PIPEFY_API_URL: str = os.getenv("PIPEFY_API_URL", "https://api.pipefy.com/graphql")
CRM_TRUE_LABEL: str = os.getenv("CRM_TRUE_LABEL", "Yes")
CRM_FALSE_LABEL: str = os.getenv("CRM_FALSE_LABEL", "No")

# ── Calendar ────────────────────────────────────────────────────────
# "google", "calendly" or empty (simulated availability and bookings)
CALENDAR_PROVIDER: str = os.getenv("CALENDAR_PROVIDER", "").strip().lower()
CALENDAR_TIMEZONE: str = os.getenv("CALENDAR_TIMEZONE", "America/Sao_Paulo")

GOOGLE_CLIENT_ID: str | None = _optional_env("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET: str | None = _optional_env("GOOGLE_CLIENT_SECRET")
GOOGLE_REFRESH_TOKEN: str | None = _optional_env("GOOGLE_REFRESH_TOKEN")
GOOGLE_CALENDAR_ID: str = os.getenv("GOOGLE_CALENDAR_ID", "primary")

CALENDLY_API_TOKEN: str | None = _optional_env("CALENDLY_API_TOKEN")
CALENDLY_BASE_URL: str = "https://api.calendly.com"
CALENDLY_EVENT_TYPE_URI: str | None = os.getenv("CALENDLY_EVENT_TYPE_URI") or None

SIMULATED_MEETING_BASE_URL: str = os.getenv(
    "SIMULATED_MEETING_BASE_URL", "https://meet.example.com",
).rstrip("/")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
