"""Centralized configuration for the Clinic Front Desk service.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/clinic-frontdesk/<VARIABLE_NAME>``.

Telephony credentials are *optional* at import time: the chat flow and the
test-suite run without them.  ``TwilioGateway.validate()`` checks them right
before a call is placed.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))

_SSM_PREFIX = "/clinic-frontdesk"


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 (lazy import keeps boto3 out of tests)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{_SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str, default: str = "") -> str:
    """Return a config value from env-var or SSM, or *default*."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value
    return default


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {_SSM_PREFIX}/{name} (AWS)."
    )


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Field extraction is a small structured task: use the cheap model
EXTRACTION_MODEL_NAME: str = os.getenv("EXTRACTION_MODEL_NAME", "claude-haiku-4-5")

# ── EMR (FHIR R4) ───────────────────────────────────────────────────
FHIR_BASE_URL: str = os.getenv("FHIR_BASE_URL", "https://hapi.fhir.org/baseR4")

# ── Telephony ───────────────────────────────────────────────────────
TWILIO_ACCOUNT_SID: str = _optional_env("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN: str = _optional_env("TWILIO_AUTH_TOKEN")
# Public https URL the provider reaches us on (webhooks + media stream)
BASE_URL: str = os.getenv("BASE_URL", "")

# The clinic line the chat widget books against
CLINIC_ROUTING_NUMBER: str = os.getenv("CLINIC_ROUTING_NUMBER", "+19499971087")
CLINIC_NAME: str = os.getenv("CLINIC_NAME", "Orion West Medical")

# ── Session / call-context store ────────────────────────────────────
STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory").lower()
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CALL_CONTEXT_TTL_SECONDS: int = int(os.getenv("CALL_CONTEXT_TTL_SECONDS", str(4 * 3600)))
SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 3600)))
STORE_MAX_ENTRIES: int = int(os.getenv("STORE_MAX_ENTRIES", "10000"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
