"""Centralized configuration for the procurement agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/procurement-agent/<VARIABLE_NAME>``.
Every tunable below is a *default*: the engine components accept explicit
values in their constructors, which is what the tests use.
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
        import boto3  # noqa: PLC0415 — lazy import, only needed on AWS

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/procurement-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /procurement-agent/{name} (AWS)."
    )


def _optional_env(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` when the value is absent."""
    value = os.getenv(name)
    if value:
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TEMPERATURE: float = _float_env("MODEL_TEMPERATURE", 0.2)
MODEL_MAX_TOKENS: int = _int_env("MODEL_MAX_TOKENS", 1024)
PROVIDER_NAME: str = os.getenv("PROVIDER_NAME", "anthropic")

# ── Reliability gateway ─────────────────────────────────────────────
PROVIDER_TIMEOUT_SECONDS: float = _float_env("PROVIDER_TIMEOUT_SECONDS", 30.0)
PROVIDER_RPM_LIMIT: int = _int_env("PROVIDER_RPM_LIMIT", 60)
RATE_LIMIT_QUEUE_DEPTH: int = _int_env("RATE_LIMIT_QUEUE_DEPTH", 20)
PROVIDER_MAX_ATTEMPTS: int = _int_env("PROVIDER_MAX_ATTEMPTS", 3)
RETRY_INITIAL_BACKOFF_SECONDS: float = _float_env("RETRY_INITIAL_BACKOFF_SECONDS", 1.0)
RETRY_MAX_BACKOFF_SECONDS: float = _float_env("RETRY_MAX_BACKOFF_SECONDS", 30.0)
CIRCUIT_FAILURE_THRESHOLD: float = _float_env("CIRCUIT_FAILURE_THRESHOLD", 0.5)
CIRCUIT_WINDOW_SIZE: int = _int_env("CIRCUIT_WINDOW_SIZE", 10)
CIRCUIT_MINIMUM_CALLS: int = _int_env("CIRCUIT_MINIMUM_CALLS", 5)
CIRCUIT_COOLDOWN_SECONDS: float = _float_env("CIRCUIT_COOLDOWN_SECONDS", 30.0)

# ── Turn orchestration ──────────────────────────────────────────────
HISTORY_WINDOW: int = _int_env("HISTORY_WINDOW", 50)
# Approximate token budgets for the prompt; 0 disables the check.
HISTORY_TOKEN_BUDGET: int = _int_env("HISTORY_TOKEN_BUDGET", 3000)
MAX_PROMPT_TOKENS: int = _int_env("MAX_PROMPT_TOKENS", 4000)
MAX_MESSAGE_LENGTH: int = _int_env("MAX_MESSAGE_LENGTH", 5000)
MAX_TOOL_CALLS_PER_TURN: int = _int_env("MAX_TOOL_CALLS_PER_TURN", 10)
MAX_MODEL_ROUNDS: int = _int_env("MAX_MODEL_ROUNDS", 5)
TOOL_TIMEOUT_SECONDS: float = _float_env("TOOL_TIMEOUT_SECONDS", 5.0)

# ── Procurement backend ─────────────────────────────────────────────
# When unset, the in-memory demo catalog is used instead of the HTTP client.
PROCUREMENT_API_URL: str | None = os.getenv("PROCUREMENT_API_URL") or None
PROCUREMENT_API_TOKEN: str | None = _optional_env("PROCUREMENT_API_TOKEN")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
