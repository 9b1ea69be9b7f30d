"""Environment-driven configuration and validation."""

import logging
import os
from typing import Dict

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when environment variables hold invalid values."""
    pass


def safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except Exception:
        return default


def safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except Exception:
        return default


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


# --------- Generation backend ---------
LLM_API_URL = os.getenv("LLM_API_URL", "https://api.openai.com/v1/chat/completions")
LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
MODEL_ID = os.getenv("MODEL_ID", "gpt-4o-mini")
LLM_TEMPERATURE = safe_float("LLM_TEMPERATURE", 0.7)
LLM_MAX_TOKENS = safe_int("LLM_MAX_TOKENS", 2000)
LLM_TIMEOUT = safe_float("LLM_TIMEOUT", 30.0)
SEND_MAX_TOKENS = get_env_bool("SEND_MAX_TOKENS", True)

# --------- Storage ---------
DB_PATH = os.getenv("DB_PATH", "data.db")


def validate_environment() -> None:
    """Validate configuration-related environment variables.

    Raises ConfigurationError if a value is present but unusable.
    """
    url = os.getenv("LLM_API_URL")
    if url and not (url.startswith("http://") or url.startswith("https://")):
        raise ConfigurationError(f"Invalid URL format for LLM_API_URL: {url}")

    for var in ("LLM_TEMPERATURE", "LLM_TIMEOUT"):
        raw = os.getenv(var)
        if not raw:
            continue
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{var} must be numeric, got '{raw}'") from exc
        if value < 0:
            raise ConfigurationError(f"{var} must not be negative")

    raw_tokens = os.getenv("LLM_MAX_TOKENS")
    if raw_tokens:
        try:
            tokens = int(raw_tokens)
        except ValueError as exc:
            raise ConfigurationError(f"LLM_MAX_TOKENS must be an integer, got '{raw_tokens}'") from exc
        if tokens <= 0:
            raise ConfigurationError("LLM_MAX_TOKENS must be positive")

    optional_vars: Dict[str, str] = {
        "LLM_API_KEY": "API key for the generation backend",
        "DB_PATH": "SQLite database location",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)
