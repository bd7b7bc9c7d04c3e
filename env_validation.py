"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_API_BASE_URL = "http://localhost:8000"
DEFAULT_LOCAL_CACHE_PATH = str(
    Path.home() / ".training_sync" / "cyber-security-training-data-local-backup.json"
)

_KV_SCHEMES = ("redis://", "rediss://", "sqlite:///")


class ConfigurationError(Exception):
    """Raised when a store or mirror is missing configuration or configured wrongly."""
    pass


def validate_environment() -> None:
    """Validate the environment the server process runs with.

    Raises ConfigurationError if validation fails.
    """
    defaults = {
        "GITHUB_API_URL": DEFAULT_GITHUB_API_URL,
        "MIRROR_TIMEOUT_SECONDS": "60",
        "SYNC_DEBOUNCE_SECONDS": "1.0",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "KV_URL": "Key/value store URL (redis://... or sqlite:///path)",
        "GITHUB_PAT": "Server-side token used by /api/sync-github",
    }

    kv_url = os.getenv("KV_URL")
    if kv_url and not kv_url.startswith(_KV_SCHEMES):
        raise ConfigurationError(
            f"Invalid KV_URL: {kv_url} (expected one of {', '.join(_KV_SCHEMES)})"
        )

    url_vars = {"GITHUB_API_URL", "API_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise ConfigurationError(f"Invalid URL format for {var}: {value}")

    for var in ("MIRROR_TIMEOUT_SECONDS", "SYNC_DEBOUNCE_SECONDS"):
        value = get_env_float(var, -1.0)
        if value <= 0:
            raise ConfigurationError(f"{var} must be a positive number, got {os.getenv(var)!r}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_float(name: str, default: float) -> float:
    """Get float value from environment variable, falling back on parse errors."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Environment variable %s=%r is not a number; using %s", name, value, default)
        return default


def settings_snapshot() -> Dict[str, str]:
    """Effective configuration with secrets masked, for health output."""
    return {
        "kv_configured": "yes" if os.getenv("KV_URL") else "no",
        "server_pat_configured": "yes" if os.getenv("GITHUB_PAT") else "no",
        "github_api_url": os.getenv("GITHUB_API_URL") or DEFAULT_GITHUB_API_URL,
    }
