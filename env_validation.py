"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate collaborator endpoints and apply defaults.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "items.db",
        "GENERATOR_MODEL": os.getenv("GENERATOR_MODEL") or "gpt-4o-mini",
        "SIMILARITY_INDEX": os.getenv("SIMILARITY_INDEX") or "accepted-items",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "GENERATOR_URL": "Chat completion endpoint (offline generator used when unset)",
        "SIMILARITY_URL": "k-NN search endpoint (in-memory store used when unset)",
    }

    # Validate URLs
    url_vars = {"GENERATOR_URL", "SIMILARITY_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    timeout = os.getenv("GENERATOR_TIMEOUT")
    if timeout:
        try:
            if float(timeout) <= 0:
                raise ValueError(timeout)
        except ValueError as exc:
            raise EnvironmentError(f"GENERATOR_TIMEOUT must be a positive number: {timeout}") from exc

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}
