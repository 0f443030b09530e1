"""Environment-driven configuration for the TeamCity MCP server."""

import os
from dataclasses import dataclass

import dotenv

from teamcity_mcp.log import LEVELS, debug_log

MODES = ("dev", "full")
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class TeamCityConfig:
    url: str
    token: str
    mode: str = "dev"
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    log_level: str = "info"


def _first_env(*names: str) -> str:
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return ""


def get_mcp_mode() -> str:
    """Read MCP_MODE, defaulting to dev.

    Raises:
        ValueError: If MCP_MODE holds anything other than dev or full
    """
    mode = os.environ.get("MCP_MODE", "dev").strip().lower() or "dev"
    if mode not in MODES:
        raise ValueError(f"Invalid MCP_MODE '{mode}'. Expected one of: {', '.join(MODES)}")
    return mode


def load_config(load_env_file: bool = True) -> TeamCityConfig:
    """Load configuration from a .env file and the process environment.

    Args:
        load_env_file: Whether to read a .env file before looking at os.environ

    Returns:
        TeamCityConfig with the server URL, token and runtime options

    Raises:
        ValueError: If required variables are missing or a value is malformed
    """
    if load_env_file:
        debug_log("Loading environment variables")
        dotenv.load_dotenv()

    url = _first_env("TEAMCITY_URL", "TEAMCITY_SERVER_URL")
    token = _first_env("TEAMCITY_TOKEN", "TEAMCITY_API_TOKEN")

    missing_vars = []
    if not url:
        missing_vars.append("TEAMCITY_URL")
    if not token:
        missing_vars.append("TEAMCITY_TOKEN")
    if missing_vars:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing_vars)}. "
            f"Please ensure these are set in your .env file."
        )

    raw_timeout = os.environ.get("TEAMCITY_TIMEOUT", "").strip()
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT
    except ValueError:
        raise ValueError(f"TEAMCITY_TIMEOUT must be a number of seconds, got '{raw_timeout}'")
    if timeout <= 0:
        raise ValueError("TEAMCITY_TIMEOUT must be greater than zero")

    raw_retries = os.environ.get("TEAMCITY_MAX_RETRIES", "").strip()
    if raw_retries and not raw_retries.isdigit():
        raise ValueError(f"TEAMCITY_MAX_RETRIES must be a non-negative integer, got '{raw_retries}'")
    max_retries = int(raw_retries) if raw_retries else DEFAULT_MAX_RETRIES

    log_level = os.environ.get("LOG_LEVEL", "info").strip().lower() or "info"
    if log_level not in LEVELS:
        raise ValueError(f"Invalid LOG_LEVEL '{log_level}'. Expected one of: {', '.join(LEVELS)}")

    return TeamCityConfig(
        url=url.rstrip("/"),
        token=token,
        mode=get_mcp_mode(),
        timeout=timeout,
        max_retries=max_retries,
        log_level=log_level,
    )
